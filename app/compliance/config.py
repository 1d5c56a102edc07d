import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    default_tenant_id: str

    storage_backend: str
    storage_local_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    max_version_bytes: int
    pending_scan_policy: str
    inventory_class_placeholder: str
    inventory_allocation_retries: int

    login_rate_limit: int
    login_rate_window_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    policy = _getenv("PENDING_SCAN_POLICY", "allow").lower()
    if policy not in ("allow", "block"):
        raise RuntimeError(f"PENDING_SCAN_POLICY must be 'allow' or 'block' (got {policy!r}).")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///compliance.db"),
        default_tenant_id=_getenv("DEFAULT_TENANT_ID", "default"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_local_root=_getenv("STORAGE_LOCAL_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        max_version_bytes=_getenv_int("MAX_VERSION_BYTES", 20 * 1024 * 1024),
        pending_scan_policy=policy,
        inventory_class_placeholder=_getenv("INVENTORY_CLASS_PLACEHOLDER", "GEN"),
        inventory_allocation_retries=_getenv_int("INVENTORY_ALLOCATION_RETRIES", 5),
        login_rate_limit=_getenv_int("LOGIN_RATE_LIMIT", 5),
        login_rate_window_seconds=_getenv_int("LOGIN_RATE_WINDOW_SECONDS", 300),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "DEFAULT_TENANT_ID": s.default_tenant_id,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_LOCAL_ROOT": s.storage_local_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # document lifecycle
        "MAX_VERSION_BYTES": s.max_version_bytes,
        "PENDING_SCAN_POLICY": s.pending_scan_policy,
        # inventory numbers
        "INVENTORY_CLASS_PLACEHOLDER": s.inventory_class_placeholder,
        "INVENTORY_ALLOCATION_RETRIES": s.inventory_allocation_retries,
        # login throttling (per client ip)
        "LOGIN_RATE_LIMIT": s.login_rate_limit,
        "LOGIN_RATE_WINDOW_SECONDS": s.login_rate_window_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # request body limit (25MB); per-version limit is MAX_VERSION_BYTES
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
