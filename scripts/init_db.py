import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.compliance.models import Permission, Role, User
from app.compliance.modules.templates.service import seed_system_templates
from app.compliance.rbac import ALL_PERMISSIONS, PERMISSION_MODULES
from scripts._db_utils import resolve_database_url, script_session

# role key -> (display name, permission keys)
DEFAULT_ROLES: dict[str, tuple[str, frozenset[str]]] = {
    "admin": ("Administrator", frozenset(ALL_PERMISSIONS)),
    "document_editor": (
        "Document editor",
        PERMISSION_MODULES["templates"]
        | frozenset(
            {
                "docs.view",
                "docs.create",
                "docs.edit",
                "docs.submit",
                "docs.download",
                "docs.ack_manage",
                "assets.view",
            }
        ),
    ),
    "approver": ("Approver", frozenset({"docs.view", "docs.approve", "docs.download"})),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, default roles, the admin user and the system templates
    in an idempotent way. Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    tenant_id = (os.environ.get("DEFAULT_TENANT_ID") or "default").strip()

    db_url = resolve_database_url(database_url)

    # Direct engine/session so this can run in release without creating the Flask app.
    with script_session(db_url) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            elif p.name != name:
                p.name = name
            return p

        perms = {key: ensure_perm(key, name) for key, name in ALL_PERMISSIONS.items()}

        roles: dict[str, Role] = {}
        for key, (name, keys) in DEFAULT_ROLES.items():
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            # Only add; permissions granted by hand are left alone.
            for perm_key in sorted(keys):
                if perms[perm_key] not in role.permissions:
                    role.permissions.append(perms[perm_key])
            roles[key] = role

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                full_name="Administrator",
                tenant_id=tenant_id,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])
        s.flush()

        created = seed_system_templates(s, tenant_id=tenant_id, user=user)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")
    print(f"System templates created for tenant {tenant_id!r}: {len(created)}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
