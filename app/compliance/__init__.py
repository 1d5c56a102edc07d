import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from app.compliance.config import load_config
from app.compliance.db import get_engine, init_db, missing_tables, rollback_db_session, teardown_db_session
from app.compliance.errors import DomainError
from app.compliance.routes import bp as routes_bp
from app.compliance.auth import bp as auth_bp, load_current_user
from app.compliance.admin import bp as admin_bp
from app.compliance.modules.document_control.admin import approvals_bp, bp as doc_control_bp
from app.compliance.modules.templates.admin import bp as templates_bp
from app.compliance.modules.inventory.admin import assets_bp, rules_bp as inventory_rules_bp
from app.compliance.security import init_csrf
from app.compliance.storage import S3_REQUIRED_KEYS, StorageError, storage_from_config

# Tables the code expects; a missing one means `alembic upgrade head` was not run.
EXPECTED_TABLES = (
    "users",
    "roles",
    "permissions",
    "audit_events",
    "documents",
    "document_versions",
    "approval_workflows",
    "approval_steps",
    "ack_campaigns",
    "document_acknowledgments",
    "document_templates",
    "inventory_number_rules",
    "assets",
)

_HTTP_ERROR_KINDS = {
    400: "bad_request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "content_too_large",
    429: "rate_limited",
}


def _check_production(app: Flask) -> None:
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _check_storage(app: Flask) -> None:
    """Log S3 misconfiguration loudly at boot; requests fail later with storage_error."""
    if app.config.get("STORAGE_BACKEND") != "s3":
        return
    missing = [key for key in S3_REQUIRED_KEYS if not app.config.get(key)]
    if missing:
        app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing))
        return
    storage = storage_from_config(app.config)
    try:
        storage.check_bucket()  # type: ignore[attr-defined]
    except StorageError as e:
        app.logger.error("STORAGE CONFIG ERROR: %s", e)
    else:
        app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)  # type: ignore[attr-defined]


def _check_schema(app: Flask) -> None:
    try:
        missing = missing_tables(get_engine(app), EXPECTED_TABLES)
    except SQLAlchemyError as e:
        app.logger.error("Schema check failed (database unreachable?): %s", e)
        return
    if missing:
        app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))


def _dispose_engine_after_fork(app: Flask) -> None:
    # Forked gunicorn workers must not share pooled connections with the master.
    if not hasattr(os, "register_at_fork"):
        return

    def _after_fork_child():
        get_engine(app).dispose()
        app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_after_fork_child)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _check_production(app)
    init_db(app)
    _dispose_engine_after_fork(app)
    _check_storage(app)

    init_csrf(app)
    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(doc_control_bp, url_prefix="/documents")
    app.register_blueprint(approvals_bp, url_prefix="/approvals")
    app.register_blueprint(templates_bp, url_prefix="/admin/templates")
    app.register_blueprint(inventory_rules_bp, url_prefix="/admin/inventory-rules")
    app.register_blueprint(assets_bp, url_prefix="/assets")

    _check_schema(app)

    @app.errorhandler(DomainError)
    def _err_domain(e: DomainError):  # type: ignore[no-redef]
        rollback_db_session()
        rid = getattr(g, "request_id", None)
        if e.status_code >= 500:
            app.logger.error("%s: %s (request_id=%s)", e.kind, e.message, rid)
        else:
            app.logger.warning("%s: %s (request_id=%s)", e.kind, e.message, rid)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(StorageError)
    def _err_storage(e: StorageError):  # type: ignore[no-redef]
        rollback_db_session()
        app.logger.error("Storage error: %s (request_id=%s)", e, getattr(g, "request_id", None))
        return jsonify({"error": "storage_error", "message": "Stored content is unavailable."}), 500

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        rollback_db_session()
        code = e.code or 500
        body = {"error": _HTTP_ERROR_KINDS.get(code, "http_error"), "message": e.description or e.name}
        missing = getattr(g, "missing_permission", None)
        if code == 403 and missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
            body["details"] = {"missing_permission": missing}
        return jsonify(body), code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rollback_db_session()
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
