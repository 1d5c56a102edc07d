from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.compliance.db import get_engine, missing_tables
from app.compliance.models import Base

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """
    Readiness: the database answers and every mapped table exists.
    503 with the failing check otherwise.
    """
    engine = get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        missing = missing_tables(engine, Base.metadata.tables)
    except SQLAlchemyError as e:
        current_app.logger.error("Health check: database unreachable: %s", e)
        return jsonify({"ok": False, "database": "unreachable"}), 503
    if missing:
        return jsonify({"ok": False, "database": "ok", "missing_tables": sorted(missing)}), 503
    return jsonify({"ok": True, "database": "ok"})


@bp.get("/healthz")
def healthz():
    """Liveness check. No DB access."""
    return "ok", 200
