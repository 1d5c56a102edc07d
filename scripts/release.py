"""
Release phase: migrate the schema to head, then run the idempotent seed
(permissions, default roles, admin user, system templates).

Usage:
  python scripts/release.py            # migrate + seed
  python scripts/release.py --check    # exit 1 unless the database is at head

DATABASE_URL is required; production refuses SQLite.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402
from alembic.runtime.migration import MigrationContext  # noqa: E402
from alembic.script import ScriptDirectory  # noqa: E402

from scripts._db_utils import create_script_engine  # noqa: E402


def _release_database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    return db_url


def alembic_config(db_url: str) -> Config:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def schema_revisions(db_url: str) -> tuple[str | None, str | None]:
    """(current revision of the database, head revision of the migration scripts)."""
    head = ScriptDirectory.from_config(alembic_config(db_url)).get_current_head()
    engine = create_script_engine(db_url)
    try:
        with engine.connect() as conn:
            current = MigrationContext.configure(conn).get_current_revision()
    finally:
        engine.dispose()
    return current, head


def run_release() -> None:
    db_url = _release_database_url()
    print("=== Compliance console release start ===", flush=True)
    print(f"ENV={os.environ.get('ENV') or '(unset)'}", flush=True)

    before, head = schema_revisions(db_url)
    if before == head:
        print(f"Schema already at head ({head}).", flush=True)
    else:
        print(f"Migrating schema {before or '(empty)'} -> {head}...", flush=True)
        command.upgrade(alembic_config(db_url), "head")
        print("Migrations complete.", flush=True)

    print("Seeding permissions/roles/admin/templates (idempotent)...", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("=== Compliance console release done ===", flush=True)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--check", action="store_true", help="only report whether the schema is at head")
    args = parser.parse_args(argv)

    if args.check:
        current, head = schema_revisions(_release_database_url())
        print(f"current={current or '(empty)'} head={head}", flush=True)
        return 0 if current == head else 1

    run_release()
    return 0


if __name__ == "__main__":
    sys.exit(main())
