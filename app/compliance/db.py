from __future__ import annotations

import logging
from collections.abc import Generator, Iterable
from contextlib import contextmanager

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_ENGINE_KEY = "sqlalchemy_engine"
_SESSIONMAKER_KEY = "sqlalchemy_sessionmaker"


def _engine_options(db_url: str) -> dict[str, object]:
    opts: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        opts.update(pool_recycle=1800, pool_size=5, max_overflow=10, pool_timeout=30)
    elif db_url.startswith("sqlite"):
        # Counter UPDATEs wait on the sqlite write lock rather than failing at once.
        opts["connect_args"] = {"timeout": 15}
    return opts


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def init_db(app: Flask) -> Engine:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **_engine_options(db_url))
    if db_url.startswith("sqlite"):
        _enable_sqlite_foreign_keys(engine)

    app.extensions[_ENGINE_KEY] = engine
    app.extensions[_SESSIONMAKER_KEY] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    logger.debug("Database engine ready (dialect=%s)", engine.dialect.name)
    return engine


def get_engine(app: Flask | None = None) -> Engine:
    return (app or current_app).extensions[_ENGINE_KEY]


def missing_tables(engine: Engine, expected: Iterable[str]) -> list[str]:
    """Names from `expected` that the connected database does not have."""
    insp = inspect(engine)
    return [name for name in expected if not insp.has_table(name)]


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session, created on first use and stored on `g`.
    """
    s: Session | None = g.get("db_session")
    if s is None:
        sm = (app or current_app).extensions[_SESSIONMAKER_KEY]
        s = sm()
        g.db_session = s
    return s


def rollback_db_session() -> None:
    s: Session | None = g.get("db_session")
    if s is not None:
        s.rollback()


def teardown_db_session(exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is None:
        return
    if exc is not None:
        s.rollback()
    s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Unit of work outside a request (scripts, seeds, tests): commit on success,
    roll back on any exception.
    """
    s: Session = app.extensions[_SESSIONMAKER_KEY]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
