from __future__ import annotations

import logging

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from chronojob.core.config import get_settings

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def is_sqlite(engine: Engine) -> bool:
    return engine.url.get_backend_name() == "sqlite"


def build_engine(database_url: str, *, busy_timeout_ms: int) -> Engine:
    """Create an engine; SQLite connections get WAL, foreign keys and a busy timeout."""
    sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = {}
    if sqlite:
        connect_args = {"check_same_thread": False, "timeout": busy_timeout_ms / 1000}

    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    if not sqlite:
        return engine

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        try:
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        finally:
            cursor.close()

    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.effective_database_url, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        logger.debug("Engine created for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _session_factory


def reset_engine() -> None:
    """Drop the cached engine so the next caller picks up fresh settings."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
