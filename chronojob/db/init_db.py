from __future__ import annotations

import logging

from sqlalchemy import text

from chronojob.db.migrations import apply_migrations
from chronojob.db.models import Base
from chronojob.db.session import get_engine, is_sqlite

logger = logging.getLogger(__name__)


def initialize_database() -> list[int]:
    """Create missing tables, run pending migrations and return the versions applied."""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)

    if is_sqlite(engine):
        with engine.begin() as conn:
            conn.execute(text("PRAGMA optimize"))

    logger.debug("Database ready (%d migrations applied this start)", len(applied))
    return applied
