from __future__ import annotations

import logging

from sqlalchemy import Engine, text

from scanchain.db.migrations import apply_migrations
from scanchain.db.models import Base
from scanchain.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database(engine: Engine | None = None) -> Engine:
    """Create missing tables, bring older stores up to the current schema and return the engine."""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)
    if applied:
        logger.info("Applied schema migrations: %s", ", ".join(applied))

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return engine
