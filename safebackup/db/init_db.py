from __future__ import annotations

import logging

from sqlalchemy import text

from safebackup.db.migrations import apply_migrations
from safebackup.db.models import Base
from safebackup.db.session import get_engine, get_source_engine

logger = logging.getLogger(__name__)


def initialize_database() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    applied = apply_migrations(engine)
    if applied:
        logger.info("Applied state schema migrations %s", applied)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()

    source = get_source_engine()
    if source is not engine:
        logger.info("Backing up relational store at %s", source.url.render_as_string(hide_password=True))
