"""
Engine and session wiring for the admin database.

PostgreSQL in production; a SQLite URL works for local runs, where the
pool options do not apply.
"""

import logging
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from rental_admin.core.config import get_settings
from rental_admin.core.models import Base

# Registers DuplicateCase and DuplicateMergeOperation on Base.metadata
from rental_admin.core import duplicate_models  # noqa: F401

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def engine_options(database_url: str) -> Dict[str, Any]:
    """Keyword arguments for create_engine, by database backend."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
    }


def get_engine():
    """Process-wide engine, built from settings on first use."""
    global _engine
    if _engine is None:
        url = get_settings().database_url
        _engine = create_engine(url, **engine_options(url))
        logger.debug(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def create_tables(engine=None):
    """Create the admin, user and duplicate hub tables that are missing."""
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info(f"Schema ready: {len(Base.metadata.tables)} tables")


def get_session_factory():
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for route dependencies; closed after the response."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
