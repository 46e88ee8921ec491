"""
Database configuration and connection handling.

Supports SQLite/PostgreSQL persistence and an in-memory fallback mode.
Set USE_DATABASE=false to run without database (stores live in process).
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleetpulse.config import config

from .models import Base

logger = logging.getLogger(__name__)

# Global engine instance
engine: Optional[Engine] = None
SessionLocal = None


def init_engine(database_url: Optional[str] = None) -> Optional[Engine]:
    """
    Initialize the database engine.

    Args:
        database_url: Overrides DATABASE_URL (tests pass an in-memory SQLite URL)

    Returns:
        The engine, or None if the database could not be reached
    """
    global engine, SessionLocal

    url = database_url or config.DATABASE_URL
    try:
        engine_kwargs = {"echo": config.SQLALCHEMY_ECHO, "pool_pre_ping": True}

        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url.rstrip("/") == "sqlite:":
                # In-memory SQLite only exists on a single connection
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_size"] = 5
            engine_kwargs["max_overflow"] = 10
            engine_kwargs["pool_recycle"] = 3600

        new_engine = create_engine(url, **engine_kwargs)

        with new_engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        engine = new_engine
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        logger.info(f"Database connected: {url.split('@')[-1]}")
        return engine

    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        logger.warning("Running in fallback mode (no database persistence)")
        engine = None
        SessionLocal = None
        return None


def is_database_available() -> bool:
    """Check if database is available for use."""
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def create_tables():
    """Create all tables (for initial setup)."""
    if engine is not None:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created")


def drop_tables():
    """Drop all tables (use with caution!)."""
    if engine is not None:
        Base.metadata.drop_all(bind=engine)
        logger.info("Database tables dropped")
