"""
Database engine and session management.

Works against SQLite (local analysis, tests) and PostgreSQL. The rebuild
jobs open one session per command through session_scope().
"""
from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from src.db.models.base import Base

settings = get_settings()


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL (SQLite or PostgreSQL)."""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


# Sync engine/session
engine = make_engine(settings.database_url, echo=settings.log_level == "DEBUG")
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(bind: Engine | None = None) -> None:
    """Create all source and derived tables that do not exist yet."""
    # Register every model on the metadata
    import src.db.models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info(f"Database tables initialized ({len(Base.metadata.tables)} tables)")


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:  # Intentionally broad - rollback on any error before re-raising
        session.rollback()
        raise
    finally:
        session.close()
