from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cycleflow.config.settings import settings


def _is_postgresql(url: str) -> bool:
    lowered = url.lower()
    return "postgresql" in lowered or "postgres" in lowered


# Lazy initialization to avoid import-time database connections
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        logger.info(f"Initializing database engine: {settings.database_url}")

        connect_args: dict = {}
        if "sqlite" in settings.database_url.lower():
            logger.warning("Using SQLite database (local development only)")
            connect_args = {"check_same_thread": False}
        elif _is_postgresql(settings.database_url):
            connect_args = {
                "connect_timeout": 10,
                "application_name": "cycleflow",
            }

        _engine = create_engine(
            settings.database_url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,  # Verify connections before using (important for cloud DBs)
            pool_recycle=3600,
        )
        logger.info("Database engine initialized")
    return _engine


def _get_session_local() -> sessionmaker:
    """Get or create the session factory (lazy initialization)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=_get_engine())
        logger.info("Database session factory initialized")
    return _SessionLocal


def check_database_connection() -> None:
    """Run SELECT 1 against the configured database."""
    try:
        with _get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection test successful")
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        raise


def init_db() -> None:
    """Create all tables that do not exist yet."""
    from cycleflow.db.models import Base

    Base.metadata.create_all(bind=_get_engine())
    logger.info("Database tables verified")


def get_db() -> Generator[Session, None, None]:
    """Get database session for FastAPI dependencies.

    Plain generator (not a context manager) so FastAPI can use it directly
    with Depends(). For non-FastAPI code use get_session() instead.
    """
    session = _get_session_local()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session context manager.

    Commits on success. HTTPException is re-raised without logging
    (expected API response); any other exception is logged as a database
    error, rolled back and re-raised.
    """
    session = _get_session_local()()
    try:
        yield session
        session.commit()
    except HTTPException:
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error, rolling back: {e}. Error type: {type(e).__name__}")
        session.rollback()
        raise
    finally:
        session.close()
