"""
Database session management with connection pooling.

Provides a shared FastAPI dependency for database sessions and the session
factory used by the lifecycle scheduler. Every connection carries a bounded
statement timeout so no engine call blocks indefinitely.

Usage:
    from tier_engine.database.session import get_db_session

    @router.get("/status")
    async def status(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

from tier_engine.db_base import Base

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine = None
_SessionLocal = None

DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "10000"))


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Handles the postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # SQLAlchemy requires postgresql://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine() -> Engine:
    """
    Get or create the database engine singleton.

    Uses connection pooling with sensible defaults for production:
    - pool_size: 5 connections
    - max_overflow: 10 additional connections under load
    - pool_pre_ping: Verify connections before use
    - pool_timeout / statement_timeout: bounded waits
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            connect_args = {}
            if database_url.startswith("postgresql"):
                connect_args["options"] = f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}"
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_pre_ping=True,  # Verify connection health
                pool_recycle=1800,   # Recycle connections after 30 minutes
                connect_args=connect_args,
            )
            logger.info("Database engine created with connection pooling")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine
        )
    return _SessionLocal


def init_db(engine: Optional[Engine] = None) -> None:
    """Create the engine tables if they do not exist."""
    from tier_engine import models  # noqa: F401 - register models on Base

    Base.metadata.create_all(bind=engine or get_engine())


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Creates a new session for each request and ensures proper cleanup.
    Raises HTTP 503 if database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
