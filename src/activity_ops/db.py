"""Database connection management for activity-ops.

Celery workers, the sync orchestrator and the HTTP layer all share one
synchronous engine. FastAPI runs sync dependencies and ``def`` endpoints in
its threadpool, so blocking I/O there does not stall the event loop.

Environment Variables:
    POSTGRES_URI: PostgreSQL connection string
    DATABASE_URI / DATABASE_URL: fallbacks when POSTGRES_URI is unset
    DB_POOL_SIZE / DB_MAX_OVERFLOW: connection pool sizing (5 / 10)
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from activity_ops.config import get_db_pool_settings

_postgres_sync_engine: Engine | None = None


def _get_sync_postgres_uri() -> str | None:
    uri = os.getenv("POSTGRES_URI")
    if not uri:
        fallback = os.getenv("DATABASE_URI") or os.getenv("DATABASE_URL")
        if fallback and "postgres" in fallback.lower():
            uri = fallback
    if uri and "+asyncpg" in uri:
        return uri.replace("+asyncpg", "", 1)
    return uri


def get_postgres_sync_engine() -> Engine:
    global _postgres_sync_engine
    if _postgres_sync_engine is None:
        uri = _get_sync_postgres_uri()
        if not uri:
            raise RuntimeError(
                "PostgreSQL URI not configured. Set POSTGRES_URI environment variable."
            )
        pool_size, max_overflow = get_db_pool_settings()
        _postgres_sync_engine = create_engine(
            uri,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
        )
    return _postgres_sync_engine


@contextmanager
def get_postgres_session_sync() -> Generator[Session, None, None]:
    engine = get_postgres_sync_engine()
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def postgres_session_dependency() -> Generator[Session, None, None]:
    """FastAPI dependency for PostgreSQL sessions."""
    with get_postgres_session_sync() as session:
        yield session


def close_engines() -> None:
    """Dispose the engine. Call on application shutdown."""
    global _postgres_sync_engine
    if _postgres_sync_engine:
        _postgres_sync_engine.dispose()
        _postgres_sync_engine = None
