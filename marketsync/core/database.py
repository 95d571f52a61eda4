"""
Database configuration and session management.
"""
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from marketsync.core.config import Settings


def create_db_engine(config: Settings, url: Optional[str] = None) -> Engine:
    """
    Create an engine sized from settings.

    PostgreSQL gets a QueuePool (min connections as pool_size, the rest as
    overflow) and a server-side statement timeout; other URLs (SQLite in
    tests) use the dialect's default pool.
    """
    url = url or config.DATABASE_URL
    echo = os.getenv("SQL_ECHO", "false").lower() == "true"

    if url.startswith("postgresql"):
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=config.DB_POOL_MIN,
            max_overflow=max(config.DB_POOL_MAX - config.DB_POOL_MIN, 0),
            pool_recycle=config.DB_IDLE_TIMEOUT_SECONDS,
            pool_pre_ping=True,  # Verify connections before using
            connect_args={"options": f"-c statement_timeout={config.DB_QUERY_TIMEOUT_SECONDS * 1000}"},
            echo=echo,
        )

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope: commit on success, roll back on any error.

    Usage:
        with session_scope(SessionLocal) as db:
            db.add(row)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """Initialize database tables."""
    from marketsync.models.models import Base
    # checkfirst=True will only create tables that don't exist
    Base.metadata.create_all(bind=engine, checkfirst=True)

