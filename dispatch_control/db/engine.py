# dispatch_control/db/engine.py
"""
Database engine and session management.

PostgreSQL in deployment; any SQLAlchemy URL works (tests use SQLite).
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from ..settings import settings

DATABASE_URL = settings.database_url


def build_engine(url: str) -> Engine:
    """
    Create an engine with pooling appropriate for the backend.

    SQLite does not accept pool sizing arguments.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_pre_ping=True,  # Check connection health
        pool_size=10,
        max_overflow=20,
    )


engine = build_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_engine() -> Engine:
    """Get SQLAlchemy engine."""
    return engine


def get_session() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields a session that auto-closes on exit.
    For use with FastAPI Depends.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
    """
    Context manager for a unit of work.

    Usage:
        with session_scope() as session:
            session.execute(...)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Engine = engine) -> None:
    """Create all tables that do not exist yet."""
    from .tables import metadata
    metadata.create_all(bind=bind)


def check_connection() -> bool:
    """
    Check database connection.

    Returns:
        True if connection successful
    """
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
