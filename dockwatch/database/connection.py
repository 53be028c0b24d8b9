"""
Database connection management for dockwatch.

A single synchronous SQLAlchemy engine and session factory are created
lazily from the configured ``database_url`` and shared by the engine's
stores and the CLI.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from dockwatch.config import get_config, DockwatchConfig

logger = logging.getLogger(__name__)

# Global engine and session factory (lazy-loaded)
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_db_path(config: Optional[DockwatchConfig] = None) -> Optional[Path]:
    """
    Get the database file path.

    Args:
        config: dockwatch configuration (uses global if not provided)

    Returns:
        Path to the SQLite database file, or None for in-memory and
        non-SQLite databases
    """
    if config is None:
        config = get_config()

    db_url = config.database_url
    if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
        return Path(db_url[10:])

    return None


def init_engine(config: Optional[DockwatchConfig] = None) -> Engine:
    """
    Initialize the SQLAlchemy engine.

    Args:
        config: dockwatch configuration (uses global if not provided)

    Returns:
        Configured SQLAlchemy engine
    """
    global _engine

    if _engine is not None:
        return _engine

    if config is None:
        config = get_config()

    is_sqlite = config.database_url.startswith("sqlite")

    if is_sqlite:
        db_path = get_db_path(config)
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(
            config.database_url,
            connect_args={
                "check_same_thread": False,  # Allow cross-thread access
                "timeout": 30,  # Connection timeout in seconds
            },
            pool_pre_ping=True,
            echo=False,
        )

        @event.listens_for(_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable SQLite foreign key support."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        _engine = create_engine(
            config.database_url,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=False,
        )

    logger.debug(f"Database engine initialized: {config.database_url}")
    return _engine


def get_session_maker(config: Optional[DockwatchConfig] = None) -> sessionmaker:
    """
    Get or create the session maker.

    Args:
        config: dockwatch configuration (uses global if not provided)

    Returns:
        Configured session maker
    """
    global _SessionLocal

    if _SessionLocal is not None:
        return _SessionLocal

    engine = init_engine(config)
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )

    return _SessionLocal


@contextmanager
def get_db_session(config: Optional[DockwatchConfig] = None) -> Generator[Session, None, None]:
    """
    Get a database session context manager.

    Usage:
        with get_db_session() as session:
            run = session.query(BatchRun).first()

    Args:
        config: dockwatch configuration (uses global if not provided)

    Yields:
        SQLAlchemy Session
    """
    SessionLocal = get_session_maker(config)
    session = SessionLocal()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(config: Optional[DockwatchConfig] = None) -> None:
    """
    Create all database tables.

    Called by the daemon and the CLI before first use.

    Args:
        config: dockwatch configuration (uses global if not provided)
    """
    from dockwatch.database.models import Base

    engine = init_engine(config)
    Base.metadata.create_all(bind=engine)
    logger.debug("Database tables created")


def drop_tables(config: Optional[DockwatchConfig] = None) -> None:
    """
    Drop all database tables.

    WARNING: This will delete all data!

    Args:
        config: dockwatch configuration (uses global if not provided)
    """
    from dockwatch.database.models import Base

    engine = init_engine(config)
    Base.metadata.drop_all(bind=engine)
    logger.warning("Database tables dropped")


def reset_engine() -> None:
    """Dispose the global engine and forget the session factory."""
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
