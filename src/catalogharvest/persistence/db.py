"""
Database connection and session management.

Engines are cached per URL so every ledger pointed at the same database
shares one connection pool.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base


DEFAULT_DATABASE_URL = "sqlite:///data/history.db"

_engines: dict[str, Engine] = {}
_session_factories: dict[str, sessionmaker[Session]] = {}


# =============================================================================
# SQLite Configuration
# =============================================================================


def _configure_sqlite(engine: Engine) -> None:
    """Enable WAL mode and durable-enough syncing for SQLite."""
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


# =============================================================================
# Engine Creation
# =============================================================================


def get_engine(url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> Engine:
    """Get or create the engine for ``url``.

    Args:
        url: SQLAlchemy database URL
        echo: Whether to log SQL statements

    Returns:
        SQLAlchemy Engine instance
    """
    engine = _engines.get(url)
    if engine is not None:
        return engine

    # Ensure data directory exists for SQLite
    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        _configure_sqlite(engine)
    else:
        engine = create_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
        )

    _engines[url] = engine
    _session_factories[url] = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    return engine


# =============================================================================
# Session Management
# =============================================================================


@contextmanager
def get_session(url: str = DEFAULT_DATABASE_URL) -> Generator[Session, None, None]:
    """Get a database session that commits on success.

    Usage:
        with get_session(url) as session:
            session.add(...)

    Yields:
        SQLAlchemy Session instance
    """
    if url not in _session_factories:
        get_engine(url)

    session = _session_factories[url]()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> None:
    """Create all tables that don't exist yet."""
    engine = get_engine(url, echo=echo)
    Base.metadata.create_all(bind=engine)


def dispose_engines() -> None:
    """Dispose of all cached engines.

    Should be called on application shutdown.
    """
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
    _session_factories.clear()
