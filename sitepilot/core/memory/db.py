"""
Database connection and session management.

Handles engine creation, schema initialization, and the session factory.

Sessions are single-owner: create them via `db_session()` in the code path that
uses them and do not keep ORM objects beyond the `with` block.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import NullPool, StaticPool

from sitepilot.core.config import get_database_url, settings
from sitepilot.core.memory.models import Base


logger = logging.getLogger(__name__)

_ENGINE: Optional[Engine] = None
_SESSIONMAKER: Optional[sessionmaker] = None

# Global lock to ensure only one thread initializes the database at a time.
_init_lock = threading.Lock()


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine for the given URL (defaults to the configured database).

    File-backed SQLite uses NullPool so every session gets its own connection.
    In-memory SQLite shares one connection (StaticPool), otherwise every session
    would see an empty database.
    """
    url = database_url or get_database_url()
    kwargs = {}
    if url.startswith("sqlite"):
        if _is_memory_sqlite(url):
            kwargs["connect_args"] = {"check_same_thread": False}
            kwargs["poolclass"] = StaticPool
        else:
            kwargs["connect_args"] = {"timeout": 30}  # 30 second timeout for database operations
            kwargs["poolclass"] = NullPool
    engine = create_engine(
        url,
        echo=settings.database_echo if echo is None else echo,
        **kwargs,
    )
    if url.startswith("sqlite"):
        event.listen(engine, "connect", set_sqlite_pragma)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory: one Session per unit of work (fire, command, reconcile pass)."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_engine() -> Engine:
    """Return the process-wide engine for the configured database."""
    global _ENGINE, _SESSIONMAKER
    if _ENGINE is None:
        _ENGINE = create_db_engine()
        _SESSIONMAKER = create_session_factory(_ENGINE)
    return _ENGINE


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory."""
    if _SESSIONMAKER is None:
        get_engine()
    return _SESSIONMAKER


def init_db(engine: Optional[Engine] = None) -> None:
    """Initialize database schema (create missing tables)."""
    engine = engine or get_engine()
    with _init_lock:
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Database schema initialized")
        except Exception as e:
            logger.error("Failed to initialize database: %s", e, exc_info=True)
            raise


@contextmanager
def db_session(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Commits on a clean exit, rolls back and re-raises on error.
    """
    db = (factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL mode and a busy timeout in SQLite."""
    cursor = dbapi_conn.cursor()
    # Enable WAL mode for better concurrency (allows concurrent reads)
    cursor.execute("PRAGMA journal_mode=WAL")
    # Set busy timeout to handle locks (30 seconds)
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()
