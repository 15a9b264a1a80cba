"""
Database configuration and session management.

Provides the SQLAlchemy engine, session factory and context manager used by
the storage adapter and the managers. Every connection carries a bounded
timeout so no storage call can block indefinitely.
"""

from contextlib import contextmanager
import functools
import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from .config import settings
from .db_models import Base
from .exceptions import ConfigurationError, StorageUnavailable

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str = None, timeout_seconds: float = None) -> Engine:
    """
    Create an engine with connection pooling and bounded timeouts.

    Args:
        database_url: SQLAlchemy URL (defaults to settings.database_url)
        timeout_seconds: Connect/lock/statement timeout (defaults to settings)
    """
    database_url = database_url or settings.database_url
    timeout_seconds = timeout_seconds or settings.storage_timeout_seconds
    if not database_url:
        raise ConfigurationError("DATABASE_URL", "no database URL configured")

    if database_url.startswith("postgresql"):
        timeout_ms = int(timeout_seconds * 1000)
        engine = create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=5,  # Max 5 connections in pool
            max_overflow=10,  # Allow 10 additional connections when pool full
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
            pool_timeout=timeout_seconds,
            connect_args={
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
            },
            echo=False,
        )
    else:
        # SQLite (development/testing); busy timeout bounds lock waits
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
            echo=False,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.info(f"Database URL: {database_url.split('@')[-1] if '@' in database_url else database_url}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``; objects stay usable after commit."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = create_db_engine()
SessionLocal = create_session_factory(engine)


def init_db(bind: Engine = None):
    """
    Initialize database - create all tables.
    Should be called on application startup.
    """
    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created/verified")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


@contextmanager
def get_db_context(session_factory: sessionmaker = None):
    """
    Context manager for database sessions.

    Usage:
        with get_db_context() as db:
            profile = db.query(DBProfile).filter_by(user_id=1).first()

    Commits on success, rolls back on exception.
    """
    db: Session = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def check_database_health(session_factory: sessionmaker = None) -> dict:
    """Check database connectivity."""
    try:
        with get_db_context(session_factory) as db:
            db.execute(text("SELECT 1"))
            return {
                "database_connected": True,
                "database_type": db.get_bind().dialect.name,
            }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "database_connected": False,
            "database_error": str(e),
        }


def translate_storage_errors(operation: str):
    """
    Decorator mapping driver timeouts and disconnects to StorageUnavailable.

    Usage:
        @translate_storage_errors("add_message")
        def add_message(...): ...
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (OperationalError, PoolTimeoutError) as e:
                logger.error(f"Storage failure during {operation}: {e}")
                raise StorageUnavailable(operation, str(e).splitlines()[0]) from e
        return wrapper
    return decorator
