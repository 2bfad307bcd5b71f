from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool
import logging
from typing import Optional

from .config import settings


def build_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine, preparing SQLite file paths beforehand.

    In-memory SQLite databases share a single connection so that every session
    (including ones opened from worker threads) sees the same schema.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        database = url.database
        if not database or database == ":memory:":
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        db_path = Path(database).expanduser()
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

    return create_engine(database_url, pool_pre_ping=True)


def _create_engine() -> Engine:
    try:
        return build_engine(settings.sqlalchemy_url)
    except Exception as e:
        # Log error but don't prevent module import - let the actual usage fail with a clear error
        logging.error(f"Failed to create database engine: {e}", exc_info=True)
        raise


# Lazy initialization - create engine on first access to avoid import-time failures
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory bound to the process engine."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False
        )
    return _SessionLocal


class Base(DeclarativeBase):
    pass


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all registered tables (dev and tests; production uses alembic)."""
    # Import models so they're registered with Base
    from graphrollup.core.eventstore import models as _eventstore_models  # noqa: F401
    from graphrollup.database.models import rollup as _rollup_models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def safe_rollback(
    db: Session,
    logger: Optional[logging.Logger] = None,
    operation_name: str = "database operation",
) -> bool:
    """
    Safely rollback a database transaction with error handling.

    Returns:
        True if rollback succeeded, False if rollback failed
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    try:
        db.rollback()
        logger.info(f"Successfully rolled back {operation_name}")
        return True
    except Exception as rollback_error:
        logger.error(f"Failed to rollback {operation_name}: {rollback_error}")
        return False
