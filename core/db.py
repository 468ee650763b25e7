# backoffice/core/db.py
"""
Database management for the compensation back office.
One engine per process, created lazily from Config.DATABASE_URL.
"""
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models.base import Base

logger = logging.getLogger(__name__)

_engine = None
_SessionFactory = None


def _engine_options(database_url: str) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}

    options = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # In-memory database lives in its connection; every session must share it
        options["poolclass"] = StaticPool
    return options


def get_engine():
    """Get or create database engine."""
    global _engine
    if _engine is None:
        database_url = Config.get(Config.DATABASE_URL, "sqlite:///backoffice.db")
        _engine = create_engine(database_url, echo=False, **_engine_options(database_url))
        logger.info(f"Database engine created: {make_url(database_url).render_as_string(hide_password=True)}")
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = sessionmaker(bind=get_engine())
        logger.info("Session factory created")
    return _SessionFactory


def get_session() -> Session:
    """New session; the caller closes it."""
    return get_session_factory()()


@contextmanager
def get_db_session_ctx():
    """
    Session committed on success, rolled back on error, always closed.

    Usage:
        with get_db_session_ctx() as session:
            services = create_services(session)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        session.close()


def setup_database():
    """Create any missing compensation tables."""
    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info(f"Database ready: {', '.join(sorted(Base.metadata.tables))}")


def dispose_engine():
    """Close pooled connections and forget the engine (shutdown, reconfiguration)."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _SessionFactory = None
