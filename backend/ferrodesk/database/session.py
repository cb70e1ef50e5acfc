"""
Record store engine and session factory.

The entitlement store client opens one short-lived session per operation
from the factory returned by get_session_factory().

Environment:
- DATABASE_URL: required; postgres:// is accepted and normalized
- DB_POOL_SIZE / DB_MAX_OVERFLOW: Postgres pool sizing (default 5 / 10)

Usage:
    from ferrodesk.database.session import get_session_factory

    client = EntitlementStoreClient(get_session_factory())
"""

import os
import logging
from threading import Lock
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ferrodesk.db_base import Base

logger = logging.getLogger(__name__)

_db_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None
_lock = Lock()


def database_url_from_env() -> str:
    """Read DATABASE_URL, rewriting the legacy postgres:// scheme."""
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        logger.warning("Ignoring invalid pool setting", extra={"env_var": name})
        return default


def build_db_engine(url: str) -> Engine:
    """
    Create an engine for the record store.

    SQLite (local runs) shares one connection across the store client's
    worker threads. Every other backend gets a pre-pinged QueuePool.
    """
    if make_url(url).get_backend_name() == "sqlite":
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=_int_env("DB_POOL_SIZE", 5),
        max_overflow=_int_env("DB_MAX_OVERFLOW", 10),
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def get_db_engine() -> Engine:
    """Process-wide engine, created from DATABASE_URL on first use."""
    global _db_engine
    with _lock:
        if _db_engine is None:
            url = database_url_from_env()
            _db_engine = build_db_engine(url)
            logger.info(
                "Record store engine created",
                extra={"backend": make_url(url).get_backend_name()},
            )
        return _db_engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    engine = get_db_engine()
    with _lock:
        if _session_factory is None:
            _session_factory = sessionmaker(
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
                bind=engine,
            )
        return _session_factory


def reset_db_engine() -> None:
    """Dispose the cached engine so the next call re-reads DATABASE_URL."""
    global _db_engine, _session_factory
    with _lock:
        if _db_engine is not None:
            _db_engine.dispose()
        _db_engine = None
        _session_factory = None


def init_schema(engine: Engine) -> None:
    """Create entitlement tables and indexes if they do not exist."""
    from ferrodesk.models import user_subscription  # noqa: F401 - register model

    Base.metadata.create_all(bind=engine)
    logger.info("Entitlement schema ensured")
