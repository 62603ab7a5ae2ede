"""Engine, session and declarative base for the ReachOut engine.

The engine is built lazily on first use so ``DATABASE_URL`` is read at run
time. SQLite (dev and tests) shares one connection across threads; anything
else gets a pooled engine sized for the API plus scheduler triggers.
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base shared by every model."""


DEFAULT_DATABASE_URL = "sqlite:///./reachout_engine.db"

_ASYNC_POSTGRES_MARKERS = ("asyncpg", "aiopg", "async")


def _sync_driver(url: URL) -> URL:
    backend, _, driver = url.drivername.partition("+")
    if backend == "postgresql" and any(m in driver for m in _ASYNC_POSTGRES_MARKERS):
        return url.set(drivername="postgresql+psycopg")
    if backend == "sqlite" and driver == "aiosqlite":
        return url.set(drivername="sqlite")
    return url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Resolve the database URL, rewritten to a synchronous driver.

    Precedence: explicit argument, ``DATABASE_URL``, settings, default.
    """
    from ..config import get_settings

    raw = (
        raw_url
        or os.getenv("DATABASE_URL")
        or get_settings().database_url
        or DEFAULT_DATABASE_URL
    )
    # render_as_string keeps the password; str(url) would mask it
    return _sync_driver(make_url(raw)).render_as_string(hide_password=False)


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first call."""
    global _engine
    if _engine is None:
        database_url = get_database_url()
        _engine = create_engine(database_url, **_engine_options(database_url))
    return _engine


def get_session_local() -> sessionmaker:
    """Session factory bound to the process-wide engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for batch entry points; rolled back on error, always closed."""
    db = get_session_local()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_database(engine: Optional[Engine] = None) -> None:
    """Create missing tables. Alembic owns schema changes after that."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
