"""Engine and session wiring for the marketplace ledger database.

Webhook deliveries and buyer confirm calls run in FastAPI's threadpool and may
write the same order rows concurrently. On PostgreSQL the row-level guards in
the ledger are enough. SQLite only has a database-wide write lock, so engines
built with ``serialize_writes`` take that lock when a transaction begins
instead of trying to upgrade a read lock halfway through.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def normalize_database_url(url: str) -> str:
    # Heroku-style URLs still use the legacy scheme.
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def make_engine(url: Optional[str] = None, *, serialize_writes: bool = False) -> Engine:
    """Build an engine for the ledger database, defaulting to ``DATABASE_URL``."""
    url = normalize_database_url(url or get_settings().database_url)
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
    )
    if serialize_writes:

        @event.listens_for(engine, "connect")
        def _manual_transactions(dbapi_connection, connection_record):
            # Stop pysqlite from issuing its own deferred BEGIN.
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(connection):
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False)


engine = make_engine(serialize_writes=True)
SessionLocal = make_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create any missing ledger tables."""
    from .models import Base

    Base.metadata.create_all(bind=bind or engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a session for one API request; routes commit their own work."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: Optional[Callable[[], Session]] = None) -> Generator[Session, None, None]:
    """Run a unit of work outside a request, such as a reconciliation pass."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
