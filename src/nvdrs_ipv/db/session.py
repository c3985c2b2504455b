"""Database engine and session helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

SQLITE_BUSY_TIMEOUT_MS = 30000

# -----------------------------------------------------------------------------
# Engine helpers
# -----------------------------------------------------------------------------

def is_memory_url(url: str) -> bool:
    """True for SQLite URLs that point at an in-memory database."""
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def _configure_sqlite(engine: Engine, in_memory: bool) -> None:
    """
    Take over transaction control from pysqlite.

    Every transaction starts with BEGIN IMMEDIATE, so the write lock is held
    from the start and concurrent writers wait on busy_timeout.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Return a SQLAlchemy engine for ``url``.

    SQLite engines enforce foreign keys and use WAL journaling; an in-memory
    SQLite database is pinned to a single connection so every session sees the
    same data. Other backends get connection pre-ping.
    """
    kwargs = {"pool_pre_ping": True, "echo": echo}
    in_memory = is_memory_url(url)
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if in_memory:
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine, in_memory)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``."""
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# -----------------------------------------------------------------------------
# Context managers
# -----------------------------------------------------------------------------

@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as s:
            s.execute(...)
    """
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "create_db_engine",
    "is_memory_url",
    "make_session_factory",
    "session_scope",
]
