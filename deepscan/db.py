from __future__ import annotations

import math
import threading
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from deepscan.config import get_settings
from deepscan.models import Base


class PersistenceWriteFailure(RuntimeError):
    """A write to the persistence store failed or timed out."""


_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def create_db_engine(url: str, timeout: float | None = None) -> Engine:
    """Create an engine with a bounded wait on every connection and lock.

    SQLite transactions start with ``BEGIN IMMEDIATE`` so concurrent writers
    queue on the busy timeout instead of failing on lock upgrade.
    """
    if timeout is None:
        timeout = get_settings().db_timeout_seconds
    if not url.startswith("sqlite"):
        return create_engine(
            url, pool_timeout=timeout, pool_pre_ping=True, connect_args=server_connect_args(url, timeout),
        )

    kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
    if ":memory:" in url or url == "sqlite://":
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def server_connect_args(url: str, timeout: float) -> dict:
    """Driver arguments bounding connect, statement and lock waits on server databases."""
    seconds = max(1, math.ceil(timeout))
    backend = make_url(url).get_backend_name()
    if backend == "postgresql":
        ms = int(timeout * 1000)
        return {
            "connect_timeout": seconds,
            "options": f"-c statement_timeout={ms} -c lock_timeout={ms}",
        }
    if backend in ("mysql", "mariadb"):
        return {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    return {}


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(url: str | None = None) -> Engine:
    global _engine, _SessionLocal
    settings = get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if url is None:
            settings.ensure_directories()
            url = settings.database_url
        _engine = create_db_engine(url, settings.db_timeout_seconds)
        Base.metadata.create_all(_engine)
        _SessionLocal = make_session_factory(_engine)
        return _engine


def get_session_factory() -> sessionmaker:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, CLI, worker threads)::

        with session_scope() as session:
            ...
    """
    session = (factory or get_session_factory())()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``.

    Usage::

        def db_session() -> Generator[Session, None, None]:
            yield from session_generator()
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
