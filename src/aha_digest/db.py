from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import Settings, get_settings

SQLITE_BUSY_TIMEOUT_MS = 5000

_engines: dict[str, Engine] = {}
_sessionmakers: dict[str, sessionmaker[Session]] = {}


class Base(DeclarativeBase):
    """Declarative base for every aha-digest table."""


def _configure_sqlite(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def _sqlite_path(db_url: str) -> Path | None:
    if not db_url.startswith("sqlite:///"):
        return None
    raw = db_url.removeprefix("sqlite:///")
    if not raw or raw == ":memory:":
        return None
    return Path(raw)


def get_engine(settings: Settings | None = None) -> Engine:
    db_url = (settings or get_settings()).db_url
    engine = _engines.get(db_url)
    if engine is None:
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(engine, "connect", _configure_sqlite)
        _engines[db_url] = engine
    return engine


def _sessionmaker(settings: Settings) -> sessionmaker[Session]:
    factory = _sessionmakers.get(settings.db_url)
    if factory is None:
        factory = sessionmaker(bind=get_engine(settings), autoflush=False)
        _sessionmakers[settings.db_url] = factory
    return factory


def init_db(settings: Settings | None = None) -> None:
    active_settings = settings or get_settings()
    path = _sqlite_path(active_settings.db_url)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)

    from . import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine(active_settings))


@contextmanager
def session_scope(settings: Settings | None = None) -> Iterator[Session]:
    """Yield a session; uncommitted work is rolled back on error.

    Callers commit explicitly.
    """
    session = _sessionmaker(settings or get_settings())()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_engines() -> None:
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
    _sessionmakers.clear()
