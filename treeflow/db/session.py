from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from treeflow.settings import get_settings

logger = logging.getLogger(__name__)


def _configure_sqlite_connection(dbapi_connection: Any, _connection_record: Any) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly
    dbapi_connection.isolation_level = None
    # SQLite ignores ON DELETE CASCADE / SET NULL unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_begin(conn: Any) -> None:
    conn.exec_driver_sql("BEGIN")


def build_engine(url: str, *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create an engine for ``url`` with storage-level referential actions turned on."""
    if url.startswith("sqlite"):
        engine = create_engine(url, echo=echo, future=True, **kwargs)
        event.listen(engine, "connect", _configure_sqlite_connection)
        event.listen(engine, "begin", _sqlite_begin)
        return engine

    return create_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_timeout=30,
        **kwargs,
    )


@lru_cache(maxsize=1)
def _engine() -> Engine:
    settings = get_settings()
    return build_engine(settings.sqlalchemy_database_url, echo=settings.sql_echo)


@lru_cache(maxsize=1)
def _session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=_engine(), autoflush=False, autocommit=False, future=True)


def get_engine() -> Engine:
    return _engine()


def reset_engine() -> None:
    """Dispose the cached engine so the next session reads fresh settings."""
    if _engine.cache_info().currsize:
        _engine().dispose()
    _session_factory.cache_clear()
    _engine.cache_clear()


def init_db(engine: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    from treeflow.db.base import Base
    from treeflow.db import models  # noqa: F401  (register mappers)

    Base.metadata.create_all(engine or get_engine())


def _release(session: Session) -> None:
    try:
        session.close()
    except SQLAlchemyError as e:
        logger.error("Could not close TreeFlow session: %s", e)


@contextmanager
def db_session() -> Iterator[Session]:
    """Read-mostly session; nothing is committed unless the caller commits.

    Usage:
        with db_session() as session:
            tree_flow = repository.get_tree_flow(session, tree_flow_id)
    """
    session = _session_factory()()
    try:
        yield session
    except Exception as e:
        logger.warning("Rolling back TreeFlow session after error: %s", e)
        session.rollback()
        raise
    finally:
        _release(session)


@contextmanager
def db_transaction() -> Iterator[Session]:
    """Unit of work: commit when the block succeeds, roll back when it raises.

    Routing decisions and connection wiring each run inside one of these so
    they see and produce a consistent snapshot.
    """
    session = _session_factory()()
    try:
        yield session
        session.commit()
        logger.debug("TreeFlow transaction committed")
    except Exception as e:
        logger.warning("TreeFlow transaction rolled back: %s", e)
        session.rollback()
        raise
    finally:
        _release(session)
