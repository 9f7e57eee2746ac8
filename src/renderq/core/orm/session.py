"""SQLAlchemy engine factory and session factory.

* ``create_renderq_engine`` -- Create a SA engine from a URL.
* ``RenderqSession``        -- Session with ``expire_on_commit=False``.
* ``renderq_session_factory`` -- ``sessionmaker`` producing ``RenderqSession``.
* ``init_db``               -- Create all renderq tables.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from renderq.core.orm.base import RenderqBase


def create_renderq_engine(
    url: str = "sqlite:///renderq.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///...``, ``postgresql+psycopg://...``, etc.)
    echo:
        If ``True``, log all SQL.
    pool_size, max_overflow, pool_timeout:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        # Worker threads share the engine; writers wait instead of failing fast.
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)

        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    pool_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    if pool_timeout is not None:
        pool_kwargs["pool_timeout"] = pool_timeout

    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class RenderqSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Rows handed out by the stores stay readable after their session closes.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def renderq_session_factory(engine: Engine) -> sessionmaker[RenderqSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``RenderqSession`` instances."""
    return sessionmaker(bind=engine, class_=RenderqSession)


def init_db(engine: Engine) -> None:
    """Create every renderq table that does not exist yet."""
    # Register mappers before create_all.
    from renderq.core.orm import tables  # noqa: F401

    RenderqBase.metadata.create_all(engine)
