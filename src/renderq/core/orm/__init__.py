"""SQLAlchemy ORM layer: declarative base, tables and engine/session factories."""

from renderq.core.orm.base import RenderqBase, TimestampMixin
from renderq.core.orm.session import (
    RenderqSession,
    create_renderq_engine,
    init_db,
    renderq_session_factory,
)
from renderq.core.orm.tables import (
    DeadLetterTable,
    QueueJobTable,
    RenderJobTable,
    RenderJobTransitionTable,
)

__all__ = [
    "RenderqBase",
    "TimestampMixin",
    "RenderqSession",
    "create_renderq_engine",
    "init_db",
    "renderq_session_factory",
    "DeadLetterTable",
    "QueueJobTable",
    "RenderJobTable",
    "RenderJobTransitionTable",
]
