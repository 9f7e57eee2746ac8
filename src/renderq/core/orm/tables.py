"""SQLAlchemy 2.0 ORM table definitions for renderq.

Tables
------
* ``render_jobs``             -- authoritative job record (JobStore)
* ``render_job_transitions``  -- append-only status history per job
* ``queue_jobs``              -- durable competing-consumers work queue
* ``dead_letters``            -- jobs that exhausted their retry budget

Usage::

    from renderq.core.orm.session import create_renderq_engine, init_db

    engine = create_renderq_engine("sqlite:///renderq.db")
    init_db(engine)
"""

from __future__ import annotations

import datetime

from sqlalchemy import ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from renderq.core.orm.base import RenderqBase, TimestampMixin
from renderq.core.timestamps import utc_now

# Queue states that hold the singleton key.
LIVE_QUEUE_STATES = ("created", "retry", "active")
_LIVE_STATES_SQL = text("state IN ('created', 'retry', 'active')")


class RenderJobTable(TimestampMixin, RenderqBase):
    __tablename__ = "render_jobs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="queued")
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    output_url: Mapped[str | None] = mapped_column(Text, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    attempt: Mapped[int] = mapped_column(nullable=False, default=0)

    __table_args__ = (
        Index("ix_render_jobs_user_status", "user_id", "status"),
        Index("ix_render_jobs_status_updated", "status", "updated_at"),
    )


class RenderJobTransitionTable(RenderqBase):
    __tablename__ = "render_job_transitions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        Text, ForeignKey("render_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(Text, default=None)
    to_status: Mapped[str] = mapped_column(Text, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    attempt: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(nullable=False, default=utc_now)


class QueueJobTable(TimestampMixin, RenderqBase):
    __tablename__ = "queue_jobs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    queue_name: Mapped[str] = mapped_column(Text, nullable=False)
    singleton_key: Mapped[str | None] = mapped_column(Text, default=None)
    state: Mapped[str] = mapped_column(Text, nullable=False, default="created")
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    attempt: Mapped[int] = mapped_column(nullable=False, default=0)
    retry_limit: Mapped[int] = mapped_column(nullable=False, default=5)
    retry_delay: Mapped[float] = mapped_column(nullable=False, default=30.0)
    retry_backoff: Mapped[bool] = mapped_column(nullable=False, default=True)
    expire_in_seconds: Mapped[int] = mapped_column(nullable=False, default=7200)
    start_after: Mapped[datetime.datetime] = mapped_column(nullable=False, default=utc_now)
    started_at: Mapped[datetime.datetime | None] = mapped_column(default=None)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)

    __table_args__ = (
        Index(
            "uq_queue_jobs_live_singleton",
            "queue_name",
            "singleton_key",
            unique=True,
            sqlite_where=_LIVE_STATES_SQL,
            postgresql_where=_LIVE_STATES_SQL,
        ),
        Index("ix_queue_jobs_fetch", "queue_name", "state", "start_after"),
    )


class DeadLetterTable(RenderqBase):
    __tablename__ = "dead_letters"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    job_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    queue_name: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str | None] = mapped_column(Text, default=None)
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(nullable=False, default=utc_now)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(default=None)
    resolved_by: Mapped[str | None] = mapped_column(Text, default=None)
