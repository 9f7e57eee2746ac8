"""Dead-letter queue - jobs that exhausted their retry budget.

Each render job is forwarded at most once: ``dead_letters.job_id`` is
unique, so a duplicate forward (e.g. a redelivered final attempt) is a
no-op that returns ``None``.

::

    DeadLetterQueue(session_factory)
      ├── .forward(job_id, queue_name, payload, error, attempts)
      ├── .get(entry_id) / .get_by_job(job_id)
      ├── .list_unresolved() / .list_all()
      ├── .resolve(entry_id, by)     ─ mark as handled
      ├── .count_unresolved()
      └── .cleanup_resolved(days)    ─ drop old resolved entries

Example::

    dlq = DeadLetterQueue(session_factory)
    entry = dlq.forward("job-1", "render-video", payload, "encoder crashed", attempts=5)
    dlq.resolve(entry.id, resolved_by="ops@example.com")
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from renderq.core.logging import get_logger
from renderq.core.orm.tables import DeadLetterTable
from renderq.core.timestamps import as_utc, utc_now

log = get_logger(__name__)


@dataclass
class DeadLetter:
    """A job parked for manual inspection."""

    id: str
    job_id: str
    queue_name: str
    user_id: str | None
    payload: dict[str, Any]
    error: str
    attempts: int
    created_at: datetime | None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "user_id": self.user_id,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


def _to_entry(row: DeadLetterTable) -> DeadLetter:
    return DeadLetter(
        id=row.id,
        job_id=row.job_id,
        queue_name=row.queue_name,
        user_id=row.user_id,
        payload=dict(row.payload or {}),
        error=row.error,
        attempts=row.attempts,
        created_at=as_utc(row.created_at),
        resolved_at=as_utc(row.resolved_at),
        resolved_by=row.resolved_by,
    )


class DeadLetterQueue:
    """SQLAlchemy-backed dead-letter destination."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def forward(
        self,
        job_id: str,
        queue_name: str,
        payload: dict[str, Any],
        error: str,
        *,
        attempts: int,
        user_id: str | None = None,
    ) -> DeadLetter | None:
        """Park a job. Returns ``None`` if the job was already forwarded."""
        now = utc_now()
        entry_id = f"dlq_{uuid.uuid4().hex[:16]}"
        try:
            with self._session_factory() as session, session.begin():
                session.add(
                    DeadLetterTable(
                        id=entry_id,
                        job_id=job_id,
                        queue_name=queue_name,
                        user_id=user_id,
                        payload=payload,
                        error=error,
                        attempts=attempts,
                        created_at=now,
                    )
                )
        except IntegrityError:
            log.info("dead_letter_duplicate", job_id=job_id)
            return None
        log.warning("job_dead_lettered", job_id=job_id, queue=queue_name, attempts=attempts)
        return DeadLetter(
            id=entry_id,
            job_id=job_id,
            queue_name=queue_name,
            user_id=user_id,
            payload=payload,
            error=error,
            attempts=attempts,
            created_at=now,
        )

    def get(self, entry_id: str) -> DeadLetter | None:
        with self._session_factory() as session:
            row = session.get(DeadLetterTable, entry_id)
            return _to_entry(row) if row is not None else None

    def get_by_job(self, job_id: str) -> DeadLetter | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(DeadLetterTable).where(DeadLetterTable.job_id == job_id)
            ).first()
            return _to_entry(row) if row is not None else None

    def list_unresolved(self, *, queue_name: str | None = None, limit: int = 100) -> list[DeadLetter]:
        stmt = select(DeadLetterTable).where(DeadLetterTable.resolved_at.is_(None))
        if queue_name is not None:
            stmt = stmt.where(DeadLetterTable.queue_name == queue_name)
        stmt = stmt.order_by(DeadLetterTable.created_at.desc()).limit(limit)
        with self._session_factory() as session:
            return [_to_entry(r) for r in session.scalars(stmt)]

    def list_all(self, *, limit: int = 100, offset: int = 0) -> list[DeadLetter]:
        stmt = (
            select(DeadLetterTable)
            .order_by(DeadLetterTable.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._session_factory() as session:
            return [_to_entry(r) for r in session.scalars(stmt)]

    def resolve(self, entry_id: str, resolved_by: str | None = None) -> bool:
        """Mark an entry as handled. Returns False if missing or already resolved."""
        with self._session_factory() as session, session.begin():
            result = session.execute(
                update(DeadLetterTable)
                .where(DeadLetterTable.id == entry_id, DeadLetterTable.resolved_at.is_(None))
                .values(resolved_at=utc_now(), resolved_by=resolved_by)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def count_unresolved(self) -> int:
        with self._session_factory() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(DeadLetterTable)
                    .where(DeadLetterTable.resolved_at.is_(None))
                ).scalar_one()
            )

    def cleanup_resolved(self, days: float = 90) -> int:
        """Delete resolved entries older than *days*."""
        cutoff = utc_now() - timedelta(days=days)
        with self._session_factory() as session, session.begin():
            result = session.execute(
                delete(DeadLetterTable)
                .where(
                    DeadLetterTable.resolved_at.is_not(None),
                    DeadLetterTable.resolved_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
