"""JobStore - authoritative, durable record of render-job state.

Every status change is a conditional UPDATE keyed by job id (optionally
user id) and the expected prior status, so concurrent writers never
clobber each other. Successful transitions append to
``render_job_transitions``.

Example:
    >>> store = JobStore(session_factory)
    >>> store.insert("job-1", "user-1", payload)
    >>> store.mark_processing("job-1", attempt=0)
    True
    >>> store.mark_completed("job-1", "https://cdn/renders/job-1.mp4")
    True
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from renderq.core.logging import get_logger
from renderq.core.orm.tables import RenderJobTable, RenderJobTransitionTable
from renderq.core.timestamps import as_utc, utc_now
from renderq.execution.models import (
    ACTIVE_STATUSES,
    JobStatus,
    JobTransition,
    RenderJob,
    validate_job_transition,
)

log = get_logger(__name__)

STALE_JOB_ERROR = "Job timeout - cleaned up by system"


class JobStore:
    """SQLAlchemy-backed job store."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, job_id: str) -> RenderJob | None:
        with self._session_factory() as session:
            row = session.get(RenderJobTable, job_id)
            return RenderJob.from_row(row) if row is not None else None

    def count_active(self, user_id: str) -> int:
        """Number of queued + processing jobs owned by *user_id*."""
        with self._session_factory() as session:
            stmt = select(func.count()).select_from(RenderJobTable).where(
                RenderJobTable.user_id == user_id,
                RenderJobTable.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            return int(session.execute(stmt).scalar_one())

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: JobStatus | Iterable[JobStatus] | None = None,
        limit: int = 100,
    ) -> list[RenderJob]:
        """Select jobs by user and/or status, newest first."""
        stmt = select(RenderJobTable)
        if user_id is not None:
            stmt = stmt.where(RenderJobTable.user_id == user_id)
        if status is not None:
            statuses = [status] if isinstance(status, JobStatus) else list(status)
            stmt = stmt.where(RenderJobTable.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(RenderJobTable.created_at.desc()).limit(limit)
        with self._session_factory() as session:
            return [RenderJob.from_row(row) for row in session.scalars(stmt)]

    def transitions(self, job_id: str) -> list[JobTransition]:
        """Recorded status history of a job, oldest first."""
        stmt = (
            select(RenderJobTransitionTable)
            .where(RenderJobTransitionTable.job_id == job_id)
            .order_by(RenderJobTransitionTable.id)
        )
        with self._session_factory() as session:
            return [
                JobTransition(
                    job_id=row.job_id,
                    from_status=JobStatus(row.from_status) if row.from_status else None,
                    to_status=JobStatus(row.to_status),
                    error=row.error,
                    attempt=row.attempt,
                    created_at=as_utc(row.created_at),
                )
                for row in session.scalars(stmt)
            ]

    def counts_by_status(self) -> dict[str, int]:
        stmt = select(RenderJobTable.status, func.count()).group_by(RenderJobTable.status)
        counts = {s.value: 0 for s in JobStatus}
        with self._session_factory() as session:
            for status, count in session.execute(stmt):
                counts[status] = int(count)
        return counts

    def ping(self) -> None:
        """Round-trip to the database; raises on connectivity problems."""
        with self._session_factory() as session:
            session.execute(text("SELECT 1"))

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def insert(self, job_id: str, user_id: str, payload: dict[str, Any]) -> RenderJob | None:
        """Create a ``queued`` job. Returns ``None`` when *job_id* already exists."""
        now = utc_now()
        try:
            with self._session_factory() as session, session.begin():
                session.add(
                    RenderJobTable(
                        id=job_id,
                        user_id=user_id,
                        status=JobStatus.QUEUED.value,
                        payload=payload,
                        attempt=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                session.flush()
                session.add(
                    RenderJobTransitionTable(
                        job_id=job_id,
                        from_status=None,
                        to_status=JobStatus.QUEUED.value,
                        attempt=0,
                        created_at=now,
                    )
                )
        except IntegrityError:
            log.debug("job_insert_duplicate", job_id=job_id)
            return None
        return RenderJob(
            id=job_id,
            user_id=user_id,
            status=JobStatus.QUEUED,
            payload=payload,
            created_at=now,
            updated_at=now,
        )

    def transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        expected: Iterable[JobStatus],
        user_id: str | None = None,
        updated_before: Any = None,
        **values: Any,
    ) -> bool:
        """Conditionally move *job_id* to *target*.

        The update only applies while the row is in one of *expected*
        (and owned by *user_id* / not touched since *updated_before* when
        given). Returns ``True`` if this call performed the transition.
        """
        expected = list(expected)
        for current in expected:
            validate_job_transition(current, target)

        now = utc_now()
        with self._session_factory() as session, session.begin():
            for current in expected:
                stmt = update(RenderJobTable).where(
                    RenderJobTable.id == job_id,
                    RenderJobTable.status == current.value,
                )
                if user_id is not None:
                    stmt = stmt.where(RenderJobTable.user_id == user_id)
                if updated_before is not None:
                    stmt = stmt.where(RenderJobTable.updated_at < updated_before)
                stmt = stmt.values(status=target.value, updated_at=now, **values).execution_options(
                    synchronize_session=False
                )
                result = session.execute(stmt)
                if result.rowcount == 1:
                    attempt = values.get("attempt")
                    if attempt is None:
                        attempt = session.execute(
                            select(RenderJobTable.attempt).where(RenderJobTable.id == job_id)
                        ).scalar_one()
                    session.add(
                        RenderJobTransitionTable(
                            job_id=job_id,
                            from_status=current.value,
                            to_status=target.value,
                            error=values.get("error"),
                            attempt=attempt,
                            created_at=now,
                        )
                    )
                    return True
        return False

    def mark_processing(self, job_id: str, attempt: int) -> bool:
        return self.transition(
            job_id,
            JobStatus.PROCESSING,
            expected=[JobStatus.QUEUED],
            attempt=attempt,
        )

    def mark_completed(self, job_id: str, output_url: str) -> bool:
        return self.transition(
            job_id,
            JobStatus.COMPLETED,
            expected=[JobStatus.PROCESSING],
            output_url=output_url,
            error=None,
        )

    def mark_requeued(self, job_id: str, error: str) -> bool:
        """Send a failed attempt back to ``queued``, keeping the error visible."""
        return self.transition(
            job_id,
            JobStatus.QUEUED,
            expected=[JobStatus.PROCESSING],
            error=error,
        )

    def mark_failed(
        self,
        job_id: str,
        error: str,
        *,
        expected: Iterable[JobStatus] = (JobStatus.PROCESSING, JobStatus.QUEUED),
        user_id: str | None = None,
    ) -> bool:
        return self.transition(
            job_id,
            JobStatus.FAILED,
            expected=expected,
            user_id=user_id,
            error=error,
        )

    def reap_stale(self, user_id: str, older_than: timedelta) -> list[str]:
        """Fail the user's active jobs untouched for longer than *older_than*.

        Guards admission against jobs orphaned by crashed workers.
        """
        cutoff = utc_now() - older_than
        stmt = select(RenderJobTable.id).where(
            RenderJobTable.user_id == user_id,
            RenderJobTable.status.in_([s.value for s in ACTIVE_STATUSES]),
            RenderJobTable.updated_at < cutoff,
        )
        with self._session_factory() as session:
            candidates = list(session.scalars(stmt))

        reaped = []
        for job_id in candidates:
            if self.transition(
                job_id,
                JobStatus.FAILED,
                expected=[JobStatus.PROCESSING, JobStatus.QUEUED],
                user_id=user_id,
                updated_before=cutoff,
                error=STALE_JOB_ERROR,
            ):
                reaped.append(job_id)
        if reaped:
            log.warning("stale_jobs_reaped", user_id=user_id, count=len(reaped), job_ids=reaped)
        return reaped
