"""SQLAlchemy queue adapter.

Jobs live in ``queue_jobs``. Claiming is a conditional UPDATE
(``WHERE id = ? AND state IN ('created', 'retry')``) with a rowcount
check, so competing workers - threads or processes - never receive the
same delivery. On PostgreSQL the candidate scan additionally uses
``FOR UPDATE SKIP LOCKED``.

Deduplication by singleton key is enforced by the partial unique index
``uq_queue_jobs_live_singleton``; losing an insert race resolves to the
existing live job.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from renderq.core.errors import TransientBackendError
from renderq.core.logging import get_logger
from renderq.core.orm.tables import QueueJobTable
from renderq.core.timestamps import as_utc, seconds_since, utc_now
from renderq.execution.backends.protocol import (
    PENDING_STATES,
    TERMINAL_STATES,
    EnqueueOptions,
    FailOutcome,
    QueueHandle,
    QueueJob,
    QueueState,
    QueueStats,
    retry_policy_for,
)

log = get_logger(__name__)

_LIVE = [s.value for s in QueueState if s.is_live]
_PENDING = [s.value for s in PENDING_STATES]
_TERMINAL = [s.value for s in TERMINAL_STATES]


def _to_job(row: QueueJobTable) -> QueueJob:
    return QueueJob(
        id=row.id,
        queue_name=row.queue_name,
        payload=dict(row.payload or {}),
        state=QueueState(row.state),
        attempt=row.attempt,
        retry_limit=row.retry_limit,
        retry_delay=row.retry_delay,
        retry_backoff=bool(row.retry_backoff),
        expire_in_seconds=row.expire_in_seconds,
        singleton_key=row.singleton_key,
        last_error=row.last_error,
        created_at=as_utc(row.created_at),
        started_at=as_utc(row.started_at),
        start_after=as_utc(row.start_after),
    )


class SqlQueueBackend:
    """Durable queue over the shared relational store."""

    def __init__(self, session_factory: sessionmaker[Session], *, retry_delay_cap: float = 3600.0):
        self._session_factory = session_factory
        self._retry_delay_cap = retry_delay_cap
        bind = session_factory.kw.get("bind")
        self._skip_locked = bind is not None and bind.dialect.name == "postgresql"

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Surface driver-level failures as TransientBackendError."""
        try:
            yield
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise TransientBackendError(f"queue {operation} failed: {exc.orig}", cause=exc) from exc

    def _find_live(self, session: Session, queue_name: str, singleton_key: str) -> QueueJobTable | None:
        stmt = select(QueueJobTable).where(
            QueueJobTable.queue_name == queue_name,
            QueueJobTable.singleton_key == singleton_key,
            QueueJobTable.state.in_(_LIVE),
        )
        return session.scalars(stmt).first()

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    def enqueue(
        self, queue_name: str, payload: dict[str, Any], options: EnqueueOptions
    ) -> QueueHandle:
        key = options.singleton_key
        with self._translate_errors("enqueue"):
            if key is not None:
                with self._session_factory() as session:
                    existing = self._find_live(session, queue_name, key)
                    if existing is not None:
                        log.debug("enqueue_deduplicated", queue=queue_name, singleton_key=key)
                        return QueueHandle(existing.id, queue_name, deduplicated=True)

            now = utc_now()
            job_id = str(uuid.uuid4())
            try:
                with self._session_factory() as session, session.begin():
                    session.add(
                        QueueJobTable(
                            id=job_id,
                            queue_name=queue_name,
                            singleton_key=key,
                            state=QueueState.CREATED.value,
                            payload=payload,
                            attempt=0,
                            retry_limit=options.retry_limit,
                            retry_delay=options.retry_delay,
                            retry_backoff=options.retry_backoff,
                            expire_in_seconds=options.expire_in_seconds,
                            start_after=now + timedelta(seconds=options.start_after),
                            created_at=now,
                            updated_at=now,
                        )
                    )
            except IntegrityError as exc:
                if key is None:
                    raise TransientBackendError("queue enqueue conflict", cause=exc) from exc
                with self._session_factory() as session:
                    existing = self._find_live(session, queue_name, key)
                if existing is None:
                    raise TransientBackendError(
                        f"singleton conflict for {key} but no live job found", cause=exc
                    ) from exc
                return QueueHandle(existing.id, queue_name, deduplicated=True)

        log.debug("job_enqueued", queue=queue_name, queue_job_id=job_id, singleton_key=key)
        return QueueHandle(job_id, queue_name)

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #

    def fetch(self, queue_name: str, batch_size: int = 1) -> list[QueueJob]:
        """Claim up to *batch_size* due jobs for this consumer."""
        if batch_size <= 0:
            return []
        now = utc_now()
        with self._translate_errors("fetch"):
            stmt = (
                select(QueueJobTable.id)
                .where(
                    QueueJobTable.queue_name == queue_name,
                    QueueJobTable.state.in_(_PENDING),
                    QueueJobTable.start_after <= now,
                )
                .order_by(QueueJobTable.start_after, QueueJobTable.created_at)
                .limit(batch_size)
            )
            if self._skip_locked:
                stmt = stmt.with_for_update(skip_locked=True)

            claimed: list[QueueJob] = []
            with self._session_factory() as session, session.begin():
                candidates = list(session.scalars(stmt))
                for job_id in candidates:
                    result = session.execute(
                        update(QueueJobTable)
                        .where(QueueJobTable.id == job_id, QueueJobTable.state.in_(_PENDING))
                        .values(state=QueueState.ACTIVE.value, started_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue  # claimed by a competing consumer
                    row = session.get(QueueJobTable, job_id, populate_existing=True)
                    if row is not None:
                        claimed.append(_to_job(row))
            return claimed

    def complete(self, job_id: str) -> bool:
        now = utc_now()
        with self._translate_errors("complete"), self._session_factory() as session, session.begin():
            result = session.execute(
                update(QueueJobTable)
                .where(QueueJobTable.id == job_id, QueueJobTable.state == QueueState.ACTIVE.value)
                .values(state=QueueState.COMPLETED.value, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                log.warning("queue_complete_skipped", queue_job_id=job_id)
                return False
            return True

    def fail(self, job_id: str, error: str) -> FailOutcome:
        """Record a failed delivery: schedule a retry or fail terminally."""
        now = utc_now()
        with self._translate_errors("fail"), self._session_factory() as session, session.begin():
            row = session.get(QueueJobTable, job_id)
            if row is None or row.state != QueueState.ACTIVE.value:
                log.warning("queue_fail_skipped", queue_job_id=job_id)
                attempt = row.attempt if row is not None else 0
                return FailOutcome(job_id=job_id, final=True, attempt=attempt)

            job = _to_job(row)
            stmt = update(QueueJobTable).where(
                QueueJobTable.id == job_id,
                QueueJobTable.state == QueueState.ACTIVE.value,
                QueueJobTable.attempt == job.attempt,
            )
            if job.is_final_attempt:
                stmt = stmt.values(
                    state=QueueState.FAILED.value,
                    completed_at=now,
                    updated_at=now,
                    last_error=error,
                )
                outcome = FailOutcome(job_id=job_id, final=True, attempt=job.attempt)
            else:
                retry_in = retry_policy_for(job, self._retry_delay_cap).delay(job.attempt)
                stmt = stmt.values(
                    state=QueueState.RETRY.value,
                    attempt=job.attempt + 1,
                    start_after=now + timedelta(seconds=retry_in),
                    started_at=None,
                    updated_at=now,
                    last_error=error,
                )
                outcome = FailOutcome(
                    job_id=job_id, final=False, attempt=job.attempt + 1, retry_in=retry_in
                )
            result = session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount != 1:
                return FailOutcome(job_id=job_id, final=True, attempt=job.attempt)
            return outcome

    def get(self, job_id: str) -> QueueJob | None:
        with self._translate_errors("get"), self._session_factory() as session:
            row = session.get(QueueJobTable, job_id)
            return _to_job(row) if row is not None else None

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def expire_stale(self) -> list[QueueJob]:
        """Abandon live jobs older than their ``expire_in_seconds``."""
        now = utc_now()
        with self._translate_errors("expire"):
            with self._session_factory() as session:
                rows = list(session.scalars(select(QueueJobTable).where(QueueJobTable.state.in_(_LIVE))))
            due = [_to_job(r) for r in rows if seconds_since(r.created_at, now) > r.expire_in_seconds]

            expired: list[QueueJob] = []
            for job in due:
                with self._session_factory() as session, session.begin():
                    result = session.execute(
                        update(QueueJobTable)
                        .where(QueueJobTable.id == job.id, QueueJobTable.state.in_(_LIVE))
                        .values(
                            state=QueueState.EXPIRED.value,
                            completed_at=now,
                            updated_at=now,
                            last_error="expired",
                        )
                        .execution_options(synchronize_session=False)
                    )
                if result.rowcount == 1:
                    job.state = QueueState.EXPIRED
                    expired.append(job)
        if expired:
            log.warning("queue_jobs_expired", count=len(expired))
        return expired

    def stats(self, queue_name: str | None = None) -> QueueStats:
        stmt = select(QueueJobTable.state, func.count()).group_by(QueueJobTable.state)
        if queue_name is not None:
            stmt = stmt.where(QueueJobTable.queue_name == queue_name)
        with self._translate_errors("stats"), self._session_factory() as session:
            counts = {state: int(count) for state, count in session.execute(stmt)}
        return QueueStats.from_counts(counts)

    def purge_terminal(self, older_than_seconds: float) -> int:
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        with self._translate_errors("purge"), self._session_factory() as session, session.begin():
            result = session.execute(
                delete(QueueJobTable)
                .where(QueueJobTable.state.in_(_TERMINAL), QueueJobTable.updated_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
