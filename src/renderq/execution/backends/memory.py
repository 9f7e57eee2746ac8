"""In-memory queue adapter.

Same contract as :class:`~renderq.execution.backends.sql.SqlQueueBackend`
behind a single lock. Used by tests and single-process deployments where
durability across restarts is not needed.
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from renderq.core.logging import get_logger
from renderq.core.timestamps import utc_now
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


class InMemoryQueueBackend:
    """Thread-safe in-process queue."""

    def __init__(
        self,
        *,
        retry_delay_cap: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._jobs: dict[str, QueueJob] = {}
        self._updated: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._retry_delay_cap = retry_delay_cap
        self._clock = clock

    def _live_by_key(self, queue_name: str, key: str) -> QueueJob | None:
        for job in self._jobs.values():
            if job.queue_name == queue_name and job.singleton_key == key and job.state.is_live:
                return job
        return None

    def _touch(self, job: QueueJob, now: datetime) -> None:
        self._updated[job.id] = now

    def enqueue(
        self, queue_name: str, payload: dict[str, Any], options: EnqueueOptions
    ) -> QueueHandle:
        with self._lock:
            if options.singleton_key is not None:
                existing = self._live_by_key(queue_name, options.singleton_key)
                if existing is not None:
                    return QueueHandle(existing.id, queue_name, deduplicated=True)
            now = self._clock()
            job = QueueJob(
                id=str(uuid.uuid4()),
                queue_name=queue_name,
                payload=copy.deepcopy(payload),
                state=QueueState.CREATED,
                attempt=0,
                retry_limit=options.retry_limit,
                retry_delay=options.retry_delay,
                retry_backoff=options.retry_backoff,
                expire_in_seconds=options.expire_in_seconds,
                singleton_key=options.singleton_key,
                created_at=now,
                start_after=now + timedelta(seconds=options.start_after),
            )
            self._jobs[job.id] = job
            self._touch(job, now)
            return QueueHandle(job.id, queue_name)

    def fetch(self, queue_name: str, batch_size: int = 1) -> list[QueueJob]:
        claimed: list[QueueJob] = []
        with self._lock:
            now = self._clock()
            due = sorted(
                (
                    j
                    for j in self._jobs.values()
                    if j.queue_name == queue_name
                    and j.state in PENDING_STATES
                    and j.start_after is not None
                    and j.start_after <= now
                ),
                key=lambda j: (j.start_after, j.created_at),
            )
            for job in due[: max(0, batch_size)]:
                job.state = QueueState.ACTIVE
                job.started_at = now
                self._touch(job, now)
                claimed.append(copy.deepcopy(job))
        return claimed

    def complete(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != QueueState.ACTIVE:
                log.warning("queue_complete_skipped", queue_job_id=job_id)
                return False
            job.state = QueueState.COMPLETED
            self._touch(job, self._clock())
            return True

    def fail(self, job_id: str, error: str) -> FailOutcome:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != QueueState.ACTIVE:
                log.warning("queue_fail_skipped", queue_job_id=job_id)
                return FailOutcome(job_id=job_id, final=True, attempt=job.attempt if job else 0)
            now = self._clock()
            job.last_error = error
            self._touch(job, now)
            if job.is_final_attempt:
                job.state = QueueState.FAILED
                return FailOutcome(job_id=job_id, final=True, attempt=job.attempt)
            retry_in = retry_policy_for(job, self._retry_delay_cap).delay(job.attempt)
            job.attempt += 1
            job.state = QueueState.RETRY
            job.started_at = None
            job.start_after = now + timedelta(seconds=retry_in)
            return FailOutcome(job_id=job_id, final=False, attempt=job.attempt, retry_in=retry_in)

    def get(self, job_id: str) -> QueueJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def expire_stale(self) -> list[QueueJob]:
        expired: list[QueueJob] = []
        with self._lock:
            now = self._clock()
            for job in self._jobs.values():
                if not job.state.is_live or job.created_at is None:
                    continue
                if (now - job.created_at).total_seconds() > job.expire_in_seconds:
                    job.state = QueueState.EXPIRED
                    job.last_error = "expired"
                    self._touch(job, now)
                    expired.append(copy.deepcopy(job))
        if expired:
            log.warning("queue_jobs_expired", count=len(expired))
        return expired

    def stats(self, queue_name: str | None = None) -> QueueStats:
        counts: dict[str, int] = {}
        with self._lock:
            for job in self._jobs.values():
                if queue_name is not None and job.queue_name != queue_name:
                    continue
                counts[job.state.value] = counts.get(job.state.value, 0) + 1
        return QueueStats.from_counts(counts)

    def purge_terminal(self, older_than_seconds: float) -> int:
        with self._lock:
            cutoff = self._clock() - timedelta(seconds=older_than_seconds)
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state in TERMINAL_STATES and self._updated.get(job_id, cutoff) < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
                self._updated.pop(job_id, None)
            return len(doomed)
