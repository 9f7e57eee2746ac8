"""
Admission control - the only way render jobs enter the system.

``submit`` validates the payload, reaps the user's stale jobs, enforces the
per-user concurrency limit, writes the ``queued`` row and enqueues it
through the circuit breaker. A row is never left ``queued`` without a
queue job behind it: if enqueue ultimately fails the row is failed and
the error re-raised.

``submit_and_wait`` adds a short inline wait so fast renders can be
answered in the same call.

Example::

    controller = AdmissionController(store, backend, breaker, channel=channel, waiters=waiters)
    job_id = controller.submit("user-1", {"scene": {...}, "config": {"width": 1920, ...}})
    result = controller.submit_and_wait("user-1", payload, wait_ms=2000)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from renderq.core.errors import AdmissionLimitError, CircuitOpenError, TransientBackendError
from renderq.core.logging import get_logger
from renderq.core.settings import clamp_inline_wait_ms
from renderq.core.timestamps import generate_ulid
from renderq.execution.backends.protocol import EnqueueOptions, QueueBackend, QueueHandle
from renderq.execution.circuit_breaker import CircuitBreaker
from renderq.execution.models import JobStatus, RenderPayload, SubmissionResult
from renderq.execution.retry import BackoffPolicy, RetryContext
from renderq.execution.store import JobStore

log = get_logger(__name__)

DEFAULT_QUEUE = "render-video"


def queue_message(job_id: str, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Body of the queue job that carries a render job to a worker."""
    return {"jobId": job_id, "userId": user_id, "payload": payload}


class AdmissionController:
    """Validates, limits and enqueues render job submissions.

    Args:
        store: Authoritative job store.
        backend: Durable work queue.
        breaker: Guards the enqueue call; while open, submissions fail fast.
        queue_name: Queue that render jobs are placed on.
        max_concurrent_jobs_per_user: Active-job ceiling per user.
        stale_job_minutes: Active jobs untouched this long are reaped.
        enqueue_options: Retry/expiry options attached to each queue job.
        enqueue_attempts: Tries per enqueue for transient backend errors.
        enqueue_retry_policy: Delays between those tries.
        inline_wait_ms: Default wait of ``submit_and_wait``.
        channel: Optional notification channel for "job available" hints.
        waiters: Completion waiter registry used by ``submit_and_wait``.
        metrics: Optional :class:`~renderq.observability.metrics.JobMetrics`.
    """

    def __init__(
        self,
        store: JobStore,
        backend: QueueBackend,
        breaker: CircuitBreaker,
        *,
        queue_name: str = DEFAULT_QUEUE,
        max_concurrent_jobs_per_user: int = 3,
        stale_job_minutes: float = 10.0,
        enqueue_options: EnqueueOptions | None = None,
        enqueue_attempts: int = 3,
        enqueue_retry_policy: BackoffPolicy | None = None,
        inline_wait_ms: int = 500,
        channel: Any = None,
        waiters: Any = None,
        metrics: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._backend = backend
        self._breaker = breaker
        self.queue_name = queue_name
        self.max_concurrent_jobs_per_user = max_concurrent_jobs_per_user
        self._stale_after = timedelta(minutes=stale_job_minutes)
        self._enqueue_options = enqueue_options or EnqueueOptions()
        self._enqueue_attempts = enqueue_attempts
        self._enqueue_retry_policy = enqueue_retry_policy or BackoffPolicy(
            base=0.2, factor=2.0, cap=2.0
        )
        self._inline_wait_ms = inline_wait_ms
        self._channel = channel
        self._waiters = waiters
        self._metrics = metrics
        self._sleep = sleep
        self._user_locks: dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    def submit(self, user_id: str, payload: dict[str, Any], job_id: str | None = None) -> str:
        """Admit a render job and return its id.

        Raises:
            ValidationError: Payload is malformed; nothing is written.
            AdmissionLimitError: User is at the active-job ceiling.
            CircuitOpenError: Enqueue breaker is open; the row is failed.
            TransientBackendError: Enqueue kept failing; the row is failed.
        """
        RenderPayload.parse(payload)

        if job_id is not None and self._store.get(job_id) is not None:
            log.info("submission_duplicate", job_id=job_id, user_id=user_id)
            return job_id
        job_id = job_id or generate_ulid()

        with self._user_lock(user_id):
            self._store.reap_stale(user_id, self._stale_after)

            current = self._store.count_active(user_id)
            if current >= self.max_concurrent_jobs_per_user:
                if self._metrics is not None:
                    self._metrics.record_rejected()
                log.info(
                    "submission_rejected",
                    user_id=user_id,
                    current=current,
                    maximum=self.max_concurrent_jobs_per_user,
                )
                raise AdmissionLimitError(current, self.max_concurrent_jobs_per_user)

            if self._store.insert(job_id, user_id, payload) is None:
                log.info("submission_duplicate", job_id=job_id, user_id=user_id)
                return job_id

            try:
                handle = self._breaker.call(self._enqueue, job_id, user_id, payload)
            except Exception as exc:
                if isinstance(exc, CircuitOpenError) and self._metrics is not None:
                    self._metrics.record_circuit_rejection()
                self._store.mark_failed(job_id, str(exc), expected=[JobStatus.QUEUED])
                log.error(
                    "enqueue_failed",
                    job_id=job_id,
                    user_id=user_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise

        if self._metrics is not None:
            self._metrics.record_enqueued()
        log.info(
            "job_submitted",
            job_id=job_id,
            user_id=user_id,
            queue_job_id=handle.id,
            deduplicated=handle.deduplicated,
        )
        if self._channel is not None:
            self._channel.publish_job_available(self.queue_name, job_id)
        return job_id

    def _enqueue(self, job_id: str, user_id: str, payload: dict[str, Any]) -> QueueHandle:
        options = EnqueueOptions(
            singleton_key=job_id,
            retry_limit=self._enqueue_options.retry_limit,
            retry_delay=self._enqueue_options.retry_delay,
            retry_backoff=self._enqueue_options.retry_backoff,
            expire_in_seconds=self._enqueue_options.expire_in_seconds,
            start_after=self._enqueue_options.start_after,
        )

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            log.warning(
                "enqueue_retry",
                job_id=job_id,
                attempt=attempt,
                retry_in=round(delay, 3),
                error=str(error),
            )

        retry = RetryContext(
            policy=self._enqueue_retry_policy,
            max_attempts=self._enqueue_attempts,
            retry_on=(TransientBackendError,),
            on_retry=on_retry,
            sleep=self._sleep,
        )
        return retry.run(
            self._backend.enqueue, self.queue_name, queue_message(job_id, user_id, payload), options
        )

    def submit_and_wait(
        self,
        user_id: str,
        payload: dict[str, Any],
        wait_ms: int | None = None,
        job_id: str | None = None,
    ) -> SubmissionResult:
        """Submit, then wait up to *wait_ms* (clamped to 0-5000) for the result."""
        job_id = self.submit(user_id, payload, job_id=job_id)
        wait_ms = clamp_inline_wait_ms(wait_ms, self._inline_wait_ms)

        event = None
        if wait_ms > 0 and self._waiters is not None:
            event = self._waiters.wait_for_completion(job_id, timeout=wait_ms / 1000.0)
        if event is None:
            job = self._store.get(job_id)
            if job is not None and job.is_terminal:
                return SubmissionResult(job.id, job.status, job.output_url, job.error)
            return SubmissionResult(job_id, JobStatus.QUEUED)
        return SubmissionResult(
            job_id, JobStatus(event.status), output_url=event.output_url, error=event.error
        )
