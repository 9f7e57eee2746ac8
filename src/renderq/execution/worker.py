"""Render worker - claims queue jobs and drives them to a terminal state.

Per claimed job::

    guard   ── row already terminal? re-publish, ack, stop
    claim   ── queued → processing (attempt mirrored from the queue)
    render  ── validate payload, renderer.render(), finalizer.finalize()
    success ── processing → completed, publish, ack
    failure ── final attempt?  processing → failed, publish, dead-letter
               otherwise       processing → queued (error kept)
               then queue.fail() schedules redelivery or records failure
    error   ── a store or queue call raised: queue.fail() decides, the row follows

The poll loop wakes every ``poll_interval`` seconds or as soon as a
"job available" hint arrives, and only claims as many jobs as there are
free slots in the thread pool.

Usage (programmatic)::

    worker = RenderWorker(store, backend, renderer, channel=channel, dlq=dlq)
    worker.start()  # blocking - runs until SIGINT/SIGTERM

Usage (CLI)::

    renderq worker start --renderer mypkg.render:create_renderer --concurrency 4
"""

from __future__ import annotations

import signal
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from renderq.core.errors import ValidationError
from renderq.core.events.models import NotificationEvent
from renderq.core.logging import LogContext, get_logger
from renderq.core.timestamps import utc_now
from renderq.execution.backends.protocol import QueueBackend, QueueJob
from renderq.execution.collaborators import (
    PassthroughFinalizer,
    Renderer,
    StorageFinalizer,
    destination_key,
)
from renderq.execution.models import RenderPayload
from renderq.execution.store import JobStore
from renderq.execution.waiters import event_from_job

log = get_logger(__name__)

EXPIRED_JOB_ERROR = "Job expired before completion"


@dataclass
class WorkerStats:
    """Aggregate statistics for a worker."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    expired: int = 0
    active: int = 0
    concurrency: int = 0
    running: bool = False
    uptime_seconds: float = 0.0
    last_poll_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "skipped": self.skipped,
            "expired": self.expired,
            "active": self.active,
            "concurrency": self.concurrency,
            "running": self.running,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


class RenderWorker:
    """Competing consumer of the render queue.

    Args:
        store: Authoritative job store.
        backend: Queue to claim jobs from.
        renderer: Render collaborator.
        finalizer: Storage collaborator; defaults to
            :class:`PassthroughFinalizer`.
        channel: Optional notification channel (publishes results, wakes on
            "job available").
        dlq: Optional dead-letter queue for exhausted jobs.
        queue_name: Queue to consume.
        concurrency: Thread pool size.
        poll_interval: Seconds between polls when no hint arrives.
        drain_timeout: Seconds ``stop`` waits for in-flight jobs.
        maintenance_interval: Seconds between expiry sweeps.
        dead_letter_enabled: Forward exhausted jobs to *dlq*.
        metrics: Optional :class:`~renderq.observability.metrics.JobMetrics`.
    """

    def __init__(
        self,
        store: JobStore,
        backend: QueueBackend,
        renderer: Renderer,
        finalizer: StorageFinalizer | None = None,
        *,
        channel: Any = None,
        dlq: Any = None,
        queue_name: str = "render-video",
        concurrency: int = 2,
        poll_interval: float = 2.0,
        drain_timeout: float = 30.0,
        maintenance_interval: float = 60.0,
        dead_letter_enabled: bool = True,
        metrics: Any = None,
        worker_id: str | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._store = store
        self._backend = backend
        self._renderer = renderer
        self._finalizer = finalizer or PassthroughFinalizer()
        self._channel = channel
        self._dlq = dlq
        self.queue_name = queue_name
        self.concurrency = concurrency
        self._poll_interval = poll_interval
        self._drain_timeout = drain_timeout
        self._maintenance_interval = maintenance_interval
        self._dead_letter_enabled = dead_letter_enabled
        self._metrics = metrics
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

        self._shutdown = threading.Event()
        self._wake = threading.Event()
        self._running = False
        self._thread: threading.Thread | None = None
        self._started_at = utc_now()
        self._last_maintenance = 0.0
        self._stats = WorkerStats(concurrency=concurrency)
        self._stats_lock = threading.Lock()
        self._inflight: set[Future[str]] = set()
        self._inflight_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=self.worker_id)

        self._handler_id: str | None = None
        if channel is not None:
            self._handler_id = channel.on_job_available(self._on_job_available)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Run the poll loop (blocking) until ``stop`` or SIGINT/SIGTERM."""
        log.info(
            "worker_starting",
            worker_id=self.worker_id,
            queue=self.queue_name,
            concurrency=self.concurrency,
            poll_interval=self._poll_interval,
        )
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            log.debug("signal_handlers_skipped", reason="not main thread")

        self._running = True
        try:
            self._run_loop()
        finally:
            self._running = False
            self._drain()

    def start_background(self) -> threading.Thread:
        """Start the worker in a daemon thread. Returns the thread."""
        thread = threading.Thread(target=self.start, name=f"{self.worker_id}-loop", daemon=True)
        self._thread = thread
        thread.start()
        return thread

    def stop(self) -> None:
        """Stop claiming new jobs; ``start`` drains and returns."""
        log.info("worker_stopping", worker_id=self.worker_id)
        self._shutdown.set()
        self._wake.set()
        if self._channel is not None and self._handler_id is not None:
            self._channel.remove_handler(self._handler_id)
            self._handler_id = None

    def close(self) -> None:
        """Stop and return once in-flight jobs have drained.

        A background loop drains itself, so close joins it; otherwise the
        drain runs here when the poll loop is not running.
        """
        was_running = self._running
        thread = self._thread
        self.stop()
        if thread is not None and thread is not threading.current_thread():
            thread.join(self._drain_timeout + self._poll_interval + 1.0)
            if thread.is_alive():
                log.warning("worker_loop_join_timeout", worker_id=self.worker_id)
            self._thread = None
        elif not was_running:
            self._drain()

    @property
    def is_running(self) -> bool:
        return self._running and not self._shutdown.is_set()

    @property
    def active_count(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def get_stats(self) -> WorkerStats:
        with self._stats_lock:
            self._stats.active = self.active_count
            self._stats.running = self.is_running
            self._stats.uptime_seconds = (utc_now() - self._started_at).total_seconds()
            return WorkerStats(**vars(self._stats))

    # ------------------------------------------------------------------ #
    # Poll loop
    # ------------------------------------------------------------------ #

    def _on_job_available(self, hint: Any) -> None:
        if getattr(hint, "queue", self.queue_name) == self.queue_name:
            self._wake.set()

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                self._maybe_run_maintenance()
                self.run_once(wait=False)
            except Exception:
                log.exception("worker_poll_error", worker_id=self.worker_id)
            self._wake.wait(self._poll_interval)
            self._wake.clear()

    def run_once(self, wait: bool = True) -> int:
        """One poll cycle: claim up to the free slot count and dispatch.

        With *wait*, blocks until the dispatched jobs finish. Returns the
        number of jobs claimed.
        """
        free = self.concurrency - self.active_count
        with self._stats_lock:
            self._stats.last_poll_at = utc_now()
        if free <= 0:
            return 0
        jobs = self._backend.fetch(self.queue_name, batch_size=free)
        futures = []
        for job in jobs:
            future = self._pool.submit(self.process_job, job)
            with self._inflight_lock:
                self._inflight.add(future)
            future.add_done_callback(self._job_done)
            futures.append(future)
        if jobs:
            log.debug("jobs_claimed", worker_id=self.worker_id, count=len(jobs))
        if wait and futures:
            wait_futures(futures)
        return len(jobs)

    def _job_done(self, future: Future[str]) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)
        if not future.cancelled():
            exc = future.exception()
            if exc is not None:
                log.error(
                    "job_future_failed",
                    worker_id=self.worker_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=exc,
                )
        self._wake.set()

    def _drain(self) -> None:
        with self._inflight_lock:
            pending = list(self._inflight)
        if pending:
            log.info("worker_draining", count=len(pending), timeout=self._drain_timeout)
            _, not_done = wait_futures(pending, timeout=self._drain_timeout)
            if not_done:
                log.warning("worker_drain_timeout", remaining=len(not_done))
        self._pool.shutdown(wait=False, cancel_futures=True)
        stats = self.get_stats()
        log.info(
            "worker_stopped",
            worker_id=self.worker_id,
            processed=stats.processed,
            failed=stats.failed,
        )

    def _handle_signal(self, signum: int, frame: Any) -> None:
        log.info("worker_signal_received", signal=signum)
        self.stop()

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def _maybe_run_maintenance(self) -> None:
        now = time.monotonic()
        if now - self._last_maintenance < self._maintenance_interval:
            return
        self._last_maintenance = now
        self.run_maintenance()

    def run_maintenance(self) -> int:
        """Expire overdue queue jobs and fail their job rows. Returns count."""
        failed = 0
        for queue_job in self._backend.expire_stale():
            job_id = queue_job.payload.get("jobId")
            if not job_id:
                continue
            if self._store.mark_failed(job_id, EXPIRED_JOB_ERROR):
                failed += 1
                self._publish(NotificationEvent.failed(job_id, EXPIRED_JOB_ERROR))
        if failed:
            with self._stats_lock:
                self._stats.expired += failed
            log.warning("jobs_expired", count=failed)
        if self._metrics is not None:
            self._metrics.set_queue_depth(self._backend.stats(self.queue_name).pending)
        return failed

    # ------------------------------------------------------------------ #
    # Job execution
    # ------------------------------------------------------------------ #

    def process_job(self, queue_job: QueueJob) -> str:
        """Drive one claimed queue job. Returns the outcome.

        Outcomes: ``completed``, ``retried``, ``failed`` or ``skipped``.
        Never raises; failures are acknowledged to the queue backend.
        """
        message = queue_job.payload or {}
        job_id = message.get("jobId")
        user_id = message.get("userId")
        with LogContext(job_id=job_id, user_id=user_id, attempt=queue_job.attempt):
            if not job_id or not user_id:
                log.error("queue_message_invalid", queue_job_id=queue_job.id)
                self._backend.fail(queue_job.id, "queue message missing jobId/userId")
                return self._count("failed")

            started: float | None = None
            try:
                job = self._store.get(job_id)
                if job is None:
                    log.warning("job_row_missing", queue_job_id=queue_job.id)
                    self._backend.complete(queue_job.id)
                    return self._count("skipped")
                if job.is_terminal:
                    log.info("job_already_terminal", status=job.status.value)
                    self._publish(event_from_job(job))
                    self._backend.complete(queue_job.id)
                    if self._metrics is not None:
                        self._metrics.record_skipped()
                    return self._count("skipped")

                if not self._store.mark_processing(job_id, queue_job.attempt):
                    log.warning("job_claim_conflict", status=job.status.value)

                if self._metrics is not None:
                    self._metrics.record_started()
                started = time.perf_counter()
                try:
                    output_url = self._render(job_id, user_id, message.get("payload"))
                except Exception as exc:
                    return self._on_failure(queue_job, job_id, user_id, exc, started)
                return self._on_success(queue_job, job_id, output_url, started)
            except Exception as exc:
                return self._on_unexpected_error(queue_job, job_id, exc, started)

    def _render(self, job_id: str, user_id: str, payload: Any) -> str:
        RenderPayload.parse(payload)
        output = self._renderer.render(payload)
        key = destination_key(user_id, job_id, output.output_path)
        artifact = self._finalizer.finalize(output.output_path, key)
        return artifact.public_url

    def _on_success(self, queue_job: QueueJob, job_id: str, output_url: str, started: float) -> str:
        duration_ms = (time.perf_counter() - started) * 1000
        if self._store.mark_completed(job_id, output_url):
            self._publish(NotificationEvent.completed(job_id, output_url))
        else:
            current = self._store.get(job_id)
            log.warning(
                "job_completion_conflict",
                status=current.status.value if current else None,
            )
            if current is not None and current.is_terminal:
                self._publish(event_from_job(current))
        self._backend.complete(queue_job.id)
        if self._metrics is not None:
            self._metrics.record_processed("succeeded", duration_ms)
        log.info("job_completed", output_url=output_url, duration_ms=round(duration_ms, 1))
        return self._count("completed")

    def _on_failure(
        self,
        queue_job: QueueJob,
        job_id: str,
        user_id: str,
        exc: Exception,
        started: float,
    ) -> str:
        duration_ms = (time.perf_counter() - started) * 1000
        error = str(exc) or type(exc).__name__
        final = queue_job.is_final_attempt
        if final:
            if self._store.mark_failed(job_id, error):
                self._publish(NotificationEvent.failed(job_id, error))
            if self._dead_letter_enabled and self._dlq is not None:
                entry = self._dlq.forward(
                    job_id,
                    queue_job.queue_name,
                    queue_job.payload,
                    error,
                    attempts=queue_job.attempt + 1,
                    user_id=user_id,
                )
                if entry is not None and self._metrics is not None:
                    self._metrics.record_dead_lettered()
        else:
            self._store.mark_requeued(job_id, error)

        outcome = self._backend.fail(queue_job.id, error)
        if outcome.final != final:
            log.warning("retry_decision_mismatch", worker_final=final, queue_final=outcome.final)

        log_fn = log.error if final else log.warning
        log_fn(
            "job_failed" if final else "job_retry_scheduled",
            error=error,
            error_type=type(exc).__name__,
            retry_in=outcome.retry_in,
            validation=isinstance(exc, ValidationError),
        )
        result = "failed" if final else "retried"
        if self._metrics is not None:
            self._metrics.record_processed("failed" if final else "retried", duration_ms)
        return self._count(result)

    def _on_unexpected_error(
        self, queue_job: QueueJob, job_id: str, exc: Exception, started: float | None
    ) -> str:
        """Store, queue or dead-letter call failed mid-job.

        The queue backend decides retry versus final failure so the job is
        never left ``active`` with its row stuck in ``processing``.
        """
        error = f"{type(exc).__name__}: {exc}"
        log.exception("job_processing_error", queue_job_id=queue_job.id, error=error)
        final = queue_job.is_final_attempt
        try:
            final = self._backend.fail(queue_job.id, error).final
        except Exception:
            log.exception("queue_fail_unacknowledged", queue_job_id=queue_job.id)
        try:
            if final:
                if self._store.mark_failed(job_id, error):
                    self._publish(NotificationEvent.failed(job_id, error))
                if self._dead_letter_enabled and self._dlq is not None:
                    self._dlq.forward(
                        job_id,
                        queue_job.queue_name,
                        queue_job.payload,
                        error,
                        attempts=queue_job.attempt + 1,
                        user_id=queue_job.payload.get("userId"),
                    )
            else:
                self._store.mark_requeued(job_id, error)
        except Exception:
            log.exception("job_row_update_failed", final=final)

        result = "failed" if final else "retried"
        if started is not None and self._metrics is not None:
            self._metrics.record_processed(result, (time.perf_counter() - started) * 1000)
        return self._count(result)

    def _count(self, outcome: str) -> str:
        with self._stats_lock:
            if outcome != "skipped":
                self._stats.processed += 1
            setattr(self._stats, outcome, getattr(self._stats, outcome) + 1)
        return outcome

    def _publish(self, event: NotificationEvent | None) -> None:
        if event is None or self._channel is None:
            return
        if not self._channel.publish_completion(event):
            log.warning("completion_publish_failed", status=event.status)
