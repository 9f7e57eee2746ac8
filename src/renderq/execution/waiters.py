"""
Completion waiters - block a caller until a render job settles.

Three watchers race for each waiter:

1. a ``job-completed`` notification routed from the channel;
2. a fallback poll of the job store on a backoff schedule
   (5s, 7.5s, 11.25s, ... capped at 60s);
3. a timeout timer.

Whichever fires first settles the waiter; the others are cancelled and
the waiter is removed from the registry. The poll path means a lost or
never-sent notification only costs latency, never correctness.

Example::

    registry = CompletionWaiterRegistry(store, channel)
    event = registry.wait_for_completion(job_id, timeout=30)
    if event is None:
        ...  # timed out, job still running
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future
from typing import Any

from renderq.core.events.models import NotificationEvent
from renderq.core.logging import get_logger
from renderq.execution.models import JobStatus, RenderJob
from renderq.execution.retry import BackoffPolicy
from renderq.execution.store import JobStore

log = get_logger(__name__)


def event_from_job(job: RenderJob) -> NotificationEvent | None:
    """Notification equivalent of a terminal job row, else ``None``."""
    if job.status == JobStatus.COMPLETED:
        return NotificationEvent.completed(job.id, job.output_url)
    if job.status == JobStatus.FAILED:
        return NotificationEvent.failed(job.id, job.error)
    return None


class Waiter:
    """One caller waiting on one job."""

    def __init__(self, job_id: str):
        self.id = f"w_{uuid.uuid4().hex[:12]}"
        self.job_id = job_id
        self.future: Future[NotificationEvent | None] = Future()
        self.settled = False
        self.polls = 0
        self.timeout_timer: threading.Timer | None = None
        self.poll_timer: threading.Timer | None = None

    def cancel_timers(self) -> None:
        for timer in (self.timeout_timer, self.poll_timer):
            if timer is not None:
                timer.cancel()
        self.timeout_timer = None
        self.poll_timer = None


class CompletionWaiterRegistry:
    """Process-local registry of outstanding completion waiters.

    Args:
        store: Authoritative job store used by the immediate check and the
            fallback poll.
        channel: Optional notification channel. Without one, waiters settle
            through polling alone.
        poll_policy: Delay schedule of the fallback poll.
        default_timeout: Seconds before an unsettled waiter resolves to
            ``None``.
    """

    def __init__(
        self,
        store: JobStore,
        channel: Any = None,
        *,
        poll_policy: BackoffPolicy | None = None,
        default_timeout: float = 900.0,
    ):
        self._store = store
        self._channel = channel
        self._poll_policy = poll_policy or BackoffPolicy(base=5.0, factor=1.5, cap=60.0)
        self._default_timeout = default_timeout
        self._waiters: dict[str, dict[str, Waiter]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._handler_id: str | None = None
        if channel is not None:
            self._handler_id = channel.on_job_completed(self.handle_event)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def watch(self, job_id: str, timeout: float | None = None) -> Future[NotificationEvent | None]:
        """Register a waiter and return its future without blocking."""
        waiter = Waiter(job_id)
        with self._lock:
            if self._closed:
                waiter.settled = True
                waiter.future.set_result(None)
                return waiter.future
            self._waiters.setdefault(job_id, {})[waiter.id] = waiter

        # Registered before the first read so a completion racing this call
        # is caught by one of the two paths.
        if self._check_store(waiter):
            return waiter.future

        timeout = self._default_timeout if timeout is None else timeout
        timer = threading.Timer(max(timeout, 0.0), self._on_timeout, args=(waiter,))
        timer.daemon = True
        with self._lock:
            if waiter.settled:
                return waiter.future
            waiter.timeout_timer = timer
            timer.start()
        self._schedule_poll(waiter)
        return waiter.future

    def wait_for_completion(
        self, job_id: str, timeout: float | None = None
    ) -> NotificationEvent | None:
        """Block until *job_id* settles or *timeout* elapses.

        Returns:
            The terminal :class:`NotificationEvent`, or ``None`` on timeout
            or shutdown.
        """
        return self.watch(job_id, timeout).result()

    def handle_event(self, event: NotificationEvent) -> None:
        """Channel handler: settle every waiter for ``event.job_id``."""
        with self._lock:
            waiters = list(self._waiters.get(event.job_id, {}).values())
        for waiter in waiters:
            self._settle(waiter, event, source="event")

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(w) for w in self._waiters.values())

    def shutdown(self) -> int:
        """Resolve every outstanding waiter with ``None``. Returns how many."""
        with self._lock:
            self._closed = True
            waiters = [w for group in self._waiters.values() for w in group.values()]
        resolved = sum(1 for w in waiters if self._settle(w, None, source="shutdown"))
        if self._channel is not None and self._handler_id is not None:
            self._channel.remove_handler(self._handler_id)
            self._handler_id = None
        if resolved:
            log.info("waiters_shutdown", resolved=resolved)
        return resolved

    # ------------------------------------------------------------------ #
    # Watchers
    # ------------------------------------------------------------------ #

    def _settle(self, waiter: Waiter, result: NotificationEvent | None, *, source: str) -> bool:
        with self._lock:
            if waiter.settled:
                return False
            waiter.settled = True
            waiter.cancel_timers()
            group = self._waiters.get(waiter.job_id)
            if group is not None:
                group.pop(waiter.id, None)
                if not group:
                    del self._waiters[waiter.job_id]
        waiter.future.set_result(result)
        log.debug(
            "waiter_settled",
            job_id=waiter.job_id,
            source=source,
            status=result.status if result is not None else None,
        )
        return True

    def _check_store(self, waiter: Waiter) -> bool:
        try:
            job = self._store.get(waiter.job_id)
        except Exception as exc:
            log.warning("waiter_poll_failed", job_id=waiter.job_id, error=str(exc))
            return False
        if job is None:
            return False
        event = event_from_job(job)
        if event is None:
            return False
        return self._settle(waiter, event, source="poll")

    def _schedule_poll(self, waiter: Waiter) -> None:
        delay = self._poll_policy.delay(waiter.polls)
        timer = threading.Timer(delay, self._on_poll, args=(waiter,))
        timer.daemon = True
        with self._lock:
            if waiter.settled:
                return
            waiter.poll_timer = timer
            timer.start()

    def _on_poll(self, waiter: Waiter) -> None:
        if waiter.settled:
            return
        waiter.polls += 1
        if not self._check_store(waiter):
            self._schedule_poll(waiter)

    def _on_timeout(self, waiter: Waiter) -> None:
        if self._settle(waiter, None, source="timeout"):
            log.info("waiter_timed_out", job_id=waiter.job_id)
