"""Circuit breaker for queue submission.

Prevents a struggling datastore from turning into unbounded client-side
retries by failing fast after repeated failures.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls rejected with CircuitOpenError
    HALF_OPEN: Exactly one trial call is let through

Example:
    >>> from renderq.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(name="queue-submit", failure_threshold=3, reset_timeout=60.0)
    >>> handle = breaker.call(backend.enqueue, "render-video", payload, options)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from renderq.core.errors import CircuitOpenError
from renderq.core.logging import get_logger
from renderq.core.timestamps import utc_now

T = TypeVar("T")

log = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rejected_requests": self.rejected_requests,
            "state_changes": self.state_changes,
            "failure_rate": round(self.failure_rate, 2),
        }


@dataclass
class CircuitBreaker:
    """Thread-safe circuit breaker.

    Attributes:
        name: Identifier for this circuit
        failure_threshold: Consecutive failures before opening
        reset_timeout: Seconds after the last failure before a trial call
        clock: Monotonic time source (injectable for tests)
    """

    name: str = "default"
    failure_threshold: int = 3
    reset_timeout: float = 60.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_at: float | None = field(default=None, init=False)
    _trial_in_flight: bool = field(default=False, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    @property
    def state(self) -> CircuitState:
        """Current state, applying the OPEN -> HALF_OPEN cooldown."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._last_failure_at is not None:
            if self.clock() - self._last_failure_at >= self.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = utc_now()
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
        if new_state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
        log.info(
            "circuit_state_changed",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )

    def _retry_after(self) -> float:
        if self._last_failure_at is None:
            return self.reset_timeout
        return max(0.0, self.reset_timeout - (self.clock() - self._last_failure_at))

    def allow_request(self) -> bool:
        """Reserve permission for one call. HALF_OPEN grants a single trial."""
        with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            self._stats.rejected_requests += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = utc_now()
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self.clock()
            self._stats.failed_requests += 1
            self._stats.last_failure_time = utc_now()
            if self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the circuit closed."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_at = None
            self._trial_in_flight = False

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute *func* through the breaker.

        Raises:
            CircuitOpenError: If the circuit rejects the call; *func* is
                not invoked.
        """
        if not self.allow_request():
            with self._lock:
                retry_after = self._retry_after()
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open, rejecting request",
                name=self.name,
                retry_after=retry_after,
            )
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    execute = call

    def snapshot(self) -> dict[str, Any]:
        """State for health reports."""
        with self._lock:
            self._check_state_transition()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
                **self._stats.to_dict(),
            }
