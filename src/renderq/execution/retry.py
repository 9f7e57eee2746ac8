"""Backoff policy and retry helpers.

One :class:`BackoffPolicy` drives every delay in renderq: listener
reconnects, waiter fallback polling, queue redelivery scheduling and
submission retries.

Delay = min(base * factor^attempt, cap), then optionally jittered by a
fraction of the delay and/or an absolute number of seconds, never
negative.

Example:
    >>> policy = BackoffPolicy(base=1.0, factor=2.0, cap=30.0)
    >>> [policy.delay(n) for n in range(6)]
    [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    >>> ctx = RetryContext(policy, max_attempts=3, retry_on=(TransientBackendError,))
    >>> result = ctx.run(backend.enqueue, "render-video", payload, options)
"""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from renderq.core.timestamps import utc_now

T = TypeVar("T")


@dataclass
class BackoffPolicy:
    """Exponential backoff with cap and jitter.

    Attributes:
        base: Delay for attempt 0, in seconds
        factor: Growth multiplier per attempt (1.0 = constant delay)
        cap: Upper bound applied before jitter
        jitter_fraction: Relative jitter, +/- this fraction of the delay
        jitter_seconds: Absolute jitter, +/- up to this many seconds
        rng: Random source (inject a seeded ``random.Random`` in tests)
    """

    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    jitter_fraction: float = 0.0
    jitter_seconds: float = 0.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0:
            raise ValueError("backoff base and cap must be non-negative")
        if self.factor < 1.0:
            raise ValueError("backoff factor must be >= 1.0")

    def raw_delay(self, attempt: int) -> float:
        """Deterministic delay for *attempt* (0-based), without jitter."""
        attempt = max(0, attempt)
        try:
            delay = self.base * (self.factor ** attempt)
        except OverflowError:
            delay = self.cap
        return min(delay, self.cap)

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0-based), jittered."""
        delay = self.raw_delay(attempt)
        spread = delay * self.jitter_fraction + self.jitter_seconds
        if spread > 0:
            delay += self.rng.uniform(-spread, spread)
        return max(0.0, delay)

    def max_delay(self) -> float:
        """Largest delay this policy can produce."""
        return self.cap + self.cap * self.jitter_fraction + self.jitter_seconds

    def delays(self, count: int) -> list[float]:
        return [self.delay(n) for n in range(count)]


@dataclass
class RetryContext:
    """Runs a callable, retrying failures with a :class:`BackoffPolicy`.

    Only exceptions matching *retry_on* are retried; anything else
    propagates immediately.
    """

    policy: BackoffPolicy
    max_attempts: int = 3
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utc_now, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def elapsed_seconds(self) -> float:
        return (utc_now() - self.started_at).total_seconds()

    def should_retry(self, error: Exception) -> bool:
        return self.attempt < self.max_attempts and isinstance(error, self.retry_on)

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute *func* with retry logic.

        Raises:
            The last exception once retries are exhausted or the error is
            not retryable.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utc_now()))
                if not self.should_retry(e):
                    raise
                delay = self.policy.delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                self.sleep(delay)


def with_retry(
    policy: BackoffPolicy | None = None,
    *,
    max_attempts: int = 3,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator factory adding retry logic to a function.

    Example:
        >>> @with_retry(BackoffPolicy(base=0.5), retry_on=(TransientBackendError,))
        ... def flaky_operation():
        ...     return backend.stats()
    """
    if policy is None:
        policy = BackoffPolicy()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            ctx = RetryContext(
                policy=policy,
                max_attempts=max_attempts,
                retry_on=retry_on,
                on_retry=on_retry,
            )
            return ctx.run(func, *args, **kwargs)

        return wrapper

    return decorator
