"""QueueBackend contract shared by every queue adapter.

Guarantees every adapter must provide:

* enqueueing with a live ``singleton_key`` already present is deduplicated
  and never creates a second live job;
* ``fetch`` claims disjoint jobs for competing consumers;
* a job whose retries are exhausted becomes terminal ``failed`` and is
  never redelivered;
* a job older than ``expire_in_seconds`` is abandoned (``expired``) by
  ``expire_stale`` even if it was never claimed.

``attempt`` is the single, backend-maintained retry counter: 0 on the
first delivery, incremented by each non-final ``fail``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from renderq.execution.retry import BackoffPolicy


class QueueState(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_live(self) -> bool:
        return self in (QueueState.CREATED, QueueState.RETRY, QueueState.ACTIVE)


PENDING_STATES = (QueueState.CREATED, QueueState.RETRY)
TERMINAL_STATES = (QueueState.COMPLETED, QueueState.FAILED, QueueState.EXPIRED)


@dataclass(frozen=True)
class EnqueueOptions:
    """Per-job delivery options."""

    singleton_key: str | None = None
    retry_limit: int = 5
    retry_delay: float = 30.0
    retry_backoff: bool = True
    expire_in_seconds: int = 7200
    start_after: float = 0.0


@dataclass(frozen=True)
class QueueHandle:
    """Returned by ``enqueue``. ``deduplicated`` means an existing live job was reused."""

    id: str
    queue_name: str
    deduplicated: bool = False


@dataclass
class QueueJob:
    """A job as delivered to a worker."""

    id: str
    queue_name: str
    payload: dict[str, Any]
    state: QueueState
    attempt: int = 0
    retry_limit: int = 5
    retry_delay: float = 30.0
    retry_backoff: bool = True
    expire_in_seconds: int = 7200
    singleton_key: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    start_after: datetime | None = None

    @property
    def is_final_attempt(self) -> bool:
        """True when a failure of this delivery exhausts the retry budget."""
        return self.attempt + 1 >= self.retry_limit


@dataclass(frozen=True)
class FailOutcome:
    """What ``fail`` decided for a job."""

    job_id: str
    final: bool
    attempt: int
    retry_in: float | None = None


@dataclass
class QueueStats:
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    by_state: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.pending + self.active + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> QueueStats:
        return cls(
            pending=counts.get("created", 0) + counts.get("retry", 0),
            active=counts.get("active", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0) + counts.get("expired", 0),
            by_state=dict(counts),
        )


def retry_policy_for(job: QueueJob, cap: float = 3600.0) -> BackoffPolicy:
    """Redelivery backoff for *job*: doubling when ``retry_backoff``, else constant."""
    return BackoffPolicy(
        base=job.retry_delay,
        factor=2.0 if job.retry_backoff else 1.0,
        cap=max(cap, job.retry_delay),
    )


@runtime_checkable
class QueueBackend(Protocol):
    """Durable competing-consumers work queue."""

    def enqueue(
        self, queue_name: str, payload: dict[str, Any], options: EnqueueOptions
    ) -> QueueHandle: ...

    def fetch(self, queue_name: str, batch_size: int = 1) -> list[QueueJob]: ...

    def complete(self, job_id: str) -> bool: ...

    def fail(self, job_id: str, error: str) -> FailOutcome: ...

    def get(self, job_id: str) -> QueueJob | None: ...

    def expire_stale(self) -> list[QueueJob]: ...

    def stats(self, queue_name: str | None = None) -> QueueStats: ...

    def purge_terminal(self, older_than_seconds: float) -> int: ...
