"""Queue backend adapters sharing one :class:`QueueBackend` contract."""

from renderq.execution.backends.memory import InMemoryQueueBackend
from renderq.execution.backends.protocol import (
    EnqueueOptions,
    FailOutcome,
    QueueBackend,
    QueueHandle,
    QueueJob,
    QueueState,
    QueueStats,
)
from renderq.execution.backends.sql import SqlQueueBackend

__all__ = [
    "EnqueueOptions",
    "FailOutcome",
    "InMemoryQueueBackend",
    "QueueBackend",
    "QueueHandle",
    "QueueJob",
    "QueueState",
    "QueueStats",
    "SqlQueueBackend",
]
