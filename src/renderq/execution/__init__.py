"""
Job orchestration: admission, queueing, workers, waiters and health.

Components (leaf to root):

    JobStore ── BackoffPolicy ── QueueBackend ── CircuitBreaker
        │                                           │
        └──── AdmissionController ──────────────────┘
                     │
    NotificationChannel ── CompletionWaiterRegistry
                     │
               RenderWorker ── DeadLetterQueue
                     │
               HealthMonitor

Heavy submodules are imported lazily so ``renderq.execution.retry`` can be
used by :mod:`renderq.core.events` without import cycles.
"""

from __future__ import annotations

from typing import Any

_LAZY = {
    "AdmissionController": "renderq.execution.admission",
    "BackoffPolicy": "renderq.execution.retry",
    "CircuitBreaker": "renderq.execution.circuit_breaker",
    "CircuitState": "renderq.execution.circuit_breaker",
    "CompletionWaiterRegistry": "renderq.execution.waiters",
    "DeadLetterQueue": "renderq.execution.dlq",
    "HealthMonitor": "renderq.execution.health",
    "JobStatus": "renderq.execution.models",
    "JobStore": "renderq.execution.store",
    "RenderJob": "renderq.execution.models",
    "RenderWorker": "renderq.execution.worker",
}

__all__ = sorted(_LAZY)


def __getattr__(name: str) -> Any:
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module 'renderq.execution' has no attribute {name!r}")
    import importlib

    return getattr(importlib.import_module(module_name), name)
