"""Observability for renderq: Prometheus-style metrics.

Structured logging lives in :mod:`renderq.core.logging`.
"""

from .metrics import Counter, Gauge, Histogram, JobMetrics, MetricsRegistry

__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "JobMetrics",
    "MetricsRegistry",
]
