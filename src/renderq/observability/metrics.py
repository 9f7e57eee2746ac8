"""Prometheus-style metrics for the render pipeline.

Metric types:
- Counter: monotonically increasing value
- Gauge: value that can go up or down
- Histogram: distribution of observations

:class:`JobMetrics` wires the standard render-job metrics onto a registry
and keeps the rolling aggregates the health monitor reads
(``{counts, durations, successRate}``).

Example:
    >>> metrics = JobMetrics()
    >>> metrics.record_enqueued()
    >>> metrics.record_started()
    >>> metrics.record_processed("succeeded", duration_ms=1250.0)
    >>> metrics.snapshot()["successRate"]
    1.0
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

LabelKey = tuple[tuple[str, str], ...]


def _key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


class Metric:
    """Base class for metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    def collect(self) -> list[dict[str, Any]]:
        raise NotImplementedError


class Counter(Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[LabelKey, float] = {}

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        key = _key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(_key(labels), 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": dict(k), "value": v}
                for k, v in self._values.items()
            ]


class Gauge(Counter):
    kind = "gauge"

    def inc(self, value: float = 1.0, **labels: str) -> None:
        key = _key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def dec(self, value: float = 1.0, **labels: str) -> None:
        self.inc(-value, **labels)

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[_key(labels)] = value


class Histogram(Metric):
    """Bucketed distribution; buckets are upper bounds in seconds."""

    kind = "histogram"
    DEFAULT_BUCKETS = (0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, float("inf"))

    def __init__(self, name: str, description: str = "", buckets: tuple[float, ...] | None = None):
        super().__init__(name, description)
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._data: dict[LabelKey, dict[str, Any]] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = _key(labels)
        with self._lock:
            data = self._data.setdefault(
                key, {"buckets": dict.fromkeys(self._buckets, 0), "sum": 0.0, "count": 0}
            )
            data["sum"] += value
            data["count"] += 1
            for bound in self._buckets:
                if value <= bound:
                    data["buckets"][bound] += 1

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": self.kind,
                    "labels": dict(k),
                    "buckets": dict(d["buckets"]),
                    "sum": d["sum"],
                    "count": d["count"],
                }
                for k, d in self._data.items()
            ]


class MetricsRegistry:
    """Named metrics, collected together for export."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls: type[Metric], name: str, *args: Any) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, *args)
            elif not isinstance(metric, cls):
                raise TypeError(f"metric {name!r} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(Counter, name, description)

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(Gauge, name, description)

    def histogram(
        self, name: str, description: str = "", buckets: tuple[float, ...] | None = None
    ) -> Histogram:
        return self._get_or_create(Histogram, name, description, buckets)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results: list[dict[str, Any]] = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        lines = []
        for data in self.collect():
            name = data["name"]
            labels = data["labels"]
            label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
            wrapped = f"{{{label_str}}}" if label_str else ""
            if data["type"] == "histogram":
                for bound, count in data["buckets"].items():
                    le = "+Inf" if bound == float("inf") else bound
                    joined = f"{label_str},le=\"{le}\"" if label_str else f'le="{le}"'
                    lines.append(f"{name}_bucket{{{joined}}} {count}")
                lines.append(f"{name}_sum{wrapped} {data['sum']}")
                lines.append(f"{name}_count{wrapped} {data['count']}")
            else:
                lines.append(f"{name}{wrapped} {data['value']}")
        return "\n".join(lines)


class JobMetrics:
    """Standard render-job metrics plus rolling aggregates for health checks.

    ``durations`` keeps the last *window* processing times (ms) so averages
    track recent behaviour rather than lifetime totals.
    """

    COUNT_NAMES = (
        "enqueued",
        "processed",
        "succeeded",
        "failed",
        "retried",
        "skipped",
        "dead_lettered",
        "rejected",
        "circuit_rejections",
    )

    def __init__(self, registry: MetricsRegistry | None = None, window: int = 500):
        self.registry = registry or MetricsRegistry()
        self.jobs = self.registry.counter("renderq_jobs_total", "Render job events by outcome")
        self.active = self.registry.gauge("renderq_jobs_active", "Render jobs currently processing")
        self.queue_depth = self.registry.gauge("renderq_queue_depth", "Pending queue jobs")
        self.duration = self.registry.histogram(
            "renderq_job_duration_seconds", "Render job processing time"
        )
        self._durations: deque[float] = deque(maxlen=window)
        self._lock = threading.Lock()

    def _inc(self, outcome: str) -> None:
        self.jobs.inc(outcome=outcome)

    def count(self, outcome: str) -> int:
        return int(self.jobs.value(outcome=outcome))

    def record_enqueued(self) -> None:
        self._inc("enqueued")

    def record_rejected(self) -> None:
        self._inc("rejected")

    def record_circuit_rejection(self) -> None:
        self._inc("circuit_rejections")

    def record_started(self) -> None:
        self.active.inc()

    def record_processed(self, outcome: str, duration_ms: float) -> None:
        """Record a finished attempt. *outcome* is succeeded, failed or retried."""
        self.active.dec()
        self._inc("processed")
        self._inc(outcome)
        self.duration.observe(duration_ms / 1000.0)
        with self._lock:
            self._durations.append(duration_ms)

    def record_skipped(self) -> None:
        self._inc("skipped")

    def record_dead_lettered(self) -> None:
        self._inc("dead_lettered")

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    @property
    def active_jobs(self) -> int:
        return int(self.active.value())

    def success_rate(self) -> float | None:
        """Succeeded / (succeeded + failed), or ``None`` without samples."""
        succeeded = self.count("succeeded")
        total = succeeded + self.count("failed")
        if total == 0:
            return None
        return succeeded / total

    def sample_count(self) -> int:
        return self.count("succeeded") + self.count("failed")

    def average_duration_ms(self) -> float | None:
        with self._lock:
            if not self._durations:
                return None
            return sum(self._durations) / len(self._durations)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            samples = sorted(self._durations)
        durations: dict[str, Any] = {"count": len(samples)}
        if samples:
            durations.update(
                avg=sum(samples) / len(samples),
                min=samples[0],
                max=samples[-1],
                p95=samples[min(len(samples) - 1, int(len(samples) * 0.95))],
            )
        return {
            "counts": {name: self.count(name) for name in self.COUNT_NAMES},
            "durations": durations,
            "successRate": self.success_rate(),
            "active": self.active_jobs,
            "queueDepth": int(self.queue_depth.value()),
        }
