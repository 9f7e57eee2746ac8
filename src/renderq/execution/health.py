"""Health checks, alerting and housekeeping for the render pipeline.

Components checked:
- database: ``SELECT 1`` against the job store
- queue: backlog and failure balance from queue stats
- events: listener/publisher connection state (when a channel exists)
- workers: slot usage and liveness (when a worker exists)
- jobs: recent success rate from :class:`JobMetrics`
- dead_letters: unresolved dead-letter count

Example:
    >>> monitor = HealthMonitor(store, backend, channel=channel, metrics=metrics)
    >>> report = monitor.check()
    >>> print(report.overall)  # "healthy" | "degraded" | "unhealthy"
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from renderq.core.logging import get_logger
from renderq.core.timestamps import utc_now
from renderq.execution.backends.protocol import QueueBackend
from renderq.execution.store import JobStore

log = get_logger(__name__)

UNHEALTHY_HEADLINE = "Job system is unhealthy - immediate attention required"
DEGRADED_HEADLINE = "Job system is degraded - some functionality may be impacted"


class HealthStatus(str, Enum):
    """Health status levels, ordered by severity."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    """Result of a single component check."""

    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    recommendation: str | None = None


@dataclass
class HealthReport:
    """Overall health report."""

    overall: HealthStatus
    components: list[ComponentHealth]
    recommendations: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def healthy(self) -> bool:
        return self.overall == HealthStatus.HEALTHY

    def component(self, name: str) -> ComponentHealth | None:
        return next((c for c in self.components if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.overall.value,
            "timestamp": self.timestamp.isoformat(),
            "components": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.components
            ],
            "recommendations": list(self.recommendations),
        }


@dataclass
class HealthThresholds:
    """Component thresholds."""

    pending_backlog: int = 100
    failure_margin: int = 10
    dlq_warning_count: int = 10
    error_rate: float = 0.1
    min_samples: int = 10


@dataclass
class AlertThresholds:
    """Limits that raise an alert when exceeded."""

    error_rate: float = 0.1
    avg_processing_ms: float = 30_000.0
    active_jobs: int = 50
    queue_depth: int = 100


@dataclass(frozen=True)
class Alert:
    name: str
    value: float
    threshold: float
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
        }


class HealthMonitor:
    """Aggregates component health and runs periodic sampling.

    Only *store* and *backend* are required; the other components are
    checked when supplied.
    """

    def __init__(
        self,
        store: JobStore,
        backend: QueueBackend,
        *,
        queue_name: str | None = None,
        channel: Any = None,
        worker: Any = None,
        metrics: Any = None,
        dlq: Any = None,
        thresholds: HealthThresholds | None = None,
        alert_thresholds: AlertThresholds | None = None,
        interval: float = 30.0,
        enabled: bool = False,
        housekeeping_threshold: int = 10_000,
        retention_hours: float = 168.0,
    ):
        self._store = store
        self._backend = backend
        self._queue_name = queue_name
        self._channel = channel
        self.worker = worker
        self.metrics = metrics
        self._dlq = dlq
        self.thresholds = thresholds or HealthThresholds()
        self.alert_thresholds = alert_thresholds or AlertThresholds()
        self._interval = interval
        self._enabled = enabled
        self._housekeeping_threshold = housekeeping_threshold
        self._retention_hours = retention_hours
        self._last_report: HealthReport | None = None
        self._report_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------ #
    # Checks
    # ------------------------------------------------------------------ #

    def check(self) -> HealthReport:
        """Run all component checks and cache the report."""
        components = [self._check_database(), self._check_queue()]
        if self._channel is not None:
            components.append(self._check_events())
        if self.worker is not None:
            components.append(self._check_workers())
        if self.metrics is not None:
            components.append(self._check_jobs())
        if self._dlq is not None:
            components.append(self._check_dead_letters())

        overall = max((c.status for c in components), key=lambda s: s.severity)
        recommendations = [c.recommendation for c in components if c.recommendation]
        if overall == HealthStatus.UNHEALTHY:
            recommendations.insert(0, UNHEALTHY_HEADLINE)
        elif overall == HealthStatus.DEGRADED:
            recommendations.insert(0, DEGRADED_HEADLINE)

        report = HealthReport(overall=overall, components=components, recommendations=recommendations)
        with self._report_lock:
            self._last_report = report
        return report

    def get_health(self) -> HealthReport:
        """Latest sampled report, or a fresh one if none exists yet."""
        with self._report_lock:
            report = self._last_report
        return report if report is not None else self.check()

    def _check_database(self) -> ComponentHealth:
        try:
            self._store.ping()
        except Exception as e:
            return ComponentHealth(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database error: {e}",
                details={"error": str(e)},
                recommendation="Check database connectivity and credentials",
            )
        return ComponentHealth("database", HealthStatus.HEALTHY, "Database connection OK")

    def _check_queue(self) -> ComponentHealth:
        try:
            stats = self._backend.stats(self._queue_name)
        except Exception as e:
            return ComponentHealth(
                name="queue",
                status=HealthStatus.UNHEALTHY,
                message=f"Queue stats unavailable: {e}",
                details={"error": str(e)},
                recommendation="Check the queue backend",
            )
        if self.metrics is not None:
            self.metrics.set_queue_depth(stats.pending)

        details = stats.to_dict()
        t = self.thresholds
        if stats.pending > t.pending_backlog:
            return ComponentHealth(
                "queue",
                HealthStatus.DEGRADED,
                f"Queue backlog: {stats.pending} pending jobs",
                details,
                recommendation="Scale up workers to drain the render backlog",
            )
        if stats.failed > stats.completed and stats.failed - stats.completed > t.failure_margin:
            return ComponentHealth(
                "queue",
                HealthStatus.DEGRADED,
                f"Failures outnumber completions ({stats.failed} vs {stats.completed})",
                details,
                recommendation="Inspect recent render failures and the dead-letter queue",
            )
        return ComponentHealth("queue", HealthStatus.HEALTHY, "Queue OK", details)

    def _check_events(self) -> ComponentHealth:
        status = self._channel.status()
        details = status.to_dict()
        down = [
            name
            for name, up in (
                ("listener", status.listener_connected),
                ("publisher", status.publisher_connected),
            )
            if not up
        ]
        if len(down) == 2:
            return ComponentHealth(
                "events",
                HealthStatus.UNHEALTHY,
                "Notification channel disconnected",
                details,
                recommendation="Check the pub/sub server; waiters are falling back to polling",
            )
        if down:
            return ComponentHealth(
                "events",
                HealthStatus.DEGRADED,
                f"Notification {down[0]} disconnected",
                details,
                recommendation="Notification latency is degraded until the channel reconnects",
            )
        return ComponentHealth("events", HealthStatus.HEALTHY, "Notification channel connected", details)

    def _check_workers(self) -> ComponentHealth:
        stats = self.worker.get_stats()
        details = stats.to_dict()
        if not stats.running:
            return ComponentHealth(
                "workers",
                HealthStatus.DEGRADED,
                "Worker is not running",
                details,
                recommendation="Start a render worker",
            )
        if stats.active >= stats.concurrency:
            try:
                pending = self._backend.stats(self._queue_name).pending
            except Exception:
                log.warning("worker_check_queue_stats_failed", exc_info=True)
                pending = 0
            if pending > 0:
                details["pending"] = pending
                return ComponentHealth(
                    "workers",
                    HealthStatus.DEGRADED,
                    f"All {stats.concurrency} worker slots busy with {pending} jobs waiting",
                    details,
                    recommendation="Increase worker concurrency or add workers",
                )
        return ComponentHealth(
            "workers",
            HealthStatus.HEALTHY,
            f"{stats.active}/{stats.concurrency} worker slots busy",
            details,
        )

    def _check_jobs(self) -> ComponentHealth:
        samples = self.metrics.sample_count()
        rate = self.metrics.success_rate()
        details = {"samples": samples, "success_rate": rate}
        if rate is not None and samples >= self.thresholds.min_samples:
            failure_rate = 1.0 - rate
            if failure_rate > self.thresholds.error_rate:
                return ComponentHealth(
                    "jobs",
                    HealthStatus.DEGRADED,
                    f"Job failure rate {failure_rate:.1%}",
                    details,
                    recommendation="Investigate render failures",
                )
        return ComponentHealth("jobs", HealthStatus.HEALTHY, "Job success rate OK", details)

    def _check_dead_letters(self) -> ComponentHealth:
        try:
            count = self._dlq.count_unresolved()
        except Exception as e:
            return ComponentHealth(
                "dead_letters",
                HealthStatus.DEGRADED,
                f"Dead-letter check failed: {e}",
                {"error": str(e)},
            )
        details = {"unresolved": count}
        if count > self.thresholds.dlq_warning_count:
            return ComponentHealth(
                "dead_letters",
                HealthStatus.DEGRADED,
                f"{count} unresolved dead letters",
                details,
                recommendation="Review and resolve dead-lettered render jobs",
            )
        return ComponentHealth("dead_letters", HealthStatus.HEALTHY, "Dead-letter queue OK", details)

    # ------------------------------------------------------------------ #
    # Metrics & alerts
    # ------------------------------------------------------------------ #

    def get_metrics(self) -> dict[str, Any]:
        """``{counts, durations, successRate}`` plus current queue stats."""
        if self.metrics is not None:
            snapshot = self.metrics.snapshot()
        else:
            snapshot = {"counts": {}, "durations": {"count": 0}, "successRate": None}
        try:
            snapshot["queue"] = self._backend.stats(self._queue_name).to_dict()
        except Exception as e:
            log.warning("metrics_queue_stats_failed", error=str(e))
        return snapshot

    def evaluate_alerts(self) -> list[Alert]:
        """Compare current metrics to the alert thresholds; log each breach."""
        alerts: list[Alert] = []
        t = self.alert_thresholds

        if self.metrics is not None:
            rate = self.metrics.success_rate()
            if rate is not None and 1.0 - rate > t.error_rate:
                alerts.append(
                    Alert("error_rate", round(1.0 - rate, 4), t.error_rate, "High job error rate")
                )
            avg = self.metrics.average_duration_ms()
            if avg is not None and avg > t.avg_processing_ms:
                alerts.append(
                    Alert(
                        "avg_processing_ms",
                        round(avg, 1),
                        t.avg_processing_ms,
                        "Slow render processing",
                    )
                )
            active = self.metrics.active_jobs
            if active > t.active_jobs:
                alerts.append(Alert("active_jobs", active, t.active_jobs, "Too many active jobs"))

        try:
            depth = self._backend.stats(self._queue_name).pending
        except Exception as e:
            log.warning("alert_queue_stats_failed", error=str(e))
        else:
            if depth > t.queue_depth:
                alerts.append(Alert("queue_depth", depth, t.queue_depth, "Render queue is backing up"))

        for alert in alerts:
            log.warning(
                "health_alert",
                alert=alert.name,
                value=alert.value,
                threshold=alert.threshold,
                message=alert.message,
            )
        return alerts

    def run_housekeeping(self) -> dict[str, int]:
        """Purge old terminal queue jobs and resolved dead letters when volume is high."""
        result = {"queue_jobs": 0, "dead_letters": 0}
        total = self._backend.stats().total
        if total <= self._housekeeping_threshold:
            return result
        result["queue_jobs"] = self._backend.purge_terminal(self._retention_hours * 3600)
        if self._dlq is not None:
            result["dead_letters"] = self._dlq.cleanup_resolved(days=self._retention_hours / 24)
        log.info("housekeeping_completed", total=total, **result)
        return result

    # ------------------------------------------------------------------ #
    # Periodic sampling
    # ------------------------------------------------------------------ #

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> bool:
        """Start periodic sampling. Returns False when sampling is disabled."""
        if not self._enabled:
            log.debug("health_sampling_disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="renderq-health", daemon=True)
        self._thread.start()
        log.info("health_sampling_started", interval=self._interval)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.sample()
            self._stop.wait(self._interval)

    def sample(self) -> HealthReport | None:
        """One sampling pass: check, alert, housekeep. Never raises."""
        try:
            report = self.check()
            if not report.healthy:
                log.warning(
                    "health_check_failed",
                    status=report.overall.value,
                    recommendations=report.recommendations,
                )
            self.evaluate_alerts()
            self.run_housekeeping()
            return report
        except Exception:
            log.exception("health_sampling_error")
            return None
