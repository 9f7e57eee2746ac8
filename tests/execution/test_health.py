"""Tests for the health monitor, alerts and housekeeping."""

from unittest.mock import MagicMock

import pytest

from renderq.core.events import NotificationChannel
from renderq.execution.backends.protocol import EnqueueOptions
from renderq.execution.health import (
    DEGRADED_HEADLINE,
    UNHEALTHY_HEADLINE,
    AlertThresholds,
    HealthMonitor,
    HealthStatus,
    HealthThresholds,
)
from renderq.execution.worker import WorkerStats
from renderq.observability.metrics import JobMetrics
from tests._support.fakes import wait_until

QUEUE = "render-video"


def fill_queue(backend, count, **options):
    for i in range(count):
        backend.enqueue(QUEUE, {"jobId": f"job-{i}", "userId": "u", "payload": {}}, EnqueueOptions(**options))


def worker_stub(**stats):
    worker = MagicMock()
    worker.get_stats.return_value = WorkerStats(**stats)
    return worker


def record(metrics, succeeded=0, failed=0, duration_ms=100.0):
    for outcome, count in (("succeeded", succeeded), ("failed", failed)):
        for _ in range(count):
            metrics.record_started()
            metrics.record_processed(outcome, duration_ms)


@pytest.fixture
def monitor(store, memory_backend, dlq):
    return HealthMonitor(store, memory_backend, queue_name=QUEUE, dlq=dlq)


class TestComponentChecks:
    def test_healthy_baseline(self, monitor):
        report = monitor.check()
        assert report.overall == HealthStatus.HEALTHY
        assert report.healthy
        assert [c.name for c in report.components] == ["database", "queue", "dead_letters"]
        assert report.recommendations == []

    def test_database_failure_is_unhealthy(self, store, memory_backend):
        store.ping = MagicMock(side_effect=ConnectionError("connection refused"))
        report = HealthMonitor(store, memory_backend).check()

        assert report.overall == HealthStatus.UNHEALTHY
        assert report.component("database").status == HealthStatus.UNHEALTHY
        assert report.recommendations[0] == UNHEALTHY_HEADLINE
        assert "Check database connectivity and credentials" in report.recommendations

    def test_queue_backlog_is_degraded(self, store, memory_backend):
        fill_queue(memory_backend, 4)
        monitor = HealthMonitor(
            store, memory_backend, queue_name=QUEUE, thresholds=HealthThresholds(pending_backlog=3)
        )
        report = monitor.check()

        queue = report.component("queue")
        assert queue.status == HealthStatus.DEGRADED
        assert queue.details["pending"] == 4
        assert report.recommendations[0] == DEGRADED_HEADLINE

    def test_failures_outnumbering_completions(self, store, memory_backend):
        fill_queue(memory_backend, 3, retry_limit=1)
        for job in memory_backend.fetch(QUEUE, batch_size=3):
            memory_backend.fail(job.id, "boom")
        monitor = HealthMonitor(
            store, memory_backend, queue_name=QUEUE, thresholds=HealthThresholds(failure_margin=2)
        )
        assert monitor.check().component("queue").status == HealthStatus.DEGRADED

        lenient = HealthMonitor(store, memory_backend, queue_name=QUEUE)
        assert lenient.check().component("queue").status == HealthStatus.HEALTHY

    def test_queue_stats_error_is_unhealthy(self, store):
        backend = MagicMock()
        backend.stats.side_effect = RuntimeError("queue table missing")
        report = HealthMonitor(store, backend).check()
        assert report.component("queue").status == HealthStatus.UNHEALTHY

    def test_connected_channel_is_healthy(self, store, memory_backend, channel):
        report = HealthMonitor(store, memory_backend, channel=channel).check()
        assert report.component("events").status == HealthStatus.HEALTHY

    def test_publisher_down_is_degraded(self, store, memory_backend, transport):
        channel = NotificationChannel(transport, keepalive_interval=60.0, receive_timeout=0.02)
        channel.start()
        try:
            assert channel.wait_until_connected(5.0)
            transport.fail_publishes = True
            assert channel.publish_job_available(QUEUE) is False
            events = HealthMonitor(store, memory_backend, channel=channel).check().component("events")
        finally:
            channel.stop()
        assert events.status == HealthStatus.DEGRADED
        assert "publisher" in events.message

    def test_channel_fully_down_is_unhealthy(self, store, memory_backend, transport, channel):
        transport.refuse_connections = True
        transport.fail_publishes = True
        channel.publish_job_available(QUEUE)
        transport.drop_connections()
        assert wait_until(lambda: not channel.status().listener_connected)

        report = HealthMonitor(store, memory_backend, channel=channel).check()
        assert report.component("events").status == HealthStatus.UNHEALTHY

    def test_stopped_worker_is_degraded(self, store, memory_backend):
        worker = worker_stub(running=False, concurrency=2)
        report = HealthMonitor(store, memory_backend, worker=worker).check()
        assert report.component("workers").status == HealthStatus.DEGRADED

    def test_saturated_worker_with_backlog_is_degraded(self, store, memory_backend):
        fill_queue(memory_backend, 1)
        worker = worker_stub(running=True, active=2, concurrency=2)
        workers = HealthMonitor(store, memory_backend, queue_name=QUEUE, worker=worker).check().component("workers")
        assert workers.status == HealthStatus.DEGRADED
        assert workers.details["pending"] == 1

    def test_busy_worker_without_backlog_is_healthy(self, store, memory_backend):
        worker = worker_stub(running=True, active=2, concurrency=2)
        report = HealthMonitor(store, memory_backend, queue_name=QUEUE, worker=worker).check()
        assert report.component("workers").status == HealthStatus.HEALTHY

    def test_high_failure_rate_needs_enough_samples(self, store, memory_backend):
        metrics = JobMetrics()
        record(metrics, succeeded=3, failed=2)
        monitor = HealthMonitor(store, memory_backend, metrics=metrics)
        assert monitor.check().component("jobs").status == HealthStatus.HEALTHY

        record(metrics, succeeded=5, failed=2)
        assert monitor.check().component("jobs").status == HealthStatus.DEGRADED

    def test_dead_letter_backlog_is_degraded(self, store, memory_backend, dlq):
        for i in range(3):
            dlq.forward(f"job-{i}", QUEUE, {}, "boom", attempts=5)
        monitor = HealthMonitor(store, memory_backend, dlq=dlq, thresholds=HealthThresholds(dlq_warning_count=2))
        assert monitor.check().component("dead_letters").status == HealthStatus.DEGRADED


class TestReporting:
    def test_get_health_returns_cached_report(self, monitor):
        first = monitor.check()
        assert monitor.get_health() is first

    def test_get_health_checks_when_empty(self, monitor):
        assert monitor.get_health().overall == HealthStatus.HEALTHY

    def test_report_to_dict(self, monitor):
        data = monitor.check().to_dict()
        assert set(data) == {"status", "timestamp", "components", "recommendations"}
        assert data["status"] == "healthy"
        assert data["components"][0]["name"] == "database"

    def test_get_metrics_includes_queue(self, store, memory_backend):
        metrics = JobMetrics()
        record(metrics, succeeded=1)
        fill_queue(memory_backend, 2)
        data = HealthMonitor(store, memory_backend, queue_name=QUEUE, metrics=metrics).get_metrics()
        assert data["counts"]["succeeded"] == 1
        assert data["successRate"] == 1.0
        assert data["queue"]["pending"] == 2

    def test_get_metrics_without_metrics(self, monitor):
        data = monitor.get_metrics()
        assert data["successRate"] is None
        assert data["durations"] == {"count": 0}


class TestAlerts:
    def test_no_alerts_when_quiet(self, store, memory_backend):
        assert HealthMonitor(store, memory_backend, metrics=JobMetrics()).evaluate_alerts() == []

    def test_thresholds_breached(self, store, memory_backend):
        metrics = JobMetrics()
        record(metrics, succeeded=1, failed=1, duration_ms=50_000)
        for _ in range(3):
            metrics.record_started()
        fill_queue(memory_backend, 3)
        monitor = HealthMonitor(
            store,
            memory_backend,
            queue_name=QUEUE,
            metrics=metrics,
            alert_thresholds=AlertThresholds(error_rate=0.1, avg_processing_ms=30_000, active_jobs=2, queue_depth=2),
        )

        alerts = {a.name: a for a in monitor.evaluate_alerts()}

        assert set(alerts) == {"error_rate", "avg_processing_ms", "active_jobs", "queue_depth"}
        assert alerts["error_rate"].value == 0.5
        assert alerts["active_jobs"].value == 3
        assert alerts["queue_depth"].to_dict()["threshold"] == 2


class TestHousekeeping:
    def test_skipped_below_threshold(self, store, memory_backend, dlq):
        monitor = HealthMonitor(store, memory_backend, dlq=dlq, housekeeping_threshold=100)
        assert monitor.run_housekeeping() == {"queue_jobs": 0, "dead_letters": 0}

    def test_purges_when_volume_is_high(self, store, memory_backend, dlq):
        fill_queue(memory_backend, 2)
        for job in memory_backend.fetch(QUEUE, batch_size=2):
            memory_backend.complete(job.id)
        monitor = HealthMonitor(
            store, memory_backend, dlq=dlq, housekeeping_threshold=1, retention_hours=-1
        )
        assert monitor.run_housekeeping()["queue_jobs"] == 2
        assert memory_backend.stats().total == 0


class TestSampling:
    def test_disabled_sampling_does_not_start(self, monitor):
        assert monitor.enabled is False
        assert monitor.start() is False

    def test_enabled_sampling_caches_reports(self, store, memory_backend):
        monitor = HealthMonitor(store, memory_backend, interval=0.05, enabled=True)
        try:
            assert monitor.start() is True
            assert wait_until(lambda: monitor._last_report is not None)
        finally:
            monitor.stop()

    def test_sample_never_raises(self, store):
        backend = MagicMock()
        backend.stats.side_effect = RuntimeError("down")
        monitor = HealthMonitor(store, backend)
        assert monitor.sample() is None
