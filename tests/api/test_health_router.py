"""Tests for the health and metrics router.

Covers every endpoint created by ``create_health_router``:
- GET /health (200 healthy or degraded, 503 unhealthy)
- GET /health/ready
- GET /health/live
- GET /metrics (JSON and Prometheus text)
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from renderq.api import create_health_router
from renderq.execution.health import HealthMonitor, HealthThresholds
from renderq.observability.metrics import JobMetrics


@pytest.fixture
def metrics() -> JobMetrics:
    return JobMetrics()


@pytest.fixture
def monitor(store, sql_backend, dlq, metrics) -> HealthMonitor:
    return HealthMonitor(store, sql_backend, metrics=metrics, dlq=dlq)


@pytest.fixture
def client(monitor) -> TestClient:
    app = FastAPI()
    app.include_router(create_health_router(monitor))
    return TestClient(app)


class TestHealthEndpoints:
    def test_health_ok(self, client):
        """A healthy system answers 200 with every component."""
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        names = {c["name"] for c in body["components"]}
        assert {"database", "queue", "jobs", "dead_letters"} <= names

    def test_health_unhealthy_is_503(self, client, store):
        """A failing database check turns /health into a 503."""
        with patch.object(store, "ping", side_effect=RuntimeError("db down")):
            resp = client.get("/health")
        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "unhealthy"
        assert body["recommendations"]

    def test_health_degraded_is_200(self, client, monitor, dlq):
        """Degraded still serves 200 on /health."""
        monitor.thresholds = HealthThresholds(dlq_warning_count=0)
        dlq.forward("job-1", "render-video", {}, "boom", attempts=3)
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"

    def test_ready_requires_healthy(self, client, monitor, dlq):
        """Readiness is 200 only while every component is healthy."""
        assert client.get("/health/ready").status_code == 200

        monitor.thresholds = HealthThresholds(dlq_warning_count=0)
        dlq.forward("job-1", "render-video", {}, "boom", attempts=3)
        assert client.get("/health/ready").status_code == 503

    def test_live_always_ok(self, client, store):
        """Liveness does not touch the components."""
        with patch.object(store, "ping", side_effect=RuntimeError("db down")):
            resp = client.get("/health/live")
        assert resp.status_code == 200
        assert resp.json() == {"status": "alive"}

    def test_custom_prefix(self, monitor):
        """The health paths follow the given prefix."""
        app = FastAPI()
        app.include_router(create_health_router(monitor, prefix="/status"))
        client = TestClient(app)
        assert client.get("/status/live").status_code == 200
        assert client.get("/health/live").status_code == 404


class TestMetricsEndpoint:
    def test_json_snapshot(self, client, metrics):
        """/metrics returns counts, durations, success rate and queue stats."""
        metrics.record_enqueued()
        metrics.record_started()
        metrics.record_processed("succeeded", duration_ms=1500.0)

        resp = client.get("/metrics")
        assert resp.status_code == 200
        body = resp.json()
        assert body["counts"]["succeeded"] == 1
        assert body["durations"]["count"] == 1
        assert body["successRate"] == 1.0
        assert body["queue"]["pending"] == 0

    def test_prometheus_format(self, client, metrics):
        """?format=prometheus serves the text exposition format."""
        metrics.record_enqueued()
        resp = client.get("/metrics", params={"format": "prometheus"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert 'renderq_jobs_total{outcome="enqueued"} 1.0' in resp.text

    def test_without_metrics(self, store, sql_backend):
        """A monitor with no metrics still reports queue stats."""
        app = FastAPI()
        app.include_router(create_health_router(HealthMonitor(store, sql_backend)))
        client = TestClient(app)

        body = client.get("/metrics").json()
        assert body["successRate"] is None
        assert "queue" in body
        assert client.get("/metrics", params={"format": "prometheus"}).text == ""
