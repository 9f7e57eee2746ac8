"""Health and metrics endpoints for any FastAPI app hosting renderq.

Endpoints created
-----------------
``GET /health``         Full report - 503 when unhealthy.
``GET /health/ready``   Readiness check - 503 unless healthy.
``GET /health/live``    Liveness check - always 200.
``GET /metrics``        Job counts, durations and success rate.

Quick start::

    from renderq.api import create_health_router

    app.include_router(create_health_router(container.health))
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse

from renderq.execution.health import HealthMonitor, HealthStatus


def create_health_router(monitor: HealthMonitor, *, prefix: str = "/health") -> APIRouter:
    """Create an ``APIRouter`` exposing *monitor*.

    ``/health`` and ``/health/ready`` run a fresh check on every request.
    """
    router = APIRouter(tags=["health"])

    @router.get(prefix)
    def health() -> JSONResponse:
        """Primary health - runs every component check."""
        report = monitor.check()
        code = 503 if report.overall == HealthStatus.UNHEALTHY else 200
        return JSONResponse(content=report.to_dict(), status_code=code)

    @router.get(f"{prefix}/ready")
    def readiness() -> JSONResponse:
        """Readiness check - 503 unless every component is healthy."""
        report = monitor.check()
        code = 200 if report.overall == HealthStatus.HEALTHY else 503
        return JSONResponse(content=report.to_dict(), status_code=code)

    @router.get(f"{prefix}/live")
    def liveness() -> dict[str, str]:
        """Liveness check - always 200 if the process is serving."""
        return {"status": "alive"}

    @router.get("/metrics")
    def metrics(format: str = "json") -> Any:
        """Job metrics; ``?format=prometheus`` for the text exposition format."""
        if format == "prometheus":
            registry = getattr(monitor.metrics, "registry", None)
            text = registry.export_prometheus() if registry is not None else ""
            return PlainTextResponse(text)
        return monitor.get_metrics()

    return router
