"""HTTP surface: health and metrics endpoints for render services."""

from renderq.api.health import create_health_router

__all__ = ["create_health_router"]
