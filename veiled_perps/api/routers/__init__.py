"""API router package for endpoint composition."""

from .custodies import api_create_custodies_router
from .health import api_create_health_router
from .positions import api_create_positions_router

__all__ = ["api_create_custodies_router", "api_create_health_router", "api_create_positions_router"]
