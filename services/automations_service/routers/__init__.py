"""Automations service routers package."""

from services.automations_service.routers.internal import router as internal_router
from services.automations_service.routers.settings import router

__all__ = [
    "internal_router",
    "router",
]
