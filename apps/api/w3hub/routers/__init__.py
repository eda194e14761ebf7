"""Routers package."""
from w3hub.routers.assets import router as assets_router
from w3hub.routers.tracking import router as tracking_router
from w3hub.routers.live import router as live_router

__all__ = [
    "assets_router",
    "tracking_router",
    "live_router",
]
