"""API routes."""

from evv_engine.api.routes.evv import router as evv_router
from evv_engine.api.routes.health import router as health_router
from evv_engine.api.routes.sync import router as sync_router

__all__ = ["evv_router", "health_router", "sync_router"]
