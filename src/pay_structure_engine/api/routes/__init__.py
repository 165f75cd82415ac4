"""API routes."""

from pay_structure_engine.api.routes.health import router as health_router
from pay_structure_engine.api.routes.pay_structures import router as pay_structures_router

__all__ = ["health_router", "pay_structures_router"]
