from __future__ import annotations

from app.api.routes.health import router as health_router
from app.api.routes.rate_limit import router as rate_limit_router

__all__ = ["health_router", "rate_limit_router"]
