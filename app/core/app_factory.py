from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) to
improve testability and separation of concerns compared to a monolithic main.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.adapters.counter_store.base import AbstractCounterStore
from app.api.routes import health_router, rate_limit_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.core.rate_limit import build_rate_limiter, close_counter_store, rate_limit_middleware


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Injected stores belong to the caller; only the shared one is closed here
    await close_counter_store()


def create_app(counter_store: AbstractCounterStore | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        counter_store: Optional store for this app only. When omitted the
            process-wide store selected by APP_COUNTER_STORE_BACKEND is used.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Rate Limiter Service",
        description=(
            "Per-caller fixed-window rate limiting in front of the application's "
            "routes. Every rate limited response carries Rate-Limit-Reached, "
            "Rate-Limit-Left and Rate-Limit-Reset headers; callers over quota "
            "receive 429 Too Many Requests."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )

    if counter_store is not None:
        app.state.rate_limiter = build_rate_limiter(counter_store)

    # Middleware: the last one registered runs first, so request ids wrap throttling
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(rate_limit_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (rate limit headers, 429 responses, tags)
    apply_openapi_customizations(app)

    return app
