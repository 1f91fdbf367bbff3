from __future__ import annotations

from fastapi import APIRouter, Request

from app.core.rate_limit import current_rate_limiter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check: verifies the counter store answers.

    Raises ``StoreUnavailableError`` (rendered as 503) when it does not, so
    load balancers stop routing to an instance that cannot rate limit.

    Returns:
        dict: Status and the counter store backend in use.
    """

    store = current_rate_limiter(request.app).store
    await store.ping()
    return {"status": "ok", "counter_store": store.backend_name}
