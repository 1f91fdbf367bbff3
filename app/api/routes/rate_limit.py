from __future__ import annotations

from fastapi import APIRouter, Request

from app.core.rate_limit import current_rate_limiter, resolve_caller_identity
from app.schemas.rate_limit import RateLimitStatusResponse

router = APIRouter(tags=["Rate Limit"])


@router.get("/rate-limit", response_model=RateLimitStatusResponse)
async def rate_limit_status(request: Request) -> RateLimitStatusResponse:
    """Report the caller's quota for the current window.

    This request is itself rate limited, so the reported usage includes it.
    """

    limiter = current_rate_limiter(request.app)
    decision = await limiter.inspect(resolve_caller_identity(request))
    return RateLimitStatusResponse.from_decision(
        decision,
        window_seconds=limiter.window.total_seconds(),
    )
