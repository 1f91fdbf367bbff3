"""Pydantic schemas for rate limit status responses."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.services.rate_limiter import RateLimitDecision


class RateLimitStatusResponse(BaseModel):
    """The caller's quota in the current window."""

    limit: int = Field(..., description="Maximum requests allowed per window.")
    window_seconds: float = Field(..., description="Window length in seconds.")
    used: int = Field(..., description="Requests counted in the current window, this one included.")
    left: int = Field(..., description="Requests left in the current window.")
    reached: bool = Field(..., description="Whether the quota is used up.")
    reset_at: datetime = Field(..., description="When the current window resets (UTC).")

    @classmethod
    def from_decision(cls, decision: RateLimitDecision, *, window_seconds: float) -> "RateLimitStatusResponse":
        return cls(
            limit=decision.limit,
            window_seconds=window_seconds,
            used=decision.count,
            left=decision.left,
            reached=decision.reached,
            reset_at=decision.reset_at,
        )
