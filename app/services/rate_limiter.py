"""Per-caller fixed-window rate limiter.

The limiter sits in front of a downstream handler. For every request it reads
the caller's window counter, rejects with 429 once the quota is used up, and
otherwise counts the request, forwards it and reports the remaining quota.

Algorithm (evaluate-then-mutate):
1. Read the current count (before incrementing).
2. ``count >= max_per_window`` -> reject; the counter is not touched.
3. Otherwise create the counter with the window as TTL if it is missing,
   increment it, await the downstream handler and attach reporting headers.

The request that brings the count up to the limit is still served; only the
next one is rejected. Reading and incrementing are separate store calls, so
concurrent requests for the same caller can be admitted slightly past the
limit (at most by the number of requests in flight). The window expiry is set
once, when the counter is created, and lives in the store. A counter that
expired just before INCR and came back without a TTL gets the window as its
expiry again, so no caller is locked out past one window.

A failed downstream call still consumes one unit of quota.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping

from fastapi import status
from fastapi.datastructures import Headers

from app.adapters.counter_store.base import AbstractCounterStore
from app.core.errors import InvalidCallerIdentityError

logger = logging.getLogger(__name__)

DEFAULT_MAX_PER_WINDOW = 50
DEFAULT_WINDOW = timedelta(minutes=1)
DEFAULT_KEY_PREFIX = "rate_limiter"

HEADER_REACHED = "Rate-Limit-Reached"
HEADER_LEFT = "Rate-Limit-Left"
HEADER_RESET = "Rate-Limit-Reset"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_key(key: str) -> str:
    """Hash a rate limit key for logging without exposing the caller."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class RateLimitDecision:
    """Reporting values for one caller at one instant.

    Attributes:
        reached: Whether the caller has used up the quota.
        left: Requests still allowed in the current window (never negative).
        reset_at: When the window resets (aware UTC datetime).
        count: Counter value the decision was derived from.
        limit: Configured quota per window.
    """

    reached: bool
    left: int
    reset_at: datetime
    count: int
    limit: int

    def as_headers(self) -> dict[str, str]:
        """Render the decision as the three Rate-Limit-* response headers."""
        return {
            HEADER_REACHED: "true" if self.reached else "false",
            HEADER_LEFT: str(self.left),
            HEADER_RESET: self.reset_at.isoformat(timespec="milliseconds"),
        }


@dataclass(frozen=True)
class LimitedResponse:
    """Immutable response value passed through the limiter.

    ``headers`` accepts any string mapping and is stored as an immutable,
    case-insensitive ``Headers`` (repeated header names are preserved when a
    ``Headers`` instance is passed in).
    """

    status_code: int
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            object.__setattr__(self, "headers", Headers(headers=dict(self.headers)))

    def with_headers(self, extra: Mapping[str, str]) -> "LimitedResponse":
        """Return a copy with ``extra`` headers replacing same-named ones."""
        replaced = {name.lower().encode("latin-1") for name in extra}
        raw = [(k, v) for k, v in self.headers.raw if k.lower() not in replaced]
        raw.extend(
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in extra.items()
        )
        return LimitedResponse(
            status_code=self.status_code,
            headers=Headers(raw=raw),
            body=self.body,
        )


Forward = Callable[[], Awaitable[LimitedResponse]]


class RateLimiter:
    """Fixed-window rate limiter over a shared counter store.

    Holds no per-key state of its own: only configuration and the store.
    """

    def __init__(
        self,
        store: AbstractCounterStore,
        *,
        max_per_window: int = DEFAULT_MAX_PER_WINDOW,
        window: timedelta = DEFAULT_WINDOW,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Shared counter store.
            max_per_window: Maximum accepted requests per caller per window.
            window: Window length, applied as TTL when a counter is created.
            key_prefix: Namespace prepended to caller identities.
            clock: Returns the current time as an aware UTC datetime.

        Raises:
            ValueError: If max_per_window, window or key_prefix are invalid.
        """
        if max_per_window < 1:
            raise ValueError("max_per_window must be >= 1")
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        if not key_prefix:
            raise ValueError("key_prefix must be a non-empty string")

        self._store = store
        self._max_per_window = max_per_window
        self._window = window
        self._key_prefix = key_prefix
        self._clock = clock

    @property
    def store(self) -> AbstractCounterStore:
        return self._store

    @property
    def max_per_window(self) -> int:
        return self._max_per_window

    @property
    def window(self) -> timedelta:
        return self._window

    def derive_key(self, caller_identity: str | None) -> str:
        """Build the counter key for a caller.

        Args:
            caller_identity: Opaque caller token, usually the client IP.

        Returns:
            str: ``"<prefix>:<identity>"``.

        Raises:
            InvalidCallerIdentityError: If the identity is missing or blank.
        """
        if caller_identity is None or not caller_identity.strip():
            raise InvalidCallerIdentityError(
                code="invalid_caller_identity",
                message="Could not determine the caller identity for rate limiting",
            )
        return f"{self._key_prefix}:{caller_identity.strip()}"

    async def _decide(self, key: str, count: int) -> RateLimitDecision:
        ttl = await self._store.ttl_remaining(key)
        now = self._clock()
        return RateLimitDecision(
            reached=count >= self._max_per_window,
            left=max(0, self._max_per_window - count),
            reset_at=now + ttl if ttl is not None else now,
            count=count,
            limit=self._max_per_window,
        )

    async def inspect(self, caller_identity: str | None) -> RateLimitDecision:
        """Return the caller's current reporting values without counting."""
        key = self.derive_key(caller_identity)
        return await self._decide(key, await self._store.value(key))

    async def handle(self, caller_identity: str | None, forward: Forward) -> LimitedResponse:
        """Admit or reject one request.

        Args:
            caller_identity: Opaque caller token, usually the client IP.
            forward: Zero-argument coroutine function running the rest of
                the pipeline. Not called when the request is rejected.

        Returns:
            LimitedResponse: 429 with empty body when the quota is used up,
            otherwise the downstream response; both carry the Rate-Limit-*
            headers.

        Raises:
            InvalidCallerIdentityError: If the identity is missing or blank.
            StoreUnavailableError: If the counter store cannot be reached.
            Exception: Anything raised by ``forward`` propagates unchanged.
        """
        key = self.derive_key(caller_identity)
        key_hash = hash_key(key)

        count = await self._store.value(key)
        if count >= self._max_per_window:
            decision = await self._decide(key, count)
            logger.warning(
                "rate_limit.exceeded",
                extra={
                    "key_hash": key_hash,
                    "limit": decision.limit,
                    "count": decision.count,
                    "reset_at": decision.as_headers()[HEADER_RESET],
                },
            )
            return LimitedResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers=decision.as_headers(),
            )

        # Expiry is set only at creation; later hits never extend the window.
        if not await self._store.exists(key):
            created = await self._store.create_with_expiry(key, self._window)
            if created:
                logger.debug(
                    "rate_limit.counter_created",
                    extra={
                        "key_hash": key_hash,
                        "window_s": self._window.total_seconds(),
                    },
                )
        if await self._store.increment(key) == 1 and await self._store.ttl_remaining(key) is None:
            # The window lapsed between the existence check and INCR, which
            # recreated the counter without expiry.
            if await self._store.expire_if_unset(key, self._window):
                logger.debug(
                    "rate_limit.expiry_restored",
                    extra={
                        "key_hash": key_hash,
                        "window_s": self._window.total_seconds(),
                    },
                )

        response = await forward()

        decision = await self._decide(key, await self._store.value(key))
        logger.debug(
            "rate_limit.allowed",
            extra={
                "key_hash": key_hash,
                "limit": decision.limit,
                "remaining": decision.left,
            },
        )
        return response.with_headers(decision.as_headers())
