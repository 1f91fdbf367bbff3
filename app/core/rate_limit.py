"""Rate limiting middleware for the HTTP layer.

This module wires the fixed-window limiter service into FastAPI.

Design goals:
- Minimal coupling: the limiter only sees a caller identity and a
  ``forward`` coroutine; Starlette responses are converted at this edge.
- Swap-friendly: the counter store is chosen by configuration behind an
  abstract interface.
- Explicit failure policy: when the store is down, APP_RATE_LIMIT_FAILURE_MODE
  decides between answering 503 (closed) and serving unlimited (open).

Caller identity:
- Client address of the connection.
- First X-Forwarded-For hop when running behind a trusted proxy.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import FastAPI, Request, Response
from fastapi.datastructures import Headers

from app.adapters.counter_store.base import AbstractCounterStore
from app.adapters.counter_store.factory import create_counter_store
from app.core.config import settings
from app.core.errors import InvalidCallerIdentityError, StoreUnavailableError
from app.core.exception_handlers import build_error_response
from app.services.rate_limiter import LimitedResponse, RateLimiter

logger = logging.getLogger(__name__)


_store: AbstractCounterStore | None = None
_store_backend: str | None = None
_limiter: RateLimiter | None = None
_limiter_config: tuple[int, int, str] | None = None


def get_counter_store() -> AbstractCounterStore:
    """Return the process-wide counter store.

    Rebuilt if the configured backend changes (primarily in tests).
    """

    global _store, _store_backend

    backend = settings.app.counter_store_backend
    if _store is None or _store_backend != backend:
        _store = create_counter_store()
        _store_backend = backend
    return _store


async def close_counter_store() -> None:
    """Close the process-wide counter store, if one was created."""

    global _store, _store_backend, _limiter, _limiter_config

    if _store is not None:
        await _store.close()
    _store = None
    _store_backend = None
    _limiter = None
    _limiter_config = None


def build_rate_limiter(store: AbstractCounterStore) -> RateLimiter:
    """Create a limiter over ``store`` using the configured quota and window."""

    return RateLimiter(
        store,
        max_per_window=settings.app.rate_limit_max_per_window,
        window=timedelta(seconds=settings.app.rate_limit_window_seconds),
        key_prefix=settings.app.rate_limit_key_prefix,
    )


def get_rate_limiter() -> RateLimiter:
    """Return a process-wide rate limiter instance.

    The instance is cached in-module. If configuration changes (primarily in
    tests), the limiter is rebuilt; counters live in the store and survive.

    Returns:
        RateLimiter: Configured limiter instance.
    """

    global _limiter, _limiter_config

    store = get_counter_store()
    config = (
        settings.app.rate_limit_max_per_window,
        settings.app.rate_limit_window_seconds,
        settings.app.rate_limit_key_prefix,
    )

    if _limiter is None or _limiter_config != config or _limiter.store is not store:
        _limiter = build_rate_limiter(store)
        _limiter_config = config

    return _limiter


def current_rate_limiter(app: FastAPI) -> RateLimiter:
    """Return the limiter attached to ``app``, or the process-wide one."""

    limiter = getattr(app.state, "rate_limiter", None)
    return limiter if limiter is not None else get_rate_limiter()


def resolve_caller_identity(request: Request) -> str | None:
    """Determine who is calling.

    Args:
        request: Incoming request.

    Returns:
        str | None: First X-Forwarded-For hop when trusted, else the client
        host; None when neither is available.
    """

    if settings.app.rate_limit_trust_forwarded_for:
        forwarded_for = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    return request.client.host if request.client else None


def is_exempt_path(path: str) -> bool:
    """Match exempt prefixes on whole path segments (``/health`` not ``/healthcare``)."""

    for prefix in settings.app.rate_limit_exempt_paths:
        base = prefix.rstrip("/")
        if path == prefix or path == base or path.startswith(base + "/"):
            return True
    return False


async def _to_limited_response(response: Response) -> LimitedResponse:
    """Buffer a downstream response into an immutable LimitedResponse."""

    chunks: list[bytes] = []
    async for chunk in response.body_iterator:  # type: ignore[attr-defined]
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
    return LimitedResponse(
        status_code=response.status_code,
        headers=Headers(raw=list(response.headers.raw)),
        body=b"".join(chunks),
    )


def _to_http_response(limited: LimitedResponse, method: str = "GET") -> Response:
    """Convert a LimitedResponse back into a Starlette response."""

    response = Response(content=limited.body, status_code=limited.status_code)
    if method == "HEAD":
        # HEAD bodies are empty; content-length describes the GET body
        response.raw_headers = [
            (name, value) for name, value in response.raw_headers if name != b"content-length"
        ]
        response.raw_headers.extend(limited.headers.raw)
        return response

    # Response computed content-length from the buffered body already
    response.raw_headers.extend(
        (name, value) for name, value in limited.headers.raw if name != b"content-length"
    )
    return response



async def rate_limit_middleware(request: Request, call_next) -> Response:
    """HTTP middleware enforcing the per-caller fixed-window limit.

    Every non-exempt request goes through ``RateLimiter.handle``. Accepted
    and rejected responses both carry the Rate-Limit-Reached, Rate-Limit-Left
    and Rate-Limit-Reset headers.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: Downstream response with rate limit headers, a 429 when the
        quota is used up, a 400 when no caller identity can be determined, or
        a 503 when the store is down and the failure mode is closed.
    """

    if not settings.app.rate_limit_enabled or is_exempt_path(request.url.path):
        return await call_next(request)

    limiter = current_rate_limiter(request.app)
    downstream: list[LimitedResponse] = []

    async def forward() -> LimitedResponse:
        limited_downstream = await _to_limited_response(await call_next(request))
        downstream.append(limited_downstream)
        return limited_downstream

    try:
        limited = await limiter.handle(resolve_caller_identity(request), forward)
    except InvalidCallerIdentityError as exc:
        logger.error(
            "rate_limit.invalid_caller_identity",
            extra={"request_path": request.url.path},
        )
        return build_error_response(exc)
    except StoreUnavailableError as exc:
        if settings.app.rate_limit_failure_mode == "open":
            logger.warning(
                "rate_limit.fail_open",
                extra={
                    "request_path": request.url.path,
                    "backend": limiter.store.backend_name,
                },
            )
            if downstream:
                # Store failed after forwarding; never run the handler twice.
                return _to_http_response(downstream[0], request.method)
            return await call_next(request)

        logger.error(
            "rate_limit.store_unavailable",
            extra={
                "request_path": request.url.path,
                "backend": limiter.store.backend_name,
                "forwarded": bool(downstream),
            },
        )
        return build_error_response(exc)

    return _to_http_response(limited, request.method)
