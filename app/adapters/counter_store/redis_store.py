"""Redis-backed counter store.

Window counters live in Redis so every worker and every process share them.
Each contract operation maps to a single Redis command, which keeps every
individual mutation atomic on the server:

- create_with_expiry -> ``SET key 0 NX PX <ttl_ms>`` (first writer wins)
- increment          -> ``INCR key`` (does not touch the expiry)
- ttl_remaining      -> ``PTTL key`` (-2 missing, -1 no expiry)
- expire_if_unset    -> ``PEXPIRE key <ttl_ms> NX`` (Redis >= 7.0)

Connection pooling, reconnects and socket timeouts are handled by redis-py.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.adapters.counter_store.base import AbstractCounterStore
from app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_ONE_MS = timedelta(milliseconds=1)


class RedisCounterStore(AbstractCounterStore):
    """Counter store using ``redis.asyncio``."""

    backend_name = "redis"

    def __init__(self, client: Redis) -> None:
        """Wrap an existing async Redis client.

        Args:
            client: redis-py asyncio client. It should be created with
                ``decode_responses=True``; bytes replies are handled too.
        """
        self._redis = client

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        socket_timeout: float = 2.0,
        socket_connect_timeout: float = 2.0,
        health_check_interval: int = 30,
    ) -> "RedisCounterStore":
        """Build a store with its own connection pool.

        Args:
            url: Redis URL, e.g. ``redis://localhost:6379/0``.
            socket_timeout: Per-command timeout in seconds.
            socket_connect_timeout: Connection timeout in seconds.
            health_check_interval: Seconds between idle connection checks.

        Returns:
            RedisCounterStore: Store ready to use (connections are lazy).
        """
        client = Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            health_check_interval=health_check_interval,
        )
        return cls(client)

    @asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncIterator[None]:
        """Turn unreachable-store failures into ``StoreUnavailableError``.

        Other Redis errors (e.g. WRONGTYPE) are programming errors and
        propagate unchanged.
        """
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "counter_store.unavailable",
                extra={
                    "backend": self.backend_name,
                    "operation": operation,
                    "error_type": type(exc).__name__,
                },
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message="Rate limit counter store is unavailable",
                details={"backend": self.backend_name, "operation": operation},
            ) from exc

    async def exists(self, key: str) -> bool:
        async with self._translate_errors("exists"):
            return await self._redis.exists(key) > 0

    async def create_with_expiry(self, key: str, ttl: timedelta) -> bool:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        ttl_ms = max(1, int(ttl / _ONE_MS))
        async with self._translate_errors("create_with_expiry"):
            created = await self._redis.set(key, 0, px=ttl_ms, nx=True)
        return bool(created)

    async def increment(self, key: str) -> int:
        async with self._translate_errors("increment"):
            return int(await self._redis.incr(key))

    async def value(self, key: str) -> int:
        async with self._translate_errors("value"):
            raw = await self._redis.get(key)
        return int(raw) if raw is not None else 0

    async def ttl_remaining(self, key: str) -> timedelta | None:
        async with self._translate_errors("ttl_remaining"):
            ttl_ms = await self._redis.pttl(key)
        if ttl_ms is None or ttl_ms < 0:
            return None
        return timedelta(milliseconds=ttl_ms)

    async def expire_if_unset(self, key: str, ttl: timedelta) -> bool:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        ttl_ms = max(1, int(ttl / _ONE_MS))
        async with self._translate_errors("expire_if_unset"):
            updated = await self._redis.pexpire(key, ttl_ms, nx=True)
        return bool(updated)

    async def ping(self) -> None:
        async with self._translate_errors("ping"):
            await self._redis.ping()

    async def close(self) -> None:
        await self._redis.aclose()
