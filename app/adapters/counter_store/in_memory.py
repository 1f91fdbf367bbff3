"""In-memory expiring counter store.

Notes:
- Per-process only: running multiple workers gives each worker its own counters.
- Thread-safe: uses a lock around shared state.
- Expired entries are dropped lazily when touched.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from app.adapters.counter_store.base import AbstractCounterStore

logger = logging.getLogger(__name__)


@dataclass
class _CounterEntry:
    count: int
    expires_at: float | None


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store keeping window counters in a process-local dict.

    Mirrors the semantics of the Redis commands the production store relies
    on (``SET NX PX``, ``INCR``, ``PTTL``, ``PEXPIRE NX``), including INCR on a
    missing key creating a counter without expiry.

    Important:
        This store is not shared between processes. Use it for development,
        single-worker deployments and tests.
    """

    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the store.

        Args:
            clock: Time source returning seconds; only differences are used.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _CounterEntry] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryCounterStore(entries={len(self._entries)})"

    def _live_entry(self, key: str) -> _CounterEntry | None:
        """Return the entry for key, evicting it first if it has expired.

        Must be called with the lock held.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._entries[key]
            logger.debug("counter_store.expired", extra={"backend": self.backend_name})
            return None
        return entry

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def create_with_expiry(self, key: str, ttl: timedelta) -> bool:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._entries[key] = _CounterEntry(
                count=0,
                expires_at=self._clock() + ttl.total_seconds(),
            )
            return True

    async def increment(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                entry = _CounterEntry(count=0, expires_at=None)
                self._entries[key] = entry
            entry.count += 1
            return entry.count

    async def value(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            return entry.count if entry is not None else 0

    async def ttl_remaining(self, key: str) -> timedelta | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is None:
                return None
            return timedelta(seconds=entry.expires_at - self._clock())

    async def expire_if_unset(self, key: str, ttl: timedelta) -> bool:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is not None:
                return False
            entry.expires_at = self._clock() + ttl.total_seconds()
            return True

    async def ping(self) -> None:
        return None

    def clear(self) -> None:
        """Drop every counter (used by tests and manual resets)."""
        with self._lock:
            self._entries.clear()
