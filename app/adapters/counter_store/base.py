"""Counter store interface.

The limiter should depend on this abstraction (not a concrete backend).
Implementations own atomicity and expiry; callers never infer elapsed time
themselves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta


class AbstractCounterStore(ABC):
    """Interface for shared, expiring integer counters.

    Every operation raises ``StoreUnavailableError`` when the backing store
    cannot be reached. Implementations must never answer on the caller's
    behalf in that case.
    """

    backend_name: str = "abstract"

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True iff a live (non-expired) counter exists for ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def create_with_expiry(self, key: str, ttl: timedelta) -> bool:
        """Create the counter at 0 expiring after ``ttl`` if it is absent.

        Concurrent callers race safely: exactly one creation wins and losing
        callers get False instead of an error.

        Args:
            key: Counter key.
            ttl: Lifetime of the counter, fixed at creation.

        Returns:
            True if this call created the counter.
        """
        raise NotImplementedError

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Atomically add 1 and return the new value; the TTL is left untouched."""
        raise NotImplementedError

    @abstractmethod
    async def value(self, key: str) -> int:
        """Return the current count, 0 when the counter does not exist."""
        raise NotImplementedError

    @abstractmethod
    async def ttl_remaining(self, key: str) -> timedelta | None:
        """Return the time left before expiry.

        Returns:
            Remaining lifetime, or None if the key is absent or never expires.
        """
        raise NotImplementedError

    @abstractmethod
    async def expire_if_unset(self, key: str, ttl: timedelta) -> bool:
        """Give an existing counter an expiry if it has none.

        A counter that already expires keeps its original deadline.

        Returns:
            True if an expiry was set by this call.
        """
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> None:
        """Check connectivity, raising ``StoreUnavailableError`` on failure."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections held by the store (no-op by default)."""
        return None
