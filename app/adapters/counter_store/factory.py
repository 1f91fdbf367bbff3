"""Factory for creating counter store instances."""

from app.adapters.counter_store.base import AbstractCounterStore
from app.adapters.counter_store.in_memory import InMemoryCounterStore
from app.adapters.counter_store.redis_store import RedisCounterStore
from app.core.config import settings
from app.core.errors import ValidationAppError


def create_counter_store() -> AbstractCounterStore:
    """Instantiate the counter store selected by configuration.

    Reads APP_COUNTER_STORE_BACKEND and the REDIS_* settings from
    app.core.config.settings.

    Returns:
        AbstractCounterStore: Configured store instance.

    Raises:
        ValidationAppError: If the configured backend is unknown.
    """
    backend = settings.app.counter_store_backend.lower()

    if backend == "redis":
        return RedisCounterStore.from_url(
            settings.redis.url,
            socket_timeout=settings.redis.socket_timeout_seconds,
            socket_connect_timeout=settings.redis.socket_connect_timeout_seconds,
            health_check_interval=settings.redis.health_check_interval_seconds,
        )

    if backend == "memory":
        return InMemoryCounterStore()

    raise ValidationAppError(
        code="counter_store_unknown_backend",
        message=(
            f"Unknown counter store backend: '{backend}'. Supported backends: redis, memory"
        ),
    )
