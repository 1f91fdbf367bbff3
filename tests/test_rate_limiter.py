"""Unit tests for the fixed-window rate limiter service.

Runs against InMemoryCounterStore with a shared fake clock so window expiry
and reset timestamps are deterministic.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import pytest

from app.adapters.counter_store.base import AbstractCounterStore
from app.adapters.counter_store.in_memory import InMemoryCounterStore
from app.core.errors import InvalidCallerIdentityError, StoreUnavailableError
from app.services.rate_limiter import (
    HEADER_LEFT,
    HEADER_REACHED,
    HEADER_RESET,
    LimitedResponse,
    RateLimiter,
)

CALLER = "1.2.3.4"
KEY = "rate_limiter:1.2.3.4"


class Downstream:
    """Records how often the rest of the pipeline ran."""

    def __init__(self, response: LimitedResponse | None = None, error: Exception | None = None) -> None:
        self.calls = 0
        self.response = response or LimitedResponse(
            status_code=200,
            headers={"content-type": "application/json"},
            body=b'{"users": []}',
        )
        self.error = error

    async def __call__(self) -> LimitedResponse:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response


class UnreachableStore(AbstractCounterStore):
    backend_name = "unreachable"

    def _fail(self):
        raise StoreUnavailableError(code="store_unavailable", message="down")

    async def exists(self, key):
        self._fail()

    async def create_with_expiry(self, key, ttl):
        self._fail()

    async def increment(self, key):
        self._fail()

    async def value(self, key):
        self._fail()

    async def ttl_remaining(self, key):
        self._fail()

    async def expire_if_unset(self, key, ttl):
        self._fail()

    async def ping(self):
        self._fail()


class InterleavingStore(InMemoryCounterStore):
    """Yields to the event loop after every read, exposing the read/increment gap."""

    async def value(self, key: str) -> int:
        count = await super().value(key)
        await asyncio.sleep(0)
        return count


class LapsingStore(InMemoryCounterStore):
    """Lets the window run out right after ``exists`` reports the counter live."""

    def __init__(self, fake_clock) -> None:
        super().__init__(clock=fake_clock.monotonic)
        self._fake_clock = fake_clock
        self.lapse_next_check = False

    async def exists(self, key: str) -> bool:
        found = await super().exists(key)
        if found and self.lapse_next_check:
            self.lapse_next_check = False
            self._fake_clock.advance(60)
        return found


@pytest.fixture
def store(fake_clock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=fake_clock.monotonic)


def make_limiter(store, fake_clock, **kwargs) -> RateLimiter:
    return RateLimiter(store, clock=fake_clock.now, **kwargs)


def reset_of(response: LimitedResponse) -> datetime:
    return datetime.fromisoformat(response.headers[HEADER_RESET])


class TestAcceptedRequests:

    @pytest.mark.asyncio
    async def test_first_request_creates_counter_and_is_served(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock)
        downstream = Downstream()

        response = await limiter.handle(CALLER, downstream)

        assert downstream.calls == 1
        assert response.status_code == 200
        assert response.body == b'{"users": []}'
        assert response.headers["content-type"] == "application/json"
        assert response.headers[HEADER_REACHED] == "false"
        assert response.headers[HEADER_LEFT] == "49"
        assert reset_of(response) == fake_clock.now() + timedelta(minutes=1)
        assert await store.value(KEY) == 1
        assert await store.ttl_remaining(KEY) == timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_left_counts_down_to_zero(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=5)

        for n in range(1, 6):
            response = await limiter.handle(CALLER, Downstream())
            assert response.status_code == 200
            assert response.headers[HEADER_LEFT] == str(5 - n)
            assert response.headers[HEADER_REACHED] == "false"

    @pytest.mark.asyncio
    async def test_downstream_rate_limit_headers_are_replaced(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=3)
        downstream = Downstream(
            LimitedResponse(status_code=201, headers={"Rate-Limit-Left": "999", "X-Custom": "kept"})
        )

        response = await limiter.handle(CALLER, downstream)

        assert response.status_code == 201
        assert response.headers.getlist(HEADER_LEFT) == ["2"]
        assert response.headers["x-custom"] == "kept"

    @pytest.mark.asyncio
    async def test_expiry_is_not_refreshed_by_later_requests(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock)
        first = await limiter.handle(CALLER, Downstream())

        fake_clock.advance(30)
        second = await limiter.handle(CALLER, Downstream())

        assert reset_of(second) == reset_of(first)
        assert await store.ttl_remaining(KEY) == timedelta(seconds=30)


class TestRejectedRequests:

    @pytest.mark.asyncio
    async def test_default_quota_scenario(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock)

        responses = [await limiter.handle(CALLER, Downstream()) for _ in range(50)]
        assert all(r.status_code == 200 for r in responses)
        assert responses[-1].headers[HEADER_LEFT] == "0"
        assert responses[-1].headers[HEADER_REACHED] == "false"

        downstream = Downstream()
        rejected = await limiter.handle(CALLER, downstream)

        assert rejected.status_code == 429
        assert rejected.headers[HEADER_LEFT] == "0"
        assert rejected.headers[HEADER_REACHED] == "true"
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_rejection_has_empty_body_and_all_headers(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=3)
        for _ in range(3):
            await limiter.handle(CALLER, Downstream())

        rejected = await limiter.handle(CALLER, Downstream())

        assert rejected.status_code == 429
        assert rejected.body == b""
        for header in (HEADER_REACHED, HEADER_LEFT, HEADER_RESET):
            assert header in rejected.headers

    @pytest.mark.asyncio
    async def test_rejection_leaves_counter_untouched(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=2)
        for _ in range(2):
            await limiter.handle(CALLER, Downstream())

        for _ in range(3):
            await limiter.handle(CALLER, Downstream())

        assert await store.value(KEY) == 2

    @pytest.mark.asyncio
    async def test_exhausted_caller_is_served_again_after_window(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=2)
        for _ in range(3):
            await limiter.handle(CALLER, Downstream())

        fake_clock.advance(60)
        response = await limiter.handle(CALLER, Downstream())

        assert response.status_code == 200
        assert response.headers[HEADER_LEFT] == "1"
        assert reset_of(response) == fake_clock.now() + timedelta(minutes=1)


class TestResetTimestamp:

    @pytest.mark.asyncio
    async def test_reset_stays_inside_window_and_never_moves_forward(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=3)
        window = limiter.window
        resets: list[datetime] = []

        for step in (0, 10, 20, 25):
            fake_clock.advance(step)
            now = fake_clock.now()
            response = await limiter.handle(CALLER, Downstream())
            reset = reset_of(response)
            assert now < reset <= now + window
            resets.append(reset)

        assert resets == sorted(resets, reverse=True)

    @pytest.mark.asyncio
    async def test_reset_is_now_when_counter_has_no_expiry(self, fake_clock) -> None:
        store = InMemoryCounterStore(clock=fake_clock.monotonic)
        await store.increment(KEY)
        limiter = make_limiter(store, fake_clock)

        decision = await limiter.inspect(CALLER)

        assert decision.reset_at == fake_clock.now()
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_counter_recreated_by_increment_gets_window_expiry(self, fake_clock) -> None:
        store = LapsingStore(fake_clock)
        limiter = make_limiter(store, fake_clock, max_per_window=2)
        await limiter.handle(CALLER, Downstream())
        store.lapse_next_check = True

        response = await limiter.handle(CALLER, Downstream())

        assert response.status_code == 200
        assert response.headers[HEADER_LEFT] == "1"
        assert reset_of(response) == fake_clock.now() + timedelta(minutes=1)
        assert await store.ttl_remaining(KEY) == timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_caller_is_not_locked_out_after_counter_lapses(self, fake_clock) -> None:
        store = LapsingStore(fake_clock)
        limiter = make_limiter(store, fake_clock, max_per_window=2)
        await limiter.handle(CALLER, Downstream())
        store.lapse_next_check = True
        await limiter.handle(CALLER, Downstream())
        await limiter.handle(CALLER, Downstream())
        assert (await limiter.handle(CALLER, Downstream())).status_code == 429

        fake_clock.advance(3600)
        response = await limiter.handle(CALLER, Downstream())

        assert response.status_code == 200
        assert response.headers[HEADER_LEFT] == "1"

    @pytest.mark.asyncio
    async def test_live_counter_expiry_is_not_extended(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock)
        await limiter.handle(CALLER, Downstream())
        fake_clock.advance(15)

        await limiter.handle(CALLER, Downstream())

        assert await store.ttl_remaining(KEY) == timedelta(seconds=45)


class TestIsolationAndConcurrency:

    @pytest.mark.asyncio
    async def test_callers_do_not_share_counters(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=2)
        for _ in range(3):
            await limiter.handle("10.0.0.1", Downstream())

        response = await limiter.handle("10.0.0.2", Downstream())

        assert response.status_code == 200
        assert response.headers[HEADER_LEFT] == "1"

    @pytest.mark.asyncio
    async def test_concurrent_requests_may_overshoot_limit(self, fake_clock) -> None:
        # Reading and incrementing are separate store calls; requests in
        # flight together can all be admitted.
        store = InterleavingStore(clock=fake_clock.monotonic)
        limiter = make_limiter(store, fake_clock, max_per_window=1)

        responses = await asyncio.gather(
            limiter.handle(CALLER, Downstream()),
            limiter.handle(CALLER, Downstream()),
        )

        assert [r.status_code for r in responses] == [200, 200]
        assert await store.value(KEY) == 2
        assert (await limiter.handle(CALLER, Downstream())).status_code == 429


class TestErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identity", [None, "", "   "])
    async def test_invalid_caller_identity(self, store, fake_clock, identity) -> None:
        limiter = make_limiter(store, fake_clock)
        downstream = Downstream()

        with pytest.raises(InvalidCallerIdentityError) as exc_info:
            await limiter.handle(identity, downstream)

        assert exc_info.value.code == "invalid_caller_identity"
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, fake_clock) -> None:
        limiter = make_limiter(UnreachableStore(), fake_clock)
        downstream = Downstream()

        with pytest.raises(StoreUnavailableError):
            await limiter.handle(CALLER, downstream)

        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_downstream_error_propagates_and_consumes_quota(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock)
        downstream = Downstream(error=RuntimeError("handler exploded"))

        with pytest.raises(RuntimeError, match="handler exploded"):
            await limiter.handle(CALLER, downstream)

        assert downstream.calls == 1
        assert await store.value(KEY) == 1

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_per_window": 0},
            {"window": timedelta(0)},
            {"window": timedelta(seconds=-5)},
            {"key_prefix": ""},
        ],
    )
    def test_invalid_constructor_args(self, store, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RateLimiter(store, **kwargs)


class TestKeysAndInspection:

    def test_derive_key_is_deterministic(self, store) -> None:
        limiter = RateLimiter(store)

        assert limiter.derive_key(CALLER) == KEY
        assert limiter.derive_key(CALLER) == limiter.derive_key(CALLER)
        assert limiter.derive_key("1.2.3.5") != KEY

    def test_derive_key_uses_prefix(self, store) -> None:
        limiter = RateLimiter(store, key_prefix="api")

        assert limiter.derive_key(CALLER) == "api:1.2.3.4"

    @pytest.mark.asyncio
    async def test_inspect_does_not_count(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=3)
        await limiter.handle(CALLER, Downstream())

        decision = await limiter.inspect(CALLER)
        await limiter.inspect(CALLER)

        assert decision.count == 1
        assert decision.left == 2
        assert decision.reached is False
        assert decision.limit == 3
        assert await store.value(KEY) == 1

    @pytest.mark.asyncio
    async def test_decision_headers_format(self, store, fake_clock) -> None:
        limiter = make_limiter(store, fake_clock, max_per_window=1)
        await limiter.handle(CALLER, Downstream())

        headers = (await limiter.inspect(CALLER)).as_headers()

        assert headers == {
            HEADER_REACHED: "true",
            HEADER_LEFT: "0",
            HEADER_RESET: "2026-01-01T12:01:00.000+00:00",
        }


@pytest.mark.asyncio
async def test_exceeded_log_hides_caller_identity(store, fake_clock, caplog) -> None:
    limiter = make_limiter(store, fake_clock, max_per_window=1)
    await limiter.handle(CALLER, Downstream())

    with caplog.at_level(logging.WARNING, logger="app.services.rate_limiter"):
        await limiter.handle(CALLER, Downstream())

    records = [r for r in caplog.records if r.getMessage() == "rate_limit.exceeded"]
    assert len(records) == 1
    assert len(records[0].key_hash) == 16
    assert CALLER not in str(records[0].__dict__)
