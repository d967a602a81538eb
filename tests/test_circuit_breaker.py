"""
Tests for orderguard/utils/circuit_breaker.py - per-operation breaker states.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from orderguard.exceptions import CircuitOpenError, TransientDependencyError
from orderguard.utils.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    BreakerStateStore,
    CircuitBreaker,
    get_circuit_breaker,
    init_circuit_breaker,
    reset_circuit_breaker,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _failing():
    return AsyncMock(side_effect=RuntimeError("stripe down"))


async def _trip(breaker: CircuitBreaker, operation: str = "stripe.retrieve", times: int = 5):
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(operation, _failing())


class TestClosedState:
    async def test_success_passes_result_through(self):
        breaker = CircuitBreaker()
        fn = AsyncMock(return_value={"id": "pi_1"})
        assert await breaker.execute("stripe.retrieve", fn) == {"id": "pi_1"}
        assert breaker.get_state("stripe.retrieve") == CLOSED

    async def test_stays_closed_below_threshold(self):
        breaker = CircuitBreaker()
        await _trip(breaker, times=4)
        assert breaker.get_state("stripe.retrieve") == CLOSED

    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker()
        await _trip(breaker, times=4)
        await breaker.execute("stripe.retrieve", AsyncMock(return_value=1))
        await _trip(breaker, times=4)
        assert breaker.get_state("stripe.retrieve") == CLOSED

    async def test_operations_are_independent(self):
        breaker = CircuitBreaker()
        await _trip(breaker, "stripe.retrieve")
        fn = AsyncMock(return_value="ok")
        assert await breaker.execute("stripe.ping", fn) == "ok"


class TestOpenState:
    async def test_opens_after_five_consecutive_failures(self):
        breaker = CircuitBreaker()
        await _trip(breaker)
        assert breaker.get_state("stripe.retrieve") == OPEN

    async def test_rejects_without_calling_fn(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)

        clock.advance(30)
        fn = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenError):
            await breaker.execute("stripe.retrieve", fn)
        fn.assert_not_called()

    async def test_open_error_is_transient(self):
        breaker = CircuitBreaker()
        await _trip(breaker)
        with pytest.raises(TransientDependencyError):
            await breaker.execute("stripe.retrieve", AsyncMock())

    async def test_custom_threshold(self):
        breaker = CircuitBreaker()
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute("op", _failing(), failure_threshold=2)
        assert breaker.get_state("op") == OPEN

    async def test_on_open_hook_called_once(self):
        hook = AsyncMock()
        breaker = CircuitBreaker(on_open=hook)
        await _trip(breaker)
        hook.assert_awaited_once_with("stripe.retrieve", 5)

    async def test_hook_failure_does_not_mask_error(self):
        breaker = CircuitBreaker(on_open=AsyncMock(side_effect=RuntimeError("alert down")))
        await _trip(breaker)
        assert breaker.get_state("stripe.retrieve") == OPEN


class TestHalfOpen:
    async def test_trial_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)

        clock.advance(61)
        fn = AsyncMock(return_value="recovered")
        assert await breaker.execute("stripe.retrieve", fn) == "recovered"
        fn.assert_awaited_once()
        assert breaker.get_state("stripe.retrieve") == CLOSED

    async def test_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)

        clock.advance(61)
        with pytest.raises(RuntimeError):
            await breaker.execute("stripe.retrieve", _failing())
        assert breaker.get_state("stripe.retrieve") == OPEN

        fn = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await breaker.execute("stripe.retrieve", fn)
        fn.assert_not_called()

    async def test_only_one_trial_in_flight(self):
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)
        clock.advance(61)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "done"

        trial = asyncio.create_task(breaker.execute("stripe.retrieve", slow_trial))
        await asyncio.sleep(0)
        assert breaker.get_state("stripe.retrieve") == HALF_OPEN

        second = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await breaker.execute("stripe.retrieve", second)
        second.assert_not_called()

        release.set()
        assert await trial == "done"
        assert breaker.get_state("stripe.retrieve") == CLOSED

    async def test_cancelled_trial_frees_the_slot(self):
        """A trial cancelled mid-flight (client disconnect, shutdown) must not wedge the breaker."""
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        await _trip(breaker)
        clock.advance(61)

        started = asyncio.Event()

        async def hanging_trial():
            started.set()
            await asyncio.Event().wait()

        trial = asyncio.create_task(breaker.execute("stripe.retrieve", hanging_trial))
        await started.wait()
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert breaker.store.get("stripe.retrieve").trial_in_flight is False

        clock.advance(3600)
        fn = AsyncMock(return_value="ok")
        assert await breaker.execute("stripe.retrieve", fn) == "ok"
        fn.assert_awaited_once()
        assert breaker.get_state("stripe.retrieve") == CLOSED


class TestTimeout:
    async def test_timeout_counts_as_failure(self):
        breaker = CircuitBreaker()

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(TransientDependencyError, match="timed out"):
            await breaker.execute("slow", hang, timeout_ms=10, failure_threshold=1)
        assert breaker.get_state("slow") == OPEN


class TestLifecycle:
    def test_snapshot_reports_states(self):
        store = BreakerStateStore()
        breaker = CircuitBreaker(store=store)
        store.get("stripe.ping").state = OPEN
        snap = breaker.snapshot()
        assert snap["stripe.ping"]["state"] == OPEN

    def test_reset_gives_fresh_store(self):
        first = get_circuit_breaker()
        first.store.get("op").state = OPEN
        reset_circuit_breaker()
        assert get_circuit_breaker().get_state("op") == CLOSED

    def test_init_with_injected_store(self):
        store = BreakerStateStore()
        breaker = init_circuit_breaker(store)
        assert breaker.store is store
        assert get_circuit_breaker() is breaker
