"""
Per-operation circuit breaker for outbound calls (Stripe, database probes).

CLOSED -> OPEN after `failure_threshold` consecutive failures.
OPEN rejects immediately until `reset_timeout_ms` has passed since the last failure.
HALF_OPEN lets exactly one trial call through: success closes, failure reopens.

State lives in a BreakerStateStore created at startup (init_circuit_breaker)
so tests can swap or reset it.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from orderguard.exceptions import CircuitOpenError, TransientDependencyError

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RESET_TIMEOUT_MS = 60000


@dataclass
class BreakerState:
    failures: int = 0
    last_failure_at: float = 0.0
    state: str = CLOSED
    trial_in_flight: bool = False
    opened_count: int = 0


@dataclass
class BreakerStateStore:
    """In-process table of breaker states, guarded by its own lock."""
    states: dict[str, BreakerState] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def get(self, operation: str) -> BreakerState:
        state = self.states.get(operation)
        if state is None:
            state = BreakerState()
            self.states[operation] = state
        return state

    def clear(self) -> None:
        self.states.clear()


class CircuitBreaker:
    def __init__(
        self,
        store: Optional[BreakerStateStore] = None,
        clock: Callable[[], float] = time.monotonic,
        on_open: Optional[Callable[[str, int], Awaitable[None]]] = None,
    ):
        self.store = store or BreakerStateStore()
        self.clock = clock
        self.on_open = on_open

    async def execute(
        self,
        operation: str,
        fn: Callable[[], Awaitable[Any]],
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS,
    ) -> Any:
        """
        Run `fn` under the breaker for `operation`.

        Raises CircuitOpenError without calling `fn` while OPEN, or while a
        HALF_OPEN trial is already in flight. A timeout raises
        TransientDependencyError and counts as a failure.
        """
        async with self.store.lock:
            state = self.store.get(operation)
            if state.state == OPEN:
                elapsed_ms = (self.clock() - state.last_failure_at) * 1000
                if elapsed_ms < reset_timeout_ms:
                    raise CircuitOpenError(operation)
                state.state = HALF_OPEN
                logger.info("Circuit breaker HALF_OPEN for %s", operation)
            if state.state == HALF_OPEN:
                if state.trial_in_flight:
                    raise CircuitOpenError(operation)
                state.trial_in_flight = True

        try:
            result = await asyncio.wait_for(fn(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            await self._record_failure(operation, failure_threshold)
            raise TransientDependencyError(
                f"Operation {operation} timed out after {timeout_ms}ms"
            )
        except Exception:
            await self._record_failure(operation, failure_threshold)
            raise
        except asyncio.CancelledError:
            await self._abandon_trial(operation)
            raise

        await self._record_success(operation)
        return result

    async def _abandon_trial(self, operation: str) -> None:
        """A cancelled call proves nothing; free the HALF_OPEN slot for the next caller."""
        async with self.store.lock:
            state = self.store.get(operation)
            if state.trial_in_flight:
                state.trial_in_flight = False
                logger.info("Circuit breaker trial for %s cancelled", operation)

    async def _record_success(self, operation: str) -> None:
        async with self.store.lock:
            state = self.store.get(operation)
            if state.state != CLOSED:
                logger.info("Circuit breaker CLOSED for %s", operation)
            state.state = CLOSED
            state.failures = 0
            state.trial_in_flight = False

    async def _record_failure(self, operation: str, failure_threshold: int) -> None:
        opened = False
        async with self.store.lock:
            state = self.store.get(operation)
            state.failures += 1
            state.last_failure_at = self.clock()
            if state.state == HALF_OPEN:
                state.state = OPEN
                state.trial_in_flight = False
                opened = True
            elif state.state == CLOSED and state.failures >= failure_threshold:
                state.state = OPEN
                opened = True
            if opened:
                state.opened_count += 1
            failures = state.failures

        if opened:
            logger.error(
                "Circuit breaker OPEN for %s after %d failures",
                operation, failures,
                extra={"operation": operation},
            )
            if self.on_open:
                try:
                    await self.on_open(operation, failures)
                except Exception as e:
                    logger.warning("Circuit breaker open hook failed: %s", str(e))

    def get_state(self, operation: str) -> str:
        state = self.store.states.get(operation)
        return state.state if state else CLOSED

    def snapshot(self) -> dict[str, dict]:
        """Breaker states for the health/metrics surface."""
        return {
            name: {
                "state": s.state,
                "failures": s.failures,
                "opened_count": s.opened_count,
            }
            for name, s in self.store.states.items()
        }


_breaker: Optional[CircuitBreaker] = None


async def _alert_on_open(operation: str, failures: int) -> None:
    from orderguard.utils.alerting import send_alert, AlertType
    await send_alert(
        AlertType.CIRCUIT_OPENED,
        f"Circuit breaker opened for {operation} after {failures} consecutive failures",
        extra={"operation": operation},
        dedup_key=operation,
    )


def init_circuit_breaker(store: Optional[BreakerStateStore] = None) -> CircuitBreaker:
    """Create the process-wide breaker. Called from the app lifespan."""
    global _breaker
    _breaker = CircuitBreaker(store=store, on_open=_alert_on_open)
    return _breaker


def get_circuit_breaker() -> CircuitBreaker:
    if _breaker is None:
        return init_circuit_breaker()
    return _breaker


def reset_circuit_breaker() -> None:
    global _breaker
    _breaker = None
