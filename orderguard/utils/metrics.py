"""
Metrics utilities - operation timing for the payment performance dashboard.
"""
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

RESET_INTERVAL_SECONDS = 3600
SLOW_OPERATION_MS = 1000


class Timer:
    """Simple timer for measuring operation latency."""

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Timer":
        self._start = time.monotonic()
        return self

    def stop(self) -> int:
        """Stop timer and return elapsed milliseconds."""
        self._end = time.monotonic()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> int:
        """Return elapsed time in milliseconds."""
        if self._start is None:
            return 0
        end = self._end or time.monotonic()
        return int((end - self._start) * 1000)


@dataclass
class _OperationStats:
    count: int = 0
    total_ms: int = 0
    errors: int = 0
    slow: int = 0
    last_reset: float = field(default_factory=time.monotonic)


class OperationMetrics:
    """Per-operation count, latency and error rate. Counters reset every hour."""

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self._stats: dict[str, _OperationStats] = {}

    def record(self, operation: str, duration_ms: int, is_error: bool) -> None:
        stats = self._stats.get(operation)
        now = self.clock()
        if stats is None or now - stats.last_reset > RESET_INTERVAL_SECONDS:
            stats = _OperationStats(last_reset=now)
            self._stats[operation] = stats

        stats.count += 1
        stats.total_ms += duration_ms
        if is_error:
            stats.errors += 1
        if duration_ms >= SLOW_OPERATION_MS:
            stats.slow += 1

    @asynccontextmanager
    async def track(self, operation: str):
        """
        Usage:
            async with operation_metrics.track("stripe.retrieve_payment_intent"):
                ...
        """
        timer = Timer().start()
        try:
            yield timer
        except BaseException:
            self.record(operation, timer.stop(), True)
            raise
        self.record(operation, timer.stop(), False)

    def snapshot(self) -> dict[str, dict]:
        now = self.clock()
        result = {}
        for name, s in self._stats.items():
            minutes = (now - s.last_reset) / 60
            result[name] = {
                "count": s.count,
                "average_ms": s.total_ms / s.count if s.count else 0,
                "error_rate": (s.errors / s.count) * 100 if s.count else 0,
                "throughput_per_minute": s.count / minutes if minutes > 0 else 0,
                "slow_operations": s.slow,
            }
        return result

    def average_latency_ms(self, prefix: str = "") -> float:
        """Average latency across operations whose name starts with `prefix`."""
        count = sum(s.count for n, s in self._stats.items() if n.startswith(prefix))
        total = sum(s.total_ms for n, s in self._stats.items() if n.startswith(prefix))
        return total / count if count else 0.0

    def slow_operations(self) -> int:
        return sum(s.slow for s in self._stats.values())

    def clear(self) -> None:
        self._stats.clear()


operation_metrics = OperationMetrics()
