"""
Batch processing for provider calls.

Items within a batch run concurrently; batches run one after another with a
pause in between to stay under the provider's rate limit.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    results: list = field(default_factory=list)  # per item: return value or the exception
    errors: list[str] = field(default_factory=list)


async def process_in_batches(
    items: Sequence[Any],
    fn: Callable[[Any], Awaitable[Any]],
    batch_size: int = 10,
    delay_seconds: float = 0.1,
) -> BatchResult:
    """Apply `fn` to every item. A failing item is counted, never aborts the run."""
    result = BatchResult()
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        outcomes = await asyncio.gather(*(fn(item) for item in batch), return_exceptions=True)

        for outcome in outcomes:
            result.results.append(outcome)
            if isinstance(outcome, Exception):
                result.failed += 1
                result.errors.append(str(outcome))
            else:
                result.processed += 1

        if start + batch_size < len(items) and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    if result.failed:
        logger.warning(
            "Batch run finished: %d processed, %d failed", result.processed, result.failed,
        )
    return result
