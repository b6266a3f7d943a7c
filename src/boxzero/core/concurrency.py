"""Concurrency controls for external (Tier-3) calls.

The ensemble runs on a single coordinating task. Parallelism only happens
when Tier-3 calls fan out, and that fan-out is bounded two ways:

- InFlightBudget counts calls currently awaiting the LLM. A single
  predict() skips Tier-3 when the budget is exhausted.
- chunked() splits a batch into fixed-size groups; each group is awaited
  as a whole before the next starts (backpressure by chunking).

Neither is thread-safe. A multi-threaded or multi-instance deployment must
put per-key locking or an external store in front of these.
"""

from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager
from typing import TypeVar

from boxzero.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class InFlightBudget:
    """Counter of in-flight calls with a hard ceiling.

    Example:
        budget = InFlightBudget(limit=3)

        if not budget.exhausted:
            async with budget.slot():
                result = await call_llm()
    """

    def __init__(self, limit: int):
        """Initialize the budget.

        Args:
            limit: Maximum number of concurrent in-flight calls (>= 1)
        """
        if limit < 1:
            raise ValueError(f"In-flight limit must be at least 1, got {limit}")
        self.limit = limit
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Number of calls currently holding a slot."""
        return self._in_flight

    @property
    def exhausted(self) -> bool:
        """Whether every slot is taken."""
        return self._in_flight >= self.limit

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block.

        The slot is released even if the block raises or is cancelled.
        """
        self._in_flight += 1
        logger.debug("llm_slot_acquired", in_flight=self._in_flight, limit=self.limit)
        try:
            yield
        finally:
            self._in_flight -= 1

    def resize(self, limit: int) -> None:
        """Change the ceiling. Calls already in flight are unaffected."""
        if limit < 1:
            raise ValueError(f"In-flight limit must be at least 1, got {limit}")
        self.limit = limit


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Split a sequence into consecutive chunks of at most `size` items.

    Args:
        items: Items to split
        size: Chunk size (>= 1)

    Yields:
        Lists of up to `size` items, preserving order
    """
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
