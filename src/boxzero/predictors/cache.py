"""TTL cache of ensemble predictions keyed by (user_id, email_id).

Entries expire after a fixed TTL. When the number of entries exceeds a
soft cap, the oldest entries (by insertion time) are evicted in one batch.
The cache is owned by and injected into the EnsemblePredictor; there is no
process-wide instance.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from boxzero.core.logging import get_logger

if TYPE_CHECKING:
    from boxzero.predictors.types import PredictionResult

logger = get_logger(__name__)

CacheKey = tuple[str, str]


@dataclass(slots=True)
class _Entry:
    result: PredictionResult
    stored_at: float


class PredictionCache:
    """Prediction cache with TTL expiry and a soft size cap.

    Attributes:
        ttl_seconds: How long an entry stays valid
        max_entries: Soft cap; exceeding it triggers eviction
        evict_count: How many of the oldest entries one eviction removes
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 100,
        evict_count: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_count = evict_count
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(*key) is not None

    def get(self, user_id: str, email_id: str) -> PredictionResult | None:
        """Return a live entry, dropping it if it has expired."""
        key = (user_id, email_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.result

    def put(self, result: PredictionResult) -> None:
        key = (result.user_id, result.email_id)
        # Re-inserting moves the key to the end (newest)
        self._entries.pop(key, None)
        self._entries[key] = _Entry(result=result, stored_at=self._clock())

        if len(self._entries) > self.max_entries:
            self._evict_oldest()

    def clear(self) -> None:
        self._entries.clear()

    def _evict_oldest(self) -> None:
        oldest = sorted(self._entries.items(), key=lambda item: item[1].stored_at)[: self.evict_count]
        for key, _ in oldest:
            del self._entries[key]
        logger.debug("prediction_cache_evicted", evicted=len(oldest), remaining=len(self._entries))


class ProcessedRegistry:
    """Bounded record of (user_id, email_id) pairs already batch-processed.

    Oldest pairs are forgotten once more than max_entries are held; a
    forgotten email is treated as new by the next batch.
    """

    def __init__(self, max_entries: int = 10_000):
        self.max_entries = max_entries
        self._keys: dict[CacheKey, None] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._keys

    def add(self, user_id: str, email_id: str) -> None:
        key = (user_id, email_id)
        self._keys.pop(key, None)
        self._keys[key] = None
        self._trim()

    def resize(self, max_entries: int) -> None:
        self.max_entries = max_entries
        self._trim()

    def clear(self) -> None:
        self._keys.clear()

    def _trim(self) -> None:
        excess = len(self._keys) - self.max_entries
        if excess <= 0:
            return
        for key in list(self._keys)[:excess]:
            del self._keys[key]
        logger.debug("processed_registry_trimmed", forgotten=excess, remaining=len(self._keys))
