"""In-memory result cache for query operations.

The cache is identity-scoped: SessionLifecycle clears it on every identity
change. clear() bumps a generation counter and writes tagged with an older
generation are dropped, so a response that was in flight across the change
cannot repopulate the cache with the previous user's data.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class FetchPolicy(str, Enum):
    """How execute() uses the cache for queries."""

    CACHE_FIRST = "cache-first"  # Serve from cache when present, else fetch and store
    NETWORK_ONLY = "network-only"  # Always fetch, store the result
    NO_CACHE = "no-cache"  # Always fetch, never store


@dataclass
class CachedResult:
    data: dict[str, Any]
    generation: int
    stored_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ResultCache:
    """Query results keyed by Operation.cache_key()."""

    def __init__(self) -> None:
        self._entries: dict[str, CachedResult] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return copy.deepcopy(entry.data)

    def put(self, key: str, data: dict[str, Any], generation: int | None = None) -> bool:
        """Store a result.

        Args:
            key: Cache key of the operation
            data: Result data
            generation: Cache generation observed when the operation started

        Returns:
            False if the write was dropped because the cache was cleared since
        """
        if generation is not None and generation != self._generation:
            logger.debug("Dropping cache write from a previous session generation")
            return False
        self._entries[key] = CachedResult(copy.deepcopy(data), self._generation)
        return True

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Discard every entry and start a new generation."""
        self._generation += 1
        count = len(self._entries)
        self._entries.clear()
        logger.debug(f"Result cache cleared ({count} entries), generation {self._generation}")
