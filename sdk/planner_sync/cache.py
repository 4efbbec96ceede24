"""
Derived-value cache with a fixed validity window.

Aggregates such as the total budget across all task lists are recomputed
from the full mirror on demand. DerivedCache memoizes the result per key
and recomputes once the entry is older than the caller's TTL or after it
was invalidated.

Invariants:
    - A value younger than ttl is returned unchanged, even if the data it
      was derived from changed in between
    - invalidate() always forces the next read to recompute
    - The clock is injectable so expiry is testable without sleeping
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry:
    """A memoized value and when it was computed (clock seconds)."""

    value: Any
    computed_at: float


class DerivedCache:
    """Memoizes expensive derived values per key.

    Thread safety:
        Not thread-safe. Owned by the event loop that owns the store.

    Example:
        >>> cache = DerivedCache()
        >>> cache.get_or_compute("total_budget", 60.0, lambda: 1250.0)
        1250.0
        >>> cache.invalidate("total_budget")
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}

    def get_or_compute(self, key: Hashable, ttl: float, compute_fn: Callable[[], T]) -> T:
        """Return the memo for key if younger than ttl, else recompute it.

        Args:
            key: Cache key
            ttl: Validity window in seconds
            compute_fn: Zero-argument function producing the value

        Returns:
            The cached or freshly computed value
        """
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and now - entry.computed_at < ttl:
            return entry.value

        value = compute_fn()
        self._entries[key] = CacheEntry(value=value, computed_at=now)
        logger.debug("Derived value recomputed", extra={"key": str(key)})
        return value

    def peek(self, key: Hashable) -> Optional[CacheEntry]:
        """Current entry for key without touching it (testing helper)."""
        return self._entries.get(key)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries
