"""
In-memory TTL cache for query results.

A pure performance layer: it is empty in every new process and never the
system of record. Entries expire lazily on access; `clear_expired()` sweeps
explicitly for long-lived sessions.

The last value of each expired key is remembered (bounded) so a caller that
cannot reach the remote can still be served explicitly stale data through
`get_stale()`. Invalidation forgets those values too.
"""

from __future__ import annotations

import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Union

from delivery_sync.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_TTL_SECONDS = 60.0


@dataclass
class _Entry:
    value: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class Cache:
    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        *,
        max_stale_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._stale: "OrderedDict[str, Any]" = OrderedDict()
        self._max_stale = max_stale_entries
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "invalidations": 0}

    def get(self, key: str) -> Optional[Any]:
        """Value for `key`, or None on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        if entry.expired(self._clock()):
            self._evict(key)
            self._stats["misses"] += 1
            log.debug("Cache entry expired", extra={"key": key})
            return None
        self._stats["hits"] += 1
        return entry.value

    def get_stale(self, key: str) -> Optional[Any]:
        """Most recent value for `key`, ignoring expiry. Does not touch stats."""
        entry = self._entries.get(key)
        if entry is not None:
            return entry.value
        return self._stale.get(key)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if not key:
            raise ValueError("cache key is required")
        self._entries[key] = _Entry(value, self._clock(), ttl if ttl is not None else self.ttl)
        self._stale.pop(key, None)
        self._stats["sets"] += 1

    def invalidate(self, pattern: Union[str, Pattern[str]]) -> int:
        """
        Drop every entry whose key starts with `pattern` (str) or matches it
        (compiled regex). Returns the number of live entries removed.
        """
        if isinstance(pattern, str):
            matches: Callable[[str], bool] = lambda key: key.startswith(pattern)  # noqa: E731
        else:
            matches = lambda key: pattern.search(key) is not None  # noqa: E731

        removed = [key for key in self._entries if matches(key)]
        for key in removed:
            del self._entries[key]
        for key in [key for key in self._stale if matches(key)]:
            del self._stale[key]
        if removed:
            self._stats["invalidations"] += len(removed)
            log.debug(
                "Cache invalidated",
                extra={"pattern": getattr(pattern, "pattern", pattern), "removed": len(removed)},
            )
        return len(removed)

    def clear_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            self._evict(key)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._stale.clear()

    def keys(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        hit_rate = round(self._stats["hits"] / lookups * 100, 2) if lookups else 0.0
        return {**self._stats, "size": len(self._entries), "hit_rate": hit_rate}

    def reset_stats(self) -> None:
        for name in self._stats:
            self._stats[name] = 0

    def _evict(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._stale[key] = entry.value
        self._stale.move_to_end(key)
        while len(self._stale) > self._max_stale:
            self._stale.popitem(last=False)


def table_prefix(table: str) -> str:
    """Key prefix shared by every cached query on `table`."""
    return f"{table}:"


def table_pattern(table: str) -> Pattern[str]:
    return re.compile(rf"^{re.escape(table)}:")


__all__ = ["Cache", "DEFAULT_TTL_SECONDS", "table_prefix", "table_pattern"]
