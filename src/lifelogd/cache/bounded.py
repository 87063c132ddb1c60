"""Size-bounded TTL + LRU cache for memoizing remote API results."""

from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, TypeVar

__all__ = [
    "BoundedCache",
    "CacheEntry",
    "CacheStats",
    "date_key",
    "lifelog_key",
    "recent_key",
    "search_key",
]

T = TypeVar("T")

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL_SECONDS = 300.0


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached value plus bookkeeping owned by exactly one cache."""

    data: T
    timestamp: float
    hits: int = 0


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Point-in-time counters for a :class:`BoundedCache`."""

    hits: int
    misses: int
    evictions: int
    size: int
    max_size: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


EvictionCallback = Callable[[str, CacheEntry[Any]], None]


@dataclass(slots=True)
class _Counters:
    hits: int = 0
    misses: int = 0
    evictions: int = 0


class BoundedCache(Generic[T]):
    """TTL + least-recently-used cache with a hard size bound.

    Entries expire ``ttl`` seconds after they were stored and are dropped
    lazily when read. Reads move entries to the most-recently-used end;
    inserting a new key at capacity evicts the single least-recently-used
    entry and reports it to ``on_evict``.

    Example:
        >>> cache = BoundedCache[str](max_size=2, ttl=60.0)
        >>> cache.set("a", "alpha")
        >>> cache.get("a")
        'alpha'
        >>> cache.get("missing") is None
        True
    """

    def __init__(
        self,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl: float = DEFAULT_TTL_SECONDS,
        on_evict: EvictionCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._max_size = max_size
        self._ttl = ttl
        self._on_evict = on_evict
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._counters = _Counters()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl(self) -> float:
        return self._ttl

    def _expired(self, entry: CacheEntry[T], now: float) -> bool:
        return now - entry.timestamp > self._ttl

    def get(self, key: str) -> T | None:
        """Return the cached value or ``None`` on a miss or expiry."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._counters.misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self._counters.misses += 1
                return None
            entry.hits += 1
            self._entries.move_to_end(key)
            self._counters.hits += 1
            return entry.data

    def set(self, key: str, value: T) -> None:
        """Store ``value`` under ``key``, evicting the LRU entry if full."""

        evicted: tuple[str, CacheEntry[T]] | None = None
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self._max_size:
                evicted = self._entries.popitem(last=False)
                self._counters.evictions += 1
            self._entries[key] = CacheEntry(data=value, timestamp=self._clock())

        if evicted is not None and self._on_evict is not None:
            self._on_evict(*evicted)

    def has(self, key: str) -> bool:
        """Return whether ``key`` holds a live entry without touching recency."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry and reset counters."""

        with self._lock:
            self._entries.clear()
            self._counters = _Counters()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Return keys ordered from least to most recently used."""

        with self._lock:
            return list(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._counters.hits,
                misses=self._counters.misses,
                evictions=self._counters.evictions,
                size=len(self._entries),
                max_size=self._max_size,
            )

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)


# ----------------------------------------------------------------------#
# Key builders
# ----------------------------------------------------------------------#
def _options_token(options: Mapping[str, Any] | None) -> str:
    if not options:
        return "{}"
    return json.dumps(
        {key: value for key, value in options.items() if value is not None},
        sort_keys=True,
        default=str,
    )


def lifelog_key(lifelog_id: str) -> str:
    """Cache key for a single lifelog lookup.

    Example:
        >>> lifelog_key("abc")
        'lifelog:abc'
    """

    return f"lifelog:{lifelog_id}"


def date_key(day: str, options: Mapping[str, Any] | None = None) -> str:
    """Cache key for a date listing.

    Example:
        >>> date_key("2024-01-15", {"limit": 5})
        'date:2024-01-15:{"limit": 5}'
    """

    return f"date:{day}:{_options_token(options)}"


def search_key(term: str, options: Mapping[str, Any] | None = None) -> str:
    return f"search:{term.strip().lower()}:{_options_token(options)}"


def recent_key(options: Mapping[str, Any] | None = None) -> str:
    return f"recent:{_options_token(options)}"
