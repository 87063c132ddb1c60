"""Explicit cache instances shared by the API facade."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from lifelogd.core.config import CacheSettings
from lifelogd.core.logging import Logger, get_logger

from .bounded import BoundedCache, CacheEntry, CacheStats

__all__ = ["CacheRegistry"]


@dataclass(slots=True)
class CacheRegistry:
    """The two raw-result caches, built once and injected where needed.

    ``lookups`` memoizes structured reads (by id, by date, recent) and
    ``search`` memoizes free-text results with a shorter lifetime.
    """

    lookups: BoundedCache[Any]
    search: BoundedCache[Any]

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings | None = None,
        *,
        logger: Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CacheRegistry":
        settings = settings or CacheSettings()
        log = logger or get_logger(__name__, component="cache")

        def _on_evict(name: str) -> Callable[[str, CacheEntry[Any]], None]:
            def _log(key: str, entry: CacheEntry[Any]) -> None:
                log.debug("cache-evicted", cache=name, key=key, hits=entry.hits)

            return _log

        return cls(
            lookups=BoundedCache(
                max_size=settings.lookup_max_size,
                ttl=settings.lookup_ttl,
                on_evict=_on_evict("lookups"),
                clock=clock,
            ),
            search=BoundedCache(
                max_size=settings.search_max_size,
                ttl=settings.search_ttl,
                on_evict=_on_evict("search"),
                clock=clock,
            ),
        )

    def clear(self) -> None:
        self.lookups.clear()
        self.search.clear()

    def stats(self) -> dict[str, CacheStats]:
        return {"lookups": self.lookups.stats(), "search": self.search.stats()}
