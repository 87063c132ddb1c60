"""Tests for :mod:`lifelogd.cache.registry`."""

from __future__ import annotations

from lifelogd.cache import CacheRegistry
from lifelogd.core.config import CacheSettings


def test_from_settings_sizes_each_cache() -> None:
    registry = CacheRegistry.from_settings(
        CacheSettings(lookup_max_size=4, lookup_ttl=30.0, search_max_size=2)
    )

    assert registry.lookups.max_size == 4
    assert registry.lookups.ttl == 30.0
    assert registry.search.max_size == 2


def test_registry_caches_are_independent_and_clear_together() -> None:
    registry = CacheRegistry.from_settings()
    registry.lookups.set("lifelog:a", {"id": "a"})
    registry.search.set("search:a:{}", ["a"])

    assert registry.search.get("lifelog:a") is None
    stats = registry.stats()
    assert stats["lookups"].size == 1
    assert stats["search"].size == 1

    registry.clear()
    assert registry.stats()["lookups"].size == 0
    assert registry.stats()["search"].size == 0
