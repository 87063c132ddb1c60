"""Caching layer: bounded raw-result caches and the learning query cache."""

from __future__ import annotations

from .bounded import (
    BoundedCache,
    CacheEntry,
    CacheStats,
    date_key,
    lifelog_key,
    recent_key,
    search_key,
)
from .learning import (
    CachedQuery,
    LearningCache,
    LearningCacheStats,
    QueryClassification,
    QueryOutcome,
    QueryPattern,
    Strategy,
    normalize_query,
)
from .registry import CacheRegistry

__all__ = [
    "BoundedCache",
    "CacheEntry",
    "CacheRegistry",
    "CacheStats",
    "CachedQuery",
    "LearningCache",
    "LearningCacheStats",
    "QueryClassification",
    "QueryOutcome",
    "QueryPattern",
    "Strategy",
    "date_key",
    "lifelog_key",
    "normalize_query",
    "recent_key",
    "search_key",
]
