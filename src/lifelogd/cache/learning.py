"""Learning cache that memoizes query results and adapts retrieval strategy.

Raw results are cached per query string. In parallel, every recorded query is
folded into a :class:`QueryPattern` keyed by its normalized shape, so that
structurally similar queries (``"meetings on 2024-01-15"`` and ``"meetings on
2024-02-01"``) share statistics and converge on the strategy that has been
fastest for them.
"""

from __future__ import annotations

import json
import math
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable, Generic, Mapping, Sequence, TypeVar

from lifelogd.core.atomic import atomic_write_json
from lifelogd.core.logging import Logger, get_logger

__all__ = [
    "CachedQuery",
    "LearningCache",
    "LearningCacheStats",
    "QueryClassification",
    "QueryOutcome",
    "QueryPattern",
    "Strategy",
    "normalize_query",
]

R = TypeVar("R")

_HISTORY_WINDOW = 10
_IMPROVEMENT_RATIO = 0.8
_SIMILARITY_THRESHOLD = 0.7
_MIN_SUGGEST_FREQUENCY = 3
_PRUNE_BELOW_FREQUENCY = 2
_EVICT_FRACTION = 0.1

_DATE_RE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
_QUOTED_RE = re.compile(r"\"[^\"]*\"|'[^']*'")
_NUMBER_RE = re.compile(r"\d+")
_SPACE_RE = re.compile(r"\s+")


class Strategy(StrEnum):
    """Retrieval strategies a query can be routed to."""

    FAST = "fast"
    VECTOR = "vector"
    HYBRID = "hybrid"
    LLM = "llm"


@dataclass(frozen=True, slots=True)
class QueryClassification:
    """Output of the upstream classifier for a raw query."""

    query_type: str
    suggested_strategy: Strategy
    confidence: float = 0.0


@dataclass(slots=True)
class CachedQuery(Generic[R]):
    """Raw cache entry for a single query string."""

    query: str
    query_type: str
    strategy: Strategy
    results: R
    hit_count: int
    last_accessed: float
    avg_response_time: float
    confidence: float


@dataclass(slots=True)
class QueryPattern:
    """Aggregated statistics for a normalized query shape."""

    pattern: str
    query_type: str
    frequency: int
    avg_response_time: float
    success_rate: float
    preferred_strategy: Strategy
    response_times: list[float] = field(default_factory=list)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "query_type": self.query_type,
            "frequency": self.frequency,
            "avg_response_time": self.avg_response_time,
            "success_rate": self.success_rate,
            "preferred_strategy": self.preferred_strategy.value,
            "response_times": list(self.response_times),
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "QueryPattern":
        return cls(
            pattern=str(payload["pattern"]),
            query_type=str(payload["query_type"]),
            frequency=int(payload["frequency"]),
            avg_response_time=float(payload["avg_response_time"]),
            success_rate=float(payload["success_rate"]),
            preferred_strategy=Strategy(payload["preferred_strategy"]),
            response_times=[
                float(value) for value in payload.get("response_times", ())
            ],
        )


@dataclass(frozen=True, slots=True)
class QueryOutcome(Generic[R]):
    """Result of :meth:`LearningCache.execute`."""

    results: R
    strategy: Strategy
    from_cache: bool
    learned: bool
    response_time: float


@dataclass(frozen=True, slots=True)
class LearningCacheStats:
    cache_size: int
    pattern_count: int
    hit_rate: float
    avg_response_time: float
    top_patterns: tuple[QueryPattern, ...]


def normalize_query(query: str) -> str:
    """Collapse a query into its structural shape.

    Example:
        >>> normalize_query('Meetings on 2024-01-15 about "budget" x3')
        'meetings on DATE about QUOTED xNUM'
    """

    text = query.strip().lower()
    text = _DATE_RE.sub("DATE", text)
    text = _QUOTED_RE.sub("QUOTED", text)
    text = _NUMBER_RE.sub("NUM", text)
    return _SPACE_RE.sub(" ", text)


def _words(text: str) -> list[str]:
    return [word for word in text.split(" ") if word]


def _similarity(left: Sequence[str], right: Sequence[str]) -> float:
    if not left or not right:
        return 0.0
    right_set = set(right)
    common = sum(1 for word in left if word in right_set)
    return common / max(len(left), len(right))


def _has_results(results: Any) -> bool:
    if isinstance(results, (list, tuple, set, dict)):
        return len(results) > 0
    return results is not None


class LearningCache(Generic[R]):
    """Query-result cache that learns preferred strategies per query shape."""

    def __init__(
        self,
        *,
        max_size: int = 1000,
        ttl: float = 300.0,
        learning_enabled: bool = True,
        pattern_limit: int = 500,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Logger | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._ttl = ttl
        self._learning_enabled = learning_enabled
        self._pattern_limit = pattern_limit
        self._sweep_interval = sweep_interval
        self._clock = clock
        self.logger = logger or get_logger(__name__, component="learning-cache")

        self._entries: dict[str, CachedQuery[R]] = {}
        self._patterns: dict[str, QueryPattern] = {}
        self._hits = 0
        self._misses = 0
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ------------------------------------------------------------------#
    # Raw cache
    # ------------------------------------------------------------------#
    def get(self, query: str) -> CachedQuery[R] | None:
        """Return the live entry for ``query`` and refresh its access time."""

        with self._lock:
            entry = self._entries.get(query)
            now = self._clock()
            if entry is None:
                self._misses += 1
                return None
            if now - entry.last_accessed > self._ttl:
                del self._entries[query]
                self._misses += 1
                return None
            entry.hit_count += 1
            entry.last_accessed = now
            self._hits += 1
            return entry

    def set(
        self,
        query: str,
        classification: QueryClassification,
        results: R,
        response_time: float,
    ) -> None:
        """Cache ``results`` and fold the outcome into the pattern table."""

        with self._lock:
            self._entries[query] = CachedQuery(
                query=query,
                query_type=classification.query_type,
                strategy=classification.suggested_strategy,
                results=results,
                hit_count=0,
                last_accessed=self._clock(),
                avg_response_time=response_time,
                confidence=classification.confidence,
            )

            if self._learning_enabled:
                self._record_pattern(
                    query, classification, results, response_time
                )

            if len(self._entries) > self._max_size:
                self._evict_oldest()

    def sweep(self) -> int:
        """Drop TTL-expired entries and return how many were removed."""

        with self._lock:
            now = self._clock()
            expired = [
                key
                for key, entry in self._entries.items()
                if now - entry.last_accessed > self._ttl
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.debug("learning-cache-swept", removed=len(expired))
        return len(expired)

    def _evict_oldest(self) -> None:
        count = max(1, math.ceil(len(self._entries) * _EVICT_FRACTION))
        ordered = sorted(
            self._entries.items(), key=lambda item: item[1].last_accessed
        )
        for key, _ in ordered[:count]:
            del self._entries[key]
        self.logger.debug("learning-cache-evicted", removed=count)

    # ------------------------------------------------------------------#
    # Pattern learning
    # ------------------------------------------------------------------#
    @staticmethod
    def _pattern_key(query_type: str, normalized: str) -> str:
        return f"{query_type}:{normalized}"

    def _record_pattern(
        self,
        query: str,
        classification: QueryClassification,
        results: R,
        response_time: float,
    ) -> None:
        normalized = normalize_query(query)
        key = self._pattern_key(classification.query_type, normalized)
        succeeded = 1.0 if _has_results(results) else 0.0
        strategy = classification.suggested_strategy

        pattern = self._patterns.get(key)
        if pattern is None:
            self._patterns[key] = QueryPattern(
                pattern=normalized,
                query_type=classification.query_type,
                frequency=1,
                avg_response_time=response_time,
                success_rate=succeeded,
                preferred_strategy=strategy,
                response_times=[response_time],
            )
        else:
            previous_avg = pattern.avg_response_time
            pattern.frequency += 1
            pattern.response_times.append(response_time)
            del pattern.response_times[:-_HISTORY_WINDOW]
            pattern.avg_response_time = sum(pattern.response_times) / len(
                pattern.response_times
            )
            pattern.success_rate += (
                succeeded - pattern.success_rate
            ) / pattern.frequency
            if response_time < previous_avg * _IMPROVEMENT_RATIO:
                pattern.preferred_strategy = strategy

        if len(self._patterns) > self._pattern_limit:
            self._prune_patterns()

    def _prune_patterns(self) -> None:
        rare = [
            key
            for key, pattern in self._patterns.items()
            if pattern.frequency < _PRUNE_BELOW_FREQUENCY
        ]
        for key in rare:
            del self._patterns[key]
        self.logger.info(
            "learning-cache-patterns-pruned",
            removed=len(rare),
            remaining=len(self._patterns),
        )

    def get_suggested_strategy(
        self,
        query: str,
        classification: QueryClassification | None = None,
    ) -> Strategy | None:
        """Return a learned strategy for ``query`` or ``None`` to defer.

        When ``classification`` is given only patterns of the same query type
        are considered.
        """

        if not self._learning_enabled:
            return None

        query_words = _words(normalize_query(query))
        best: QueryPattern | None = None
        best_score = 0.0
        with self._lock:
            for pattern in self._patterns.values():
                if (
                    classification is not None
                    and pattern.query_type != classification.query_type
                ):
                    continue
                score = _similarity(query_words, _words(pattern.pattern))
                if score > best_score:
                    best, best_score = pattern, score

        if (
            best is not None
            and best_score > _SIMILARITY_THRESHOLD
            and best.frequency > _MIN_SUGGEST_FREQUENCY
        ):
            return best.preferred_strategy
        return None

    def execute(
        self,
        query: str,
        classify: Callable[[str], QueryClassification],
        run: Callable[[str, Strategy], R],
    ) -> QueryOutcome[R]:
        """Serve ``query`` from cache or run it with the best known strategy.

        Example:
            >>> cache = LearningCache[list[str]]()
            >>> classify = lambda q: QueryClassification("search", Strategy.FAST)
            >>> outcome = cache.execute("coffee", classify, lambda q, s: [q])
            >>> outcome.from_cache, cache.execute("coffee", classify, None).from_cache
            (False, True)
        """

        cached = self.get(query)
        if cached is not None:
            return QueryOutcome(
                results=cached.results,
                strategy=cached.strategy,
                from_cache=True,
                learned=False,
                response_time=0.0,
            )

        classification = classify(query)
        learned = self.get_suggested_strategy(query, classification)
        strategy = learned or classification.suggested_strategy

        start = time.perf_counter()
        results = run(query, strategy)
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        self.set(
            query,
            replace(classification, suggested_strategy=strategy),
            results,
            elapsed_ms,
        )
        self.logger.debug(
            "learning-cache-executed",
            query_type=classification.query_type,
            strategy=strategy.value,
            learned=learned is not None,
            response_time_ms=round(elapsed_ms, 2),
        )
        return QueryOutcome(
            results=results,
            strategy=strategy,
            from_cache=False,
            learned=learned is not None,
            response_time=elapsed_ms,
        )

    # ------------------------------------------------------------------#
    # Introspection and persistence
    # ------------------------------------------------------------------#
    def get_stats(self) -> LearningCacheStats:
        with self._lock:
            total = self._hits + self._misses
            entries = list(self._entries.values())
            avg = (
                sum(entry.avg_response_time for entry in entries) / len(entries)
                if entries
                else 0.0
            )
            top = sorted(
                self._patterns.values(),
                key=lambda pattern: pattern.frequency,
                reverse=True,
            )[:10]
            return LearningCacheStats(
                cache_size=len(entries),
                pattern_count=len(self._patterns),
                hit_rate=self._hits / total if total else 0.0,
                avg_response_time=round(avg),
                top_patterns=tuple(top),
            )

    def clear(self) -> None:
        """Drop raw entries and counters; learned patterns are kept."""

        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def export_patterns(self) -> list[dict[str, Any]]:
        with self._lock:
            return [pattern.to_mapping() for pattern in self._patterns.values()]

    def import_patterns(self, payload: Sequence[Mapping[str, Any]]) -> int:
        """Merge exported patterns into the table; returns the count loaded."""

        loaded = 0
        with self._lock:
            for item in payload:
                pattern = QueryPattern.from_mapping(item)
                key = self._pattern_key(pattern.query_type, pattern.pattern)
                self._patterns[key] = pattern
                loaded += 1
        return loaded

    def save_patterns(self, path: Path) -> None:
        atomic_write_json(path, {"patterns": self.export_patterns()})
        self.logger.info("learning-cache-patterns-saved", path=str(path))

    def load_patterns(self, path: Path) -> int:
        if not path.exists():
            return 0
        payload = json.loads(path.read_text(encoding="utf-8"))
        loaded = self.import_patterns(payload.get("patterns", ()))
        self.logger.info(
            "learning-cache-patterns-loaded", path=str(path), count=loaded
        )
        return loaded

    # ------------------------------------------------------------------#
    # Background sweep
    # ------------------------------------------------------------------#
    @property
    def sweeping(self) -> bool:
        sweeper = self._sweeper
        return sweeper is not None and sweeper.is_alive()

    def start(self) -> None:
        """Start the periodic expiry sweep on a daemon thread."""

        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="lifelogd-learning-cache-sweep",
            daemon=True,
        )
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            self.sweep()

    def stop(self) -> None:
        """Stop the sweep thread and drop cached entries."""

        self._stop.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.join(timeout=self._sweep_interval)
        self.clear()
