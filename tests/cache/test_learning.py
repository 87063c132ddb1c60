"""Tests for :mod:`lifelogd.cache.learning`."""

from __future__ import annotations

from pathlib import Path

import pytest

from lifelogd.cache.learning import (
    LearningCache,
    QueryClassification,
    Strategy,
    normalize_query,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _search(strategy: Strategy = Strategy.VECTOR) -> QueryClassification:
    return QueryClassification("search", strategy, 0.5)


def test_normalize_query_replaces_dates_numbers_and_quotes() -> None:
    assert normalize_query("  Meetings   on 2024-01-15 ") == "meetings on DATE"
    assert normalize_query("top 5 about 'budget'") == "top NUM about QUOTED"


def test_get_uses_sliding_ttl() -> None:
    clock = _Clock()
    cache = LearningCache[list[str]](ttl=10.0, clock=clock)
    cache.set("coffee", _search(), ["a"], 5.0)

    clock.now = 8.0
    assert cache.get("coffee") is not None
    clock.now = 16.0
    entry = cache.get("coffee")
    assert entry is not None
    assert entry.hit_count == 2

    clock.now = 30.0
    assert cache.get("coffee") is None


def test_overflow_evicts_least_recently_accessed_tenth() -> None:
    clock = _Clock()
    cache = LearningCache[int](max_size=10, clock=clock)
    for index in range(11):
        clock.now = float(index)
        cache.set(f"q{index}", _search(), index, 1.0)

    stats = cache.get_stats()
    assert stats.cache_size == 9
    assert cache.get("q0") is None
    assert cache.get("q1") is None
    assert cache.get("q10") is not None


def test_faster_strategy_becomes_preferred_and_is_suggested() -> None:
    cache = LearningCache[list[str]]()
    cache.set("meetings on 2024-01-01", _search(), ["x"], 100.0)
    cache.set("meetings on 2024-01-02", _search(), ["x"], 100.0)
    cache.set("meetings on 2024-01-03", _search(Strategy.FAST), ["x"], 10.0)

    # Three observations are not enough to suggest anything yet.
    assert cache.get_suggested_strategy("meetings on 2024-02-01") is None

    cache.set("meetings on 2024-01-04", _search(), ["x"], 100.0)

    assert cache.get_suggested_strategy("meetings on 2024-02-01") is Strategy.FAST
    assert (
        cache.get_suggested_strategy(
            "meetings on 2024-02-01",
            QueryClassification("lookup", Strategy.VECTOR),
        )
        is None
    )
    pattern = cache.get_stats().top_patterns[0]
    assert pattern.pattern == "meetings on DATE"
    assert pattern.frequency == 4
    assert pattern.success_rate == pytest.approx(1.0)


def test_learning_disabled_records_no_patterns() -> None:
    cache = LearningCache[list[str]](learning_enabled=False)
    for day in range(1, 6):
        cache.set(f"meetings on 2024-01-0{day}", _search(), ["x"], 1.0)

    assert cache.get_stats().pattern_count == 0
    assert cache.get_suggested_strategy("meetings on 2024-01-09") is None


def test_execute_caches_results_and_reports_source() -> None:
    cache = LearningCache[list[str]]()
    calls: list[tuple[str, Strategy]] = []

    def _run(query: str, strategy: Strategy) -> list[str]:
        calls.append((query, strategy))
        return [query.upper()]

    first = cache.execute("coffee", lambda q: _search(Strategy.HYBRID), _run)
    second = cache.execute("coffee", lambda q: _search(), _run)

    assert first.from_cache is False
    assert first.strategy is Strategy.HYBRID
    assert second.from_cache is True
    assert second.results == ["COFFEE"]
    assert calls == [("coffee", Strategy.HYBRID)]
    assert cache.get_stats().hit_rate == pytest.approx(0.5)


def test_empty_results_lower_success_rate() -> None:
    cache = LearningCache[list[str]]()
    cache.set("lunch", _search(), ["x"], 5.0)
    cache.set("lunch", _search(), [], 5.0)

    pattern = cache.get_stats().top_patterns[0]
    assert pattern.success_rate == pytest.approx(0.5)


def test_patterns_survive_save_and_load(tmp_path: Path) -> None:
    path = tmp_path / "patterns.json"
    cache = LearningCache[list[str]]()
    for day in range(1, 5):
        cache.set(f"walks on 2024-01-0{day}", _search(), ["x"], 20.0)
    cache.save_patterns(path)

    restored = LearningCache[list[str]]()
    assert restored.load_patterns(path) == 1
    assert restored.get_suggested_strategy("walks on 2024-05-05") is Strategy.VECTOR
    assert restored.load_patterns(tmp_path / "missing.json") == 0


def test_clear_keeps_patterns() -> None:
    cache = LearningCache[list[str]]()
    cache.set("coffee", _search(), ["x"], 1.0)
    cache.clear()

    stats = cache.get_stats()
    assert stats.cache_size == 0
    assert stats.pattern_count == 1


def test_start_and_stop_manage_sweeper_thread() -> None:
    cache = LearningCache[list[str]](sweep_interval=0.01)
    cache.set("coffee", _search(), ["x"], 1.0)

    cache.start()
    cache.start()
    cache.stop()

    assert cache.get_stats().cache_size == 0
