"""Tests for :mod:`lifelogd.sync.engine`."""

from __future__ import annotations

import os
import subprocess
import sys
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Iterable

import pytest

from lifelogd.core.config import SyncSettings
from lifelogd.core.locks import FileLock
from lifelogd.core.paths import WorkspacePaths
from lifelogd.ingest.models import Lifelog
from lifelogd.storage import LifelogStore
from lifelogd.sync import (
    CheckpointLoadError,
    CheckpointPersistenceError,
    CheckpointStore,
    DateSet,
    SyncAlreadyRunningError,
    SyncCheckpoint,
    SyncEngine,
    SyncPhase,
)
from lifelogd.vdb import InMemoryVectorIndex
from lifelogd.vdb.providers.local import HashingEmbeddingProvider

NOW = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


class FakeSource:
    """In-memory stand-in for the remote API."""

    def __init__(
        self,
        records: Iterable[Lifelog] = (),
        *,
        failing_days: Iterable[date] = (),
        fail_ranges: bool = False,
    ) -> None:
        self.records = list(records)
        self.failing_days = set(failing_days)
        self.fail_ranges = fail_ranges
        self.day_calls: list[date] = []
        self.range_calls: list[dict[str, Any]] = []

    def list_lifelogs_by_date(
        self, day: date, *, limit: int | None = None
    ) -> list[Lifelog]:
        self.day_calls.append(day)
        if day in self.failing_days:
            raise RuntimeError(f"remote failure for {day.isoformat()}")
        return [record for record in self.records if record.day == day]

    def list_lifelogs_by_range(
        self,
        start: date | datetime,
        end: date | datetime,
        *,
        limit: int | None = None,
        direction: str = "asc",
    ) -> list[Lifelog]:
        self.range_calls.append({"start": start, "end": end, "limit": limit})
        if self.fail_ranges:
            raise RuntimeError("range queries unavailable")
        lower, upper = _as_datetime(start), _as_datetime(end)
        found = sorted(
            (r for r in self.records if lower <= r.created_at <= upper),
            key=lambda r: r.created_at,
            reverse=direction == "desc",
        )
        return found if limit is None else found[:limit]


@pytest.fixture
def history(make_lifelog) -> list[Lifelog]:
    return [
        make_lifelog("a", "2024-01-10T09:00:00Z", title="Coffee with Sam"),
        make_lifelog("b", "2024-01-10T15:00:00Z", title="Design review"),
        make_lifelog("c", "2024-01-12T08:00:00Z", title="Morning run"),
        make_lifelog("d", "2024-01-18T20:00:00Z", title="Dinner plans"),
    ]


def _settings(**overrides: Any) -> SyncSettings:
    values: dict[str, Any] = {
        "api_delay_seconds": 0.0,
        "checkpoint_interval": 2,
        "max_years_back": 2,
    }
    values.update(overrides)
    return SyncSettings(**values)


def _engine(
    paths: WorkspacePaths,
    source: FakeSource,
    *,
    index: Any = "memory",
    sleep: Any = None,
    **settings: Any,
) -> SyncEngine:
    store = LifelogStore(
        lifelogs_dir=paths.lifelogs_dir, embeddings_dir=paths.embeddings_dir
    )
    if index == "memory":
        index = InMemoryVectorIndex(HashingEmbeddingProvider(dimension=32))
    return SyncEngine(
        source=source,
        store=store,
        index=index,
        settings=_settings(**settings),
        checkpoint_store=CheckpointStore(paths.checkpoint_file),
        lock_path=paths.lock_file,
        sleep=sleep or (lambda seconds: None),
        clock=lambda: NOW,
    )


def test_find_oldest_record_bisects_to_earliest_timestamp(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    source = FakeSource(history)
    engine = _engine(workspace_paths, source)

    oldest = engine.find_oldest_record()

    assert oldest == history[0].created_at
    # Year scans followed by bisection steps all ask for a single record.
    assert all(call["limit"] == 1 for call in source.range_calls[:-1])
    assert source.range_calls[-1]["limit"] == 100


def test_find_oldest_record_returns_none_without_data(
    workspace_paths: WorkspacePaths,
) -> None:
    source = FakeSource()

    assert _engine(workspace_paths, source).find_oldest_record() is None
    assert len(source.range_calls) == 2


def test_full_run_downloads_vectorizes_and_monitors(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    source = FakeSource(history)
    engine = _engine(workspace_paths, source)

    progress = engine.start(once=True)

    assert progress.phase is SyncPhase.MONITORING
    assert progress.total_downloaded == 4
    assert progress.total_vectorized == 4
    assert progress.oldest_date == history[0].created_at
    assert progress.last_processed_timestamp == history[-1].created_at
    assert progress.errors == ()
    assert source.day_calls[0] == date(2024, 1, 10)
    assert source.day_calls[-1] == date(2024, 1, 20)

    stats = engine.store.stats()
    assert stats.total_lifelogs == 4
    assert stats.total_embeddings == 4
    stored = engine.store.load_embedding("a", date(2024, 1, 10))
    assert stored is not None
    assert stored.model == "hashing:32"
    assert len(stored.embedding) == 32

    persisted = CheckpointStore(workspace_paths.checkpoint_file).load()
    assert persisted is not None
    assert persisted.initialized is True
    assert persisted.phase is SyncPhase.MONITORING
    assert len(persisted.processed_batches) == 11
    assert persisted.storage_size > 0
    assert not workspace_paths.lock_file.exists()


def test_restart_resumes_in_monitoring_and_ingests_new_records(
    workspace_paths: WorkspacePaths, history: list[Lifelog], make_lifelog
) -> None:
    _engine(workspace_paths, FakeSource(history)).start(once=True)

    fresh = make_lifelog("e", "2024-01-20T10:00:00Z", title="Lunch")
    source = FakeSource([*history, fresh])
    engine = _engine(workspace_paths, source)

    progress = engine.start(once=True)

    assert source.day_calls == []
    assert progress.total_downloaded == 5
    assert progress.total_vectorized == 5
    assert progress.last_processed_timestamp == fresh.created_at
    assert engine.store.has_embedding("e", date(2024, 1, 20))
    assert engine.checkpoint.last_monitor_check == NOW


def test_download_resumes_after_processed_days(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    checkpoint = SyncCheckpoint(initialized=True, phase=SyncPhase.DOWNLOAD)
    checkpoint.oldest_date = history[0].created_at
    checkpoint.processed_batches = DateSet([date(2024, 1, 10), date(2024, 1, 11)])
    CheckpointStore(workspace_paths.checkpoint_file).save(checkpoint, now=NOW)

    source = FakeSource(history)
    engine = _engine(workspace_paths, source, download_only=True)

    progress = engine.start()

    assert source.day_calls[0] == date(2024, 1, 12)
    assert date(2024, 1, 10) not in source.day_calls
    assert progress.phase is SyncPhase.VECTORIZE
    assert progress.total_downloaded == 2
    assert progress.total_vectorized == 0


def test_download_is_idempotent_for_stored_records(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    engine = _engine(workspace_paths, FakeSource(history))
    engine.checkpoint.oldest_date = history[0].created_at

    assert engine.download() == 4

    engine.checkpoint.processed_batches = DateSet()
    assert engine.download() == 0
    assert engine.checkpoint.total_downloaded == 4
    assert engine.store.stats().total_lifelogs == 4


def test_failed_day_is_recorded_and_retried_on_next_run(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    source = FakeSource(history, failing_days=[date(2024, 1, 12)])
    engine = _engine(workspace_paths, source, download_only=True)

    progress = engine.start()

    assert [entry.date for entry in progress.errors] == ["2024-01-12"]
    assert "remote failure" in progress.errors[0].error
    assert date(2024, 1, 12) not in engine.checkpoint.processed_batches
    assert engine.store.exists(history[3])
    assert not engine.store.exists(history[2])

    retry_source = FakeSource(history)
    retry = _engine(workspace_paths, retry_source, download_only=True)
    with retry.exclusive():
        retry.load_checkpoint()
        assert retry.download() == 1
    assert retry_source.day_calls == [date(2024, 1, 12)]
    assert date(2024, 1, 12) in retry.checkpoint.processed_batches


def test_parallel_saves_store_every_record(
    workspace_paths: WorkspacePaths, make_lifelog
) -> None:
    records = [
        make_lifelog(f"r{i}", f"2024-01-19T{i:02d}:00:00Z") for i in range(8)
    ]
    engine = _engine(
        workspace_paths, FakeSource(records), save_concurrency=4, download_only=True
    )

    progress = engine.start()

    assert progress.total_downloaded == 8
    assert engine.store.list_ids_by_date(date(2024, 1, 19)) == [
        f"r{i}" for i in range(8)
    ]


def test_vectorize_skips_records_with_persisted_embeddings(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    engine = _engine(workspace_paths, FakeSource(history))
    for record in history:
        engine.store.save(record)
    engine.store.save_embedding("a", date(2024, 1, 10), [0.0] * 32)

    assert engine.vectorize() == 3
    assert engine.index.list_document_ids() == {"b", "c", "d"}
    assert engine.vectorize() == 0


class FlushCountingIndex(InMemoryVectorIndex):
    def __init__(self) -> None:
        super().__init__(HashingEmbeddingProvider(dimension=32))
        self.flushes: list[set[str]] = []

    def flush(self) -> None:
        self.flushes.append(self.list_document_ids())


def test_vectorize_flushes_index_at_checkpoints(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    index = FlushCountingIndex()
    engine = _engine(
        workspace_paths,
        FakeSource(history),
        index=index,
        vectorize_checkpoint_interval=2,
    )
    for record in history:
        engine.store.save(record)

    assert engine.vectorize() == 4

    # Newest day first: 2024-01-18, then 2024-01-12 reaches the interval.
    assert index.flushes == [{"c", "d"}, {"a", "b", "c", "d"}]


def test_no_index_skips_vectorization(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    engine = _engine(workspace_paths, FakeSource(history), index=None)

    progress = engine.start(once=True)

    assert progress.phase is SyncPhase.MONITORING
    assert progress.total_downloaded == 4
    assert progress.total_vectorized == 0
    assert engine.store.stats().total_embeddings == 0


def test_empty_remote_goes_straight_to_monitoring(
    workspace_paths: WorkspacePaths,
) -> None:
    source = FakeSource()
    engine = _engine(workspace_paths, source)

    progress = engine.start(once=True)

    assert progress.phase is SyncPhase.MONITORING
    assert progress.total_downloaded == 0
    assert source.day_calls == []


def test_oldest_search_failure_falls_back_to_full_window(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    source = FakeSource(history, fail_ranges=True)
    engine = _engine(
        workspace_paths,
        source,
        download_only=True,
        max_years_back=1,
        checkpoint_interval=60,
        start_date=date(2024, 1, 20),
    )

    progress = engine.start()

    assert progress.errors[0].date == "2024-01-20"
    assert source.day_calls[0] == date(2023, 1, 20)
    assert progress.total_downloaded == 4


def test_monitor_tick_failure_is_recorded_not_raised(
    workspace_paths: WorkspacePaths,
) -> None:
    engine = _engine(workspace_paths, FakeSource(fail_ranges=True))

    assert engine.monitor_once() == 0
    assert engine.checkpoint.errors[0].date == "2024-01-20T12:00:00Z"
    assert workspace_paths.checkpoint_file.exists()


def test_monitor_tick_without_new_records_is_a_noop(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    engine = _engine(workspace_paths, FakeSource(history))
    engine.checkpoint.last_processed_timestamp = history[-1].created_at

    assert engine.monitor_once() == 0
    assert engine.store.stats().total_lifelogs == 0
    call = engine.source.range_calls[-1]
    assert call["start"] == datetime(2024, 1, 16, 20, tzinfo=timezone.utc)
    assert call["end"] == date(2024, 1, 21)
    assert call["limit"] == 200


class FlakyIndex(InMemoryVectorIndex):
    def __init__(self, failures: int) -> None:
        super().__init__(HashingEmbeddingProvider(dimension=32))
        self.failures = failures

    def add_documents(self, records: Any) -> int:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("embedding service unavailable")
        return super().add_documents(records)


def test_monitor_retries_records_that_failed_to_index(
    workspace_paths: WorkspacePaths, history: list[Lifelog], make_lifelog
) -> None:
    fresh = make_lifelog("e", "2024-01-20T10:00:00Z", title="Lunch")
    engine = _engine(
        workspace_paths, FakeSource([*history, fresh]), index=FlakyIndex(1)
    )
    engine.checkpoint.last_processed_timestamp = history[-1].created_at

    assert engine.monitor_once() == 1
    assert engine.checkpoint.last_processed_timestamp == fresh.created_at
    assert not engine.store.has_embedding("e", date(2024, 1, 20))
    assert engine.progress().pending_vectorize_days == 1
    assert "embedding service unavailable" in engine.checkpoint.errors[0].error

    assert engine.monitor_once() == 0
    assert engine.store.has_embedding("e", date(2024, 1, 20))
    assert engine.checkpoint.total_vectorized == 1
    persisted = CheckpointStore(workspace_paths.checkpoint_file).load()
    assert persisted is not None
    assert len(persisted.pending_vectorize) == 0


def test_monitor_loop_runs_until_stopped(workspace_paths: WorkspacePaths) -> None:
    ticks: list[float] = []
    holder: dict[str, SyncEngine] = {}

    def _sleep(seconds: float) -> None:
        ticks.append(seconds)
        holder["engine"].stop()

    engine = _engine(workspace_paths, FakeSource(), sleep=_sleep)
    holder["engine"] = engine

    engine.start()

    assert ticks == [60.0]
    assert engine.stopped


def test_concurrent_engine_is_rejected(workspace_paths: WorkspacePaths) -> None:
    engine = _engine(workspace_paths, FakeSource())

    with FileLock(workspace_paths.lock_file):
        with pytest.raises(SyncAlreadyRunningError):
            engine.start(once=True)


@pytest.mark.skipif(os.name == "nt", reason="pid liveness is not checked on Windows")
def test_restart_reclaims_lock_left_by_killed_engine(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    _engine(workspace_paths, FakeSource(history), download_only=True).start()
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()
    workspace_paths.lock_file.write_text(str(child.pid), encoding="ascii")

    progress = _engine(workspace_paths, FakeSource(history)).start(once=True)

    assert progress.phase is SyncPhase.MONITORING
    assert progress.total_vectorized == 4
    assert not workspace_paths.lock_file.exists()


def _mirror_state(engine: SyncEngine) -> dict[str, Any]:
    checkpoint = CheckpointStore(engine.checkpoint_store.path).load()
    assert checkpoint is not None
    return {
        "records": {
            (day, record_id)
            for day in engine.store.iter_days()
            for record_id in engine.store.list_ids_by_date(day)
        },
        "oldest": checkpoint.oldest_date,
        "newest": checkpoint.newest_date,
        "processed": sorted(checkpoint.processed_batches),
        "downloaded": checkpoint.total_downloaded,
    }


def test_stopped_download_resumes_to_same_state_as_uninterrupted_run(
    tmp_path: Path, workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    baseline_paths = WorkspacePaths.for_root(tmp_path / "baseline")
    baseline_paths.ensure()
    baseline = _engine(baseline_paths, FakeSource(history), api_delay_seconds=1.0)
    baseline.start(once=True)

    source = FakeSource(history)
    holder: dict[str, SyncEngine] = {}

    def _sleep(seconds: float) -> None:
        if len(source.day_calls) == 3:
            holder["engine"].stop()

    interrupted = _engine(
        workspace_paths, source, sleep=_sleep, api_delay_seconds=1.0
    )
    holder["engine"] = interrupted
    interrupted.start(once=True)

    halted = CheckpointStore(workspace_paths.checkpoint_file).load()
    assert halted is not None
    assert halted.phase is SyncPhase.DOWNLOAD
    assert sorted(halted.processed_batches) == [
        date(2024, 1, 10),
        date(2024, 1, 11),
        date(2024, 1, 12),
    ]
    assert source.day_calls == [
        date(2024, 1, 10),
        date(2024, 1, 11),
        date(2024, 1, 12),
    ]
    assert not interrupted.store.exists(history[3])

    resumed_source = FakeSource(history)
    resumed = _engine(workspace_paths, resumed_source, api_delay_seconds=1.0)
    resumed.start(once=True)

    assert resumed_source.day_calls[0] == date(2024, 1, 13)
    assert _mirror_state(resumed) == _mirror_state(baseline)
    assert resumed.store.stats().total_embeddings == 4


def test_corrupt_checkpoint_raises_load_error(
    workspace_paths: WorkspacePaths,
) -> None:
    workspace_paths.checkpoint_file.write_text("{broken", encoding="utf-8")
    engine = _engine(workspace_paths, FakeSource())

    with pytest.raises(CheckpointLoadError):
        engine.start(once=True)
    assert not workspace_paths.lock_file.exists()


def test_checkpoint_write_failure_halts_engine(
    tmp_path: Path, workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    engine = _engine(workspace_paths, FakeSource(history))
    engine.checkpoint_store = CheckpointStore(blocker / "sync-checkpoint.json")

    with pytest.raises(CheckpointPersistenceError):
        engine.start(once=True)


def test_clear_checkpoint_forces_new_bootstrap(
    workspace_paths: WorkspacePaths, history: list[Lifelog]
) -> None:
    engine = _engine(workspace_paths, FakeSource(history))
    engine.start(once=True)

    assert engine.clear_checkpoint() is True
    assert engine.checkpoint.initialized is False
    assert not workspace_paths.checkpoint_file.exists()
