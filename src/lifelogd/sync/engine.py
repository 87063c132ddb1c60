"""Resumable sync engine: bootstrap, backfill, vectorize, then monitor."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, time as dt_time, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Protocol, Sequence, runtime_checkable

from lifelogd.core.config import SyncSettings
from lifelogd.core.locks import FileLock, LockTimeoutError
from lifelogd.core.logging import Logger, get_logger
from lifelogd.ingest.models import Lifelog, format_timestamp
from lifelogd.storage import LifelogStore
from lifelogd.vdb import VectorIndex, VectorRecord

from .checkpoint import CheckpointStore, SyncCheckpoint, SyncPhase, SyncProgress
from .errors import CheckpointPersistenceError, SyncAlreadyRunningError

__all__ = [
    "LifelogSource",
    "SyncEngine",
]

_FINDER_WINDOW_DAYS = 7
_FINDER_WINDOW_LIMIT = 100


@runtime_checkable
class LifelogSource(Protocol):
    """Remote reads the engine depends on."""

    def list_lifelogs_by_date(
        self, day: date, *, limit: int | None = None
    ) -> list[Lifelog]: ...

    def list_lifelogs_by_range(
        self,
        start: date | datetime,
        end: date | datetime,
        *,
        limit: int | None = None,
        direction: str = "asc",
    ) -> list[Lifelog]: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


def _day_end(day: date) -> datetime:
    return datetime.combine(day, dt_time(23, 59, 59), tzinfo=timezone.utc)


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February
        return day.replace(year=day.year - years, day=28)


class SyncEngine:
    """Mirror a remote lifelog API into local storage and a vector index.

    The engine is a state machine ``idle -> download -> vectorize ->
    monitoring`` whose state lives in a :class:`SyncCheckpoint` persisted
    after every meaningful step, so an interrupted run resumes where it
    stopped. Per-unit failures (a day, a document, a tick) are recorded in
    the checkpoint and never halt the engine; only checkpoint persistence
    failures and a concurrently running engine propagate.

    Args:
        source: Remote reads, usually an :class:`IngestionClient`.
        store: Local record and embedding store.
        index: Optional vector index; vectorization is skipped without one.
        settings: Engine tuning knobs.
        checkpoint_store: Where the checkpoint is persisted.
        lock_path: Lock file guarding the data directory.
        sleep: Injected delay function; defaults to waiting on the stop flag.
        clock: Injected UTC clock.
    """

    def __init__(
        self,
        *,
        source: LifelogSource,
        store: LifelogStore,
        index: VectorIndex | None,
        settings: SyncSettings,
        checkpoint_store: CheckpointStore,
        lock_path: Path | None = None,
        logger: Logger | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.source = source
        self.store = store
        self.index = index
        self.settings = settings
        self.checkpoint_store = checkpoint_store
        self.lock_path = lock_path
        self.logger = logger or get_logger(__name__, component="sync")
        self._sleep = sleep
        self._clock = clock
        self._stop_event = threading.Event()
        self._checkpoint = SyncCheckpoint()

    # ------------------------------------------------------------------#
    # Lifecycle
    # ------------------------------------------------------------------#
    @property
    def checkpoint(self) -> SyncCheckpoint:
        return self._checkpoint

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request cooperative cancellation; wakes a sleeping engine."""

        self._stop_event.set()
        self.logger.info("sync-stop-requested")

    def progress(self) -> SyncProgress:
        return self._checkpoint.progress()

    def start(self, *, once: bool = False) -> SyncProgress:
        """Run the state machine from the persisted phase.

        With ``once`` the engine performs a single monitoring tick instead of
        polling until :meth:`stop` is called.

        Raises:
            SyncAlreadyRunningError: If another engine holds the lock.
            CheckpointLoadError: If the stored checkpoint is corrupt.
            CheckpointPersistenceError: If the checkpoint cannot be saved.
        """

        self._stop_event.clear()
        with self.exclusive():
            loaded = self.load_checkpoint()
            if loaded is None or not loaded.initialized:
                self._bootstrap()
            else:
                self.logger.info(
                    "sync-resumed",
                    phase=loaded.phase.value,
                    processed_days=len(loaded.processed_batches),
                )
            self._run_phases(once=once)
        return self.progress()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the data-directory lock for the duration of the block.

        Raises:
            SyncAlreadyRunningError: If another engine holds the lock.
        """

        if self.lock_path is None:
            yield
            return
        lock = FileLock(self.lock_path, timeout=0)
        try:
            lock.acquire()
        except LockTimeoutError as exc:
            raise SyncAlreadyRunningError(
                f"Another sync engine holds {self.lock_path}",
                lock_path=self.lock_path,
            ) from exc
        try:
            yield
        finally:
            lock.release()

    def load_checkpoint(self) -> SyncCheckpoint | None:
        """Adopt the persisted checkpoint, if any, as the working state."""

        loaded = self.checkpoint_store.load()
        if loaded is not None:
            self._checkpoint = loaded
        return loaded

    def clear_checkpoint(self) -> bool:
        """Forget all progress; the next start bootstraps from scratch."""

        self._checkpoint = SyncCheckpoint()
        return self.checkpoint_store.clear()

    def _run_phases(self, *, once: bool) -> None:
        checkpoint = self._checkpoint
        if checkpoint.phase is SyncPhase.DOWNLOAD:
            self.download()
            if self.stopped:
                return
            checkpoint.phase = SyncPhase.VECTORIZE
            self._save_checkpoint()
            if self.settings.download_only:
                self.logger.info("sync-download-only-complete")
                return

        if self.settings.download_only:
            return

        if checkpoint.phase is SyncPhase.VECTORIZE:
            self.vectorize()
            if self.stopped:
                return
            checkpoint.phase = SyncPhase.MONITORING
            self._save_checkpoint()

        if checkpoint.phase is not SyncPhase.MONITORING:
            checkpoint.phase = SyncPhase.MONITORING
            self._save_checkpoint()

        if once:
            self.monitor_once()
            return
        self._monitor_loop()

    # ------------------------------------------------------------------#
    # Helpers
    # ------------------------------------------------------------------#
    def _delay(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._stop_event.wait(seconds)

    def _api_pause(self) -> None:
        self._delay(self.settings.api_delay_seconds)

    def _save_checkpoint(self) -> None:
        self._checkpoint.storage_size = self.store.stats().size_bytes
        self.checkpoint_store.save(self._checkpoint, now=self._clock())

    def _flush_index(self) -> None:
        if self.index is None:
            return
        try:
            self.index.flush()
        except Exception as exc:
            self.logger.error(
                "sync-index-flush-failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._record_error(format_timestamp(self._clock()), exc)

    def _record_error(self, key: str, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        self._checkpoint.record_error(key, message, limit=self.settings.max_errors)

    def _today(self) -> date:
        return self._clock().astimezone(timezone.utc).date()

    # ------------------------------------------------------------------#
    # Bootstrap
    # ------------------------------------------------------------------#
    def _bootstrap(self) -> None:
        self.logger.info("sync-bootstrap-started")
        self.store.clear_all()
        if self.index is not None:
            self.index.clear()

        checkpoint = SyncCheckpoint(initialized=True)
        self._checkpoint = checkpoint
        today = self._today()
        try:
            oldest = self.find_oldest_record()
        except Exception as exc:
            self.logger.error(
                "sync-oldest-search-failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._record_error(today.isoformat(), exc)
            checkpoint.phase = SyncPhase.DOWNLOAD
            checkpoint.current_date = today
        else:
            if oldest is None:
                self.logger.info("sync-no-remote-records")
                checkpoint.phase = SyncPhase.MONITORING
            else:
                checkpoint.phase = SyncPhase.DOWNLOAD
                checkpoint.current_date = today
                checkpoint.oldest_date = oldest
                self.logger.info(
                    "sync-oldest-record-found", oldest=format_timestamp(oldest)
                )
        self._save_checkpoint()

    def _first_in_range(self, start: date, end: date) -> list[Lifelog]:
        try:
            return self.source.list_lifelogs_by_range(
                _day_start(start), _day_end(end), limit=1, direction="asc"
            )
        finally:
            self._api_pause()

    def find_oldest_record(self) -> datetime | None:
        """Locate the earliest remote record timestamp, or ``None``.

        Scans calendar years backwards, narrows the earliest year with data
        by bisecting day ranges, then reads the week before the candidate to
        pin the exact oldest timestamp. Remote errors propagate.
        """

        today = self._today()
        year_range: tuple[date, date] | None = None
        year_hit: Lifelog | None = None
        for offset in range(self.settings.max_years_back):
            if self.stopped:
                break
            year = today.year - offset
            start = date(year, 1, 1)
            end = min(date(year, 12, 31), today)
            found = self._first_in_range(start, end)
            self.logger.debug("sync-year-scan", year=year, found=bool(found))
            if found:
                year_range = (start, end)
                year_hit = found[0]

        if year_range is None or year_hit is None:
            return None

        left, right = year_range
        candidate: datetime | None = None
        while (right - left).days > 1 and not self.stopped:
            mid = left + timedelta(days=(right - left).days // 2)
            found = self._first_in_range(left, mid)
            if found:
                candidate = found[0].created_at
                right = mid
            else:
                left = mid + timedelta(days=1)

        if candidate is None:
            found = self._first_in_range(left, right)
            candidate = found[0].created_at if found else year_hit.created_at

        try:
            window = self.source.list_lifelogs_by_range(
                candidate - timedelta(days=_FINDER_WINDOW_DAYS),
                candidate,
                limit=_FINDER_WINDOW_LIMIT,
                direction="asc",
            )
        finally:
            self._api_pause()
        return min([candidate, *(record.created_at for record in window)])

    # ------------------------------------------------------------------#
    # Download
    # ------------------------------------------------------------------#
    def download(self) -> int:
        """Walk days oldest to newest saving every record not yet on disk.

        Returns:
            Number of records newly saved during this call.
        """

        checkpoint = self._checkpoint
        last_day = self.settings.start_date or self._today()
        if checkpoint.oldest_date is not None:
            first_day = checkpoint.oldest_date.astimezone(timezone.utc).date()
        else:
            first_day = _years_before(last_day, self.settings.max_years_back)

        saved_total = 0
        since_checkpoint = 0
        day = first_day
        self.logger.info(
            "sync-download-started",
            first_day=first_day.isoformat(),
            last_day=last_day.isoformat(),
        )
        while day <= last_day:
            if self.stopped:
                break
            if day in checkpoint.processed_batches:
                day += timedelta(days=1)
                continue

            checkpoint.current_date = day
            try:
                saved_total += self._download_day(day)
            except Exception as exc:
                self.logger.error(
                    "sync-day-failed",
                    day=day.isoformat(),
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                self._record_error(day.isoformat(), exc)
                self._save_checkpoint()
                since_checkpoint = 0
            else:
                since_checkpoint += 1
                if since_checkpoint >= self.settings.checkpoint_interval:
                    self._save_checkpoint()
                    since_checkpoint = 0
            day += timedelta(days=1)

        self._save_checkpoint()
        self.logger.info(
            "sync-download-finished",
            saved=saved_total,
            total_downloaded=checkpoint.total_downloaded,
            stopped=self.stopped,
        )
        return saved_total

    def _download_day(self, day: date) -> int:
        try:
            records = self.source.list_lifelogs_by_date(day)
        finally:
            self._api_pause()

        checkpoint = self._checkpoint
        outcomes = self._save_records(records)
        saved = 0
        failures: list[tuple[Lifelog, Exception]] = []
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, Exception):
                failures.append((record, outcome))
                continue
            if outcome:
                saved += 1
            checkpoint.extend_bounds(record.created_at)

        checkpoint.total_downloaded += saved
        if failures:
            record, first = failures[0]
            raise RuntimeError(
                f"{len(failures)} of {len(records)} records failed to save "
                f"(first {record.id}: {first})"
            ) from first

        checkpoint.processed_batches.add(day)
        self.logger.info(
            "sync-day-complete",
            day=day.isoformat(),
            fetched=len(records),
            saved=saved,
        )
        return saved

    def _save_one(self, record: Lifelog) -> bool | Exception:
        try:
            if self.store.exists(record):
                return False
            return self.store.save(record)
        except Exception as exc:
            return exc

    def _save_records(self, records: Sequence[Lifelog]) -> list[bool | Exception]:
        workers = self.settings.save_concurrency
        if workers <= 1 or len(records) <= 1:
            return [self._save_one(record) for record in records]
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="lifelogd-save"
        ) as pool:
            return list(pool.map(self._save_one, records))

    # ------------------------------------------------------------------#
    # Vectorize
    # ------------------------------------------------------------------#
    def vectorize(self) -> int:
        """Index stored records lacking a persisted embedding, newest first.

        Returns:
            Number of records vectorized during this call.
        """

        checkpoint = self._checkpoint
        if self.index is None:
            self.logger.info("sync-vectorize-skipped", reason="no-index")
            return 0

        days = sorted(self.store.iter_days(), reverse=True)
        self.logger.info("sync-vectorize-started", days=len(days))
        vectorized = 0
        since_checkpoint = 0
        for day in days:
            if self.stopped:
                break
            checkpoint.current_date = day
            try:
                count = self._vectorize_day(day)
            except Exception as exc:
                self.logger.error(
                    "sync-vectorize-day-failed",
                    day=day.isoformat(),
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                self._record_error(day.isoformat(), exc)
                continue
            checkpoint.pending_vectorize.discard(day)
            if count:
                vectorized += count
                since_checkpoint += 1
                if since_checkpoint >= self.settings.vectorize_checkpoint_interval:
                    self._flush_index()
                    self._save_checkpoint()
                    since_checkpoint = 0

        self._flush_index()
        self._save_checkpoint()
        self.logger.info(
            "sync-vectorize-finished",
            vectorized=vectorized,
            total_vectorized=checkpoint.total_vectorized,
            stopped=self.stopped,
        )
        return vectorized

    def _vectorize_day(self, day: date) -> int:
        assert self.index is not None
        pending = [
            record
            for record in self.store.list_by_date(day)
            if not self.store.has_embedding(record.id, day)
        ]
        if not pending:
            return 0

        self.index.add_documents(
            [
                VectorRecord(
                    id=record.id,
                    content=record.document_text,
                    metadata=record.index_metadata(),
                )
                for record in pending
            ]
        )
        persisted = 0
        for record in pending:
            if self._persist_embedding(record):
                persisted += 1
        self._checkpoint.total_vectorized += persisted
        self.logger.info(
            "sync-vectorize-day-complete", day=day.isoformat(), vectorized=persisted
        )
        return persisted

    def _persist_embedding(self, record: Lifelog) -> bool:
        assert self.index is not None
        stored = self.index.get_document(record.id)
        if stored is None or stored.embedding is None:
            return False
        model = self.index.provider.model_name
        self.store.save_embedding(
            record.id, record.day, stored.embedding, model=model
        )
        return True

    # ------------------------------------------------------------------#
    # Monitoring
    # ------------------------------------------------------------------#
    def _monitor_loop(self) -> None:
        self.logger.info(
            "sync-monitoring-started",
            interval=self.settings.monitor_interval_seconds,
        )
        while not self.stopped:
            self.monitor_once()
            if self.stopped:
                break
            self._delay(self.settings.monitor_interval_seconds)
        self.logger.info("sync-monitoring-stopped")

    def monitor_once(self) -> int:
        """Run a single polling tick; returns the number of new records.

        Days whose records failed to index on an earlier tick are retried
        first, so a transient embedding outage never strands a record behind
        the watermark.
        """

        checkpoint = self._checkpoint
        self._retry_pending()
        now = self._clock()
        checkpoint.last_monitor_check = now
        watermark = checkpoint.last_processed_timestamp
        anchor = watermark or now
        start = anchor - timedelta(days=self.settings.monitor_lookback_days)
        end = now.astimezone(timezone.utc).date() + timedelta(days=1)

        try:
            try:
                records = self.source.list_lifelogs_by_range(
                    start,
                    end,
                    limit=self.settings.monitor_fetch_limit,
                    direction="asc",
                )
            finally:
                self._api_pause()
            fresh = sorted(
                (
                    record
                    for record in records
                    if watermark is None or record.created_at > watermark
                ),
                key=lambda record: record.created_at,
            )
            if not fresh:
                self.logger.debug("sync-monitor-idle")
                return 0

            added = 0
            for record in fresh:
                if self.stopped:
                    break
                if self._ingest_new(record):
                    added += 1
            self._flush_index()
            self._save_checkpoint()
            self.logger.info(
                "sync-monitor-tick", fetched=len(records), new=added
            )
            return added
        except CheckpointPersistenceError:
            raise
        except Exception as exc:
            self.logger.error(
                "sync-monitor-failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            self._record_error(format_timestamp(now), exc)
            self._save_checkpoint()
            return 0

    def _retry_pending(self) -> int:
        """Re-index days whose records failed to index on an earlier tick."""

        checkpoint = self._checkpoint
        if self.index is None or not checkpoint.pending_vectorize:
            return 0
        recovered = 0
        for day in list(checkpoint.pending_vectorize):
            if self.stopped:
                break
            try:
                recovered += self._vectorize_day(day)
            except Exception as exc:
                self.logger.error(
                    "sync-pending-vectorize-failed",
                    day=day.isoformat(),
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                self._record_error(day.isoformat(), exc)
                continue
            checkpoint.pending_vectorize.discard(day)
        self._flush_index()
        self._save_checkpoint()
        self.logger.info(
            "sync-pending-vectorize-retried",
            recovered=recovered,
            pending=len(checkpoint.pending_vectorize),
        )
        return recovered

    def _ingest_new(self, record: Lifelog) -> bool:
        checkpoint = self._checkpoint
        added = False
        if not self.store.exists(record):
            added = self.store.save(record)
            if added:
                checkpoint.total_downloaded += 1

        if self.index is not None and not self.store.has_embedding(
            record.id, record.day
        ):
            try:
                self.index.add_documents(
                    [
                        VectorRecord(
                            id=record.id,
                            content=record.document_text,
                            metadata=record.index_metadata(),
                        )
                    ]
                )
                if self._persist_embedding(record):
                    checkpoint.total_vectorized += 1
            except Exception as exc:
                self.logger.error(
                    "sync-monitor-index-failed",
                    lifelog_id=record.id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                self._record_error(format_timestamp(record.created_at), exc)
                checkpoint.pending_vectorize.add(record.day)

        checkpoint.extend_bounds(record.created_at)
        return added
