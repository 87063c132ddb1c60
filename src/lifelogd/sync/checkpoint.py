"""Durable sync checkpoint and its read model."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from lifelogd.core.atomic import atomic_write_json
from lifelogd.core.logging import Logger, get_logger
from lifelogd.ingest.models import format_timestamp, parse_timestamp

from .errors import CheckpointLoadError, CheckpointPersistenceError

__all__ = [
    "CHECKPOINT_SCHEMA_VERSION",
    "CheckpointStore",
    "DateSet",
    "ErrorEntry",
    "SyncCheckpoint",
    "SyncPhase",
    "SyncProgress",
]

CHECKPOINT_SCHEMA_VERSION = 1
DEFAULT_MAX_ERRORS = 500


class SyncPhase(StrEnum):
    """Engine state machine phases."""

    IDLE = "idle"
    DOWNLOAD = "download"
    VECTORIZE = "vectorize"
    MONITORING = "monitoring"


class DateSet:
    """Set of calendar dates with order-independent serialization.

    Example:
        >>> days = DateSet([date(2024, 1, 2), date(2024, 1, 1)])
        >>> days.to_list()
        ['2024-01-01', '2024-01-02']
        >>> date(2024, 1, 2) in DateSet.from_list(days.to_list())
        True
    """

    __slots__ = ("_days",)

    def __init__(self, days: Iterable[date] = ()) -> None:
        self._days: set[date] = set(days)

    def add(self, day: date) -> None:
        self._days.add(day)

    def discard(self, day: date) -> None:
        self._days.discard(day)

    def __contains__(self, day: object) -> bool:
        return day in self._days

    def __len__(self) -> int:
        return len(self._days)

    def __iter__(self) -> Iterator[date]:
        return iter(sorted(self._days))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DateSet):
            return NotImplemented
        return self._days == other._days

    def __repr__(self) -> str:
        return f"DateSet({self.to_list()!r})"

    def to_list(self) -> list[str]:
        return [day.isoformat() for day in sorted(self._days)]

    @classmethod
    def from_list(cls, values: Iterable[str]) -> "DateSet":
        return cls(date.fromisoformat(str(value)) for value in values)


@dataclass(frozen=True, slots=True)
class ErrorEntry:
    """A recorded per-unit failure; ``date`` is a day or a timestamp."""

    date: str
    error: str

    def to_mapping(self) -> dict[str, str]:
        return {"date": self.date, "error": self.error}


def _opt_datetime(value: Any, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    return parse_timestamp(value, field_name=field_name)


def _opt_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    return date.fromisoformat(str(value)[:10])


def _fmt(value: datetime | None) -> str | None:
    return format_timestamp(value) if value is not None else None


@dataclass(frozen=True, slots=True)
class SyncProgress:
    """Read-only snapshot of engine progress."""

    phase: SyncPhase
    current_date: date | None
    total_downloaded: int
    total_vectorized: int
    oldest_date: datetime | None
    newest_date: datetime | None
    storage_size: int
    errors: tuple[ErrorEntry, ...]
    last_processed_timestamp: datetime | None = None
    processed_days: int = 0
    pending_vectorize_days: int = 0

    def to_mapping(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "current_date": self.current_date.isoformat()
            if self.current_date
            else None,
            "total_downloaded": self.total_downloaded,
            "total_vectorized": self.total_vectorized,
            "oldest_date": _fmt(self.oldest_date),
            "newest_date": _fmt(self.newest_date),
            "last_processed_timestamp": _fmt(self.last_processed_timestamp),
            "storage_size": self.storage_size,
            "processed_days": self.processed_days,
            "pending_vectorize_days": self.pending_vectorize_days,
            "errors": [entry.to_mapping() for entry in self.errors],
        }


@dataclass(slots=True)
class SyncCheckpoint:
    """Mutable engine state; the single source of truth for resumption."""

    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    initialized: bool = False
    phase: SyncPhase = SyncPhase.IDLE
    current_date: date | None = None
    total_downloaded: int = 0
    total_vectorized: int = 0
    oldest_date: datetime | None = None
    newest_date: datetime | None = None
    last_processed_timestamp: datetime | None = None
    processed_batches: DateSet = field(default_factory=DateSet)
    pending_vectorize: DateSet = field(default_factory=DateSet)
    storage_size: int = 0
    errors: list[ErrorEntry] = field(default_factory=list)
    last_checkpoint: datetime | None = None
    last_monitor_check: datetime | None = None

    def record_error(
        self, key: str, error: str, *, limit: int = DEFAULT_MAX_ERRORS
    ) -> ErrorEntry:
        """Append an error entry, dropping the oldest beyond ``limit``."""

        entry = ErrorEntry(date=key, error=error)
        self.errors.append(entry)
        overflow = len(self.errors) - max(limit, 1)
        if overflow > 0:
            del self.errors[:overflow]
        return entry

    def extend_bounds(self, created_at: datetime) -> None:
        """Widen the known date range and advance the processed watermark."""

        if self.oldest_date is None or created_at < self.oldest_date:
            self.oldest_date = created_at
        if self.newest_date is None or created_at > self.newest_date:
            self.newest_date = created_at
        if (
            self.last_processed_timestamp is None
            or created_at > self.last_processed_timestamp
        ):
            self.last_processed_timestamp = created_at

    def progress(self) -> SyncProgress:
        return SyncProgress(
            phase=self.phase,
            current_date=self.current_date,
            total_downloaded=self.total_downloaded,
            total_vectorized=self.total_vectorized,
            oldest_date=self.oldest_date,
            newest_date=self.newest_date,
            storage_size=self.storage_size,
            errors=tuple(self.errors),
            last_processed_timestamp=self.last_processed_timestamp,
            processed_days=len(self.processed_batches),
            pending_vectorize_days=len(self.pending_vectorize),
        )

    # ------------------------------------------------------------------#
    # Serialization
    # ------------------------------------------------------------------#
    def to_mapping(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "initialized": self.initialized,
            "phase": self.phase.value,
            "current_date": self.current_date.isoformat()
            if self.current_date
            else None,
            "total_downloaded": self.total_downloaded,
            "total_vectorized": self.total_vectorized,
            "oldest_date": _fmt(self.oldest_date),
            "newest_date": _fmt(self.newest_date),
            "last_processed_timestamp": _fmt(self.last_processed_timestamp),
            "processed_batches": self.processed_batches.to_list(),
            "pending_vectorize": self.pending_vectorize.to_list(),
            "storage_size": self.storage_size,
            "errors": [entry.to_mapping() for entry in self.errors],
            "last_checkpoint": _fmt(self.last_checkpoint),
            "last_monitor_check": _fmt(self.last_monitor_check),
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "SyncCheckpoint":
        """Build a checkpoint from its JSON form.

        Raises:
            ValueError: If a field is missing a valid value.
        """

        version = int(payload.get("schema_version", CHECKPOINT_SCHEMA_VERSION))
        if version > CHECKPOINT_SCHEMA_VERSION:
            raise ValueError(
                f"checkpoint schema_version {version} is newer than supported "
                f"{CHECKPOINT_SCHEMA_VERSION}"
            )
        errors = [
            ErrorEntry(date=str(item["date"]), error=str(item["error"]))
            for item in payload.get("errors") or ()
        ]
        return cls(
            schema_version=CHECKPOINT_SCHEMA_VERSION,
            initialized=bool(payload.get("initialized", False)),
            phase=SyncPhase(payload.get("phase", SyncPhase.IDLE.value)),
            current_date=_opt_date(payload.get("current_date")),
            total_downloaded=int(payload.get("total_downloaded", 0)),
            total_vectorized=int(payload.get("total_vectorized", 0)),
            oldest_date=_opt_datetime(payload.get("oldest_date"), "oldest_date"),
            newest_date=_opt_datetime(payload.get("newest_date"), "newest_date"),
            last_processed_timestamp=_opt_datetime(
                payload.get("last_processed_timestamp"), "last_processed_timestamp"
            ),
            processed_batches=DateSet.from_list(
                payload.get("processed_batches") or ()
            ),
            pending_vectorize=DateSet.from_list(
                payload.get("pending_vectorize") or ()
            ),
            storage_size=int(payload.get("storage_size", 0)),
            errors=errors,
            last_checkpoint=_opt_datetime(
                payload.get("last_checkpoint"), "last_checkpoint"
            ),
            last_monitor_check=_opt_datetime(
                payload.get("last_monitor_check"), "last_monitor_check"
            ),
        )


class CheckpointStore:
    """Atomic JSON persistence for :class:`SyncCheckpoint`."""

    def __init__(self, path: Path, *, logger: Logger | None = None) -> None:
        self.path = path
        self.logger = logger or get_logger(__name__, component="checkpoint")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SyncCheckpoint | None:
        """Return the stored checkpoint, or ``None`` when there is none.

        Raises:
            CheckpointLoadError: If the file exists but cannot be parsed.
        """

        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(payload, Mapping):
                raise ValueError("checkpoint must be a JSON object")
            checkpoint = SyncCheckpoint.from_mapping(payload)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CheckpointLoadError(
                f"Failed to load checkpoint at {self.path}: {exc}",
                path=self.path,
            ) from exc
        self.logger.info(
            "checkpoint-loaded",
            phase=checkpoint.phase.value,
            total_downloaded=checkpoint.total_downloaded,
            processed_days=len(checkpoint.processed_batches),
        )
        return checkpoint

    def save(self, checkpoint: SyncCheckpoint, *, now: datetime) -> None:
        """Persist ``checkpoint`` atomically.

        Raises:
            CheckpointPersistenceError: If the file cannot be written.
        """

        checkpoint.last_checkpoint = now
        try:
            atomic_write_json(self.path, checkpoint.to_mapping(), fsync=True)
        except (OSError, TypeError, ValueError) as exc:
            raise CheckpointPersistenceError(
                f"Failed to persist checkpoint at {self.path}: {exc}",
                path=self.path,
            ) from exc
        self.logger.debug(
            "checkpoint-saved",
            phase=checkpoint.phase.value,
            total_downloaded=checkpoint.total_downloaded,
            processed_days=len(checkpoint.processed_batches),
        )

    def clear(self) -> bool:
        """Delete the checkpoint file; returns whether one existed."""

        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        self.logger.info("checkpoint-cleared", path=str(self.path))
        return True
