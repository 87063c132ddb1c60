"""File-backed lifelog and embedding store partitioned by year/month/day."""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Sequence

from lifelogd.core.atomic import atomic_write_json
from lifelogd.core.logging import Logger, get_logger
from lifelogd.ingest.models import Lifelog

__all__ = [
    "LifelogStore",
    "LifelogStoreError",
    "StorageStats",
    "StoredEmbedding",
]

_RECORD_SUFFIX = ".json"


class LifelogStoreError(RuntimeError):
    """Raised when a stored record cannot be read or written."""


@dataclass(frozen=True, slots=True)
class StorageStats:
    """Summary of what is on disk."""

    total_lifelogs: int
    total_embeddings: int
    size_bytes: int
    oldest_date: date | None
    newest_date: date | None


@dataclass(frozen=True, slots=True)
class StoredEmbedding:
    id: str
    model: str | None
    embedding: tuple[float, ...]


def _day_parts(day: date) -> tuple[str, str, str]:
    return f"{day.year:04d}", f"{day.month:02d}", f"{day.day:02d}"


def _parse_day_dir(path: Path, root: Path) -> date | None:
    try:
        year, month, day = path.relative_to(root).parts
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


class LifelogStore:
    """Durable local mirror of lifelogs.

    Each record lives at ``<lifelogs>/YYYY/MM/DD/<id>.json`` where the date
    is the UTC day of ``created_at``; its vector, once computed, lives at the
    same relative path under ``<embeddings>``. Writes are atomic and
    idempotent by id.

    Example:
        >>> from pathlib import Path
        >>> store = LifelogStore(
        ...     lifelogs_dir=Path("/tmp/lifelogd-doc/lifelogs"),
        ...     embeddings_dir=Path("/tmp/lifelogd-doc/embeddings"),
        ... )
        >>> store.record_path("abc", date(2024, 1, 15)).as_posix()
        '/tmp/lifelogd-doc/lifelogs/2024/01/15/abc.json'
    """

    def __init__(
        self,
        *,
        lifelogs_dir: Path,
        embeddings_dir: Path,
        logger: Logger | None = None,
    ) -> None:
        self.lifelogs_dir = lifelogs_dir
        self.embeddings_dir = embeddings_dir
        self.logger = logger or get_logger(__name__, component="storage")

    # ------------------------------------------------------------------#
    # Paths
    # ------------------------------------------------------------------#
    @staticmethod
    def _safe_id(lifelog_id: str) -> str:
        if not lifelog_id or "/" in lifelog_id or lifelog_id in {".", ".."}:
            raise LifelogStoreError(f"Invalid lifelog id: {lifelog_id!r}")
        return lifelog_id

    def day_dir(self, day: date) -> Path:
        return self.lifelogs_dir.joinpath(*_day_parts(day))

    def record_path(self, lifelog_id: str, day: date) -> Path:
        return self.day_dir(day) / f"{self._safe_id(lifelog_id)}{_RECORD_SUFFIX}"

    def embedding_path(self, lifelog_id: str, day: date) -> Path:
        return self.embeddings_dir.joinpath(
            *_day_parts(day), f"{self._safe_id(lifelog_id)}{_RECORD_SUFFIX}"
        )

    # ------------------------------------------------------------------#
    # Records
    # ------------------------------------------------------------------#
    def exists(self, lifelog: Lifelog) -> bool:
        return self.record_path(lifelog.id, lifelog.day).exists()

    def save(self, lifelog: Lifelog) -> bool:
        """Persist ``lifelog``; returns ``False`` when it was already stored.

        Raises:
            LifelogStoreError: If the record cannot be written.
        """

        path = self.record_path(lifelog.id, lifelog.day)
        if path.exists():
            return False
        try:
            atomic_write_json(path, lifelog.to_mapping())
        except OSError as exc:
            raise LifelogStoreError(
                f"Failed to save lifelog {lifelog.id} at {path}: {exc}"
            ) from exc
        return True

    def load(self, lifelog_id: str, day: date) -> Lifelog | None:
        path = self.record_path(lifelog_id, day)
        if not path.exists():
            return None
        return self._read_record(path)

    def _read_record(self, path: Path) -> Lifelog:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return Lifelog.from_mapping(payload)
        except (OSError, ValueError, KeyError) as exc:
            raise LifelogStoreError(
                f"Failed to read lifelog at {path}: {exc}"
            ) from exc

    def list_ids_by_date(self, day: date) -> list[str]:
        directory = self.day_dir(day)
        if not directory.is_dir():
            return []
        return sorted(
            entry.stem
            for entry in directory.iterdir()
            if entry.is_file() and entry.suffix == _RECORD_SUFFIX
        )

    def list_by_date(self, day: date) -> list[Lifelog]:
        """Return the records stored for ``day`` ordered by start time."""

        records = [
            self._read_record(self.record_path(lifelog_id, day))
            for lifelog_id in self.list_ids_by_date(day)
        ]
        return sorted(records, key=lambda record: record.created_at)

    def list_by_date_range(self, start: date, end: date) -> list[Lifelog]:
        records: list[Lifelog] = []
        for day in self.iter_days():
            if start <= day <= end:
                records.extend(self.list_by_date(day))
        return records

    def iter_days(self) -> Iterator[date]:
        """Yield days that hold at least one record, oldest first."""

        if not self.lifelogs_dir.is_dir():
            return
        days = (
            _parse_day_dir(path, self.lifelogs_dir)
            for path in self.lifelogs_dir.glob("*/*/*")
            if path.is_dir() and any(path.glob(f"*{_RECORD_SUFFIX}"))
        )
        yield from sorted(day for day in days if day is not None)

    # ------------------------------------------------------------------#
    # Embeddings
    # ------------------------------------------------------------------#
    def has_embedding(self, lifelog_id: str, day: date) -> bool:
        return self.embedding_path(lifelog_id, day).exists()

    def save_embedding(
        self,
        lifelog_id: str,
        day: date,
        embedding: Sequence[float],
        *,
        model: str | None = None,
    ) -> None:
        path = self.embedding_path(lifelog_id, day)
        payload = {
            "id": lifelog_id,
            "model": model,
            "embedding": [float(value) for value in embedding],
        }
        try:
            atomic_write_json(path, payload, indent=None)
        except OSError as exc:
            raise LifelogStoreError(
                f"Failed to save embedding for {lifelog_id}: {exc}"
            ) from exc

    def load_embedding(self, lifelog_id: str, day: date) -> StoredEmbedding | None:
        path = self.embedding_path(lifelog_id, day)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise LifelogStoreError(
                f"Failed to read embedding at {path}: {exc}"
            ) from exc
        return StoredEmbedding(
            id=str(payload["id"]),
            model=payload.get("model"),
            embedding=tuple(float(value) for value in payload["embedding"]),
        )

    # ------------------------------------------------------------------#
    # Maintenance
    # ------------------------------------------------------------------#
    def stats(self) -> StorageStats:
        total_lifelogs = 0
        total_embeddings = 0
        size_bytes = 0
        for root, is_records in (
            (self.lifelogs_dir, True),
            (self.embeddings_dir, False),
        ):
            if not root.is_dir():
                continue
            for path in root.rglob(f"*{_RECORD_SUFFIX}"):
                if not path.is_file():
                    continue
                size_bytes += path.stat().st_size
                if is_records:
                    total_lifelogs += 1
                else:
                    total_embeddings += 1

        days = list(self.iter_days())
        return StorageStats(
            total_lifelogs=total_lifelogs,
            total_embeddings=total_embeddings,
            size_bytes=size_bytes,
            oldest_date=days[0] if days else None,
            newest_date=days[-1] if days else None,
        )

    def cleanup(self, days_to_keep: int, *, today: date | None = None) -> int:
        """Delete day partitions older than ``days_to_keep``; returns days removed."""

        if days_to_keep < 0:
            raise ValueError("days_to_keep must be >= 0")
        reference = today or datetime.now(timezone.utc).date()
        cutoff = reference - timedelta(days=days_to_keep)
        removed = 0
        for day in list(self.iter_days()):
            if day >= cutoff:
                continue
            for root in (self.lifelogs_dir, self.embeddings_dir):
                shutil.rmtree(root.joinpath(*_day_parts(day)), ignore_errors=True)
            removed += 1
        if removed:
            self.logger.info(
                "storage-cleanup", removed_days=removed, cutoff=cutoff.isoformat()
            )
        return removed

    def clear_all(self) -> None:
        """Remove every stored record and embedding."""

        for root in (self.lifelogs_dir, self.embeddings_dir):
            if root.exists():
                shutil.rmtree(root)
            root.mkdir(parents=True, exist_ok=True)
        self.logger.info("storage-cleared", lifelogs_dir=str(self.lifelogs_dir))
