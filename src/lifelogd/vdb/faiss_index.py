"""Embedded, persistent vector index on FAISS with an SQLite document table."""

from __future__ import annotations

import hashlib
import json
import math
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import numpy as np

try:  # pragma: no cover - import guard exercised in tests via functionality
    import faiss
except ImportError as exc:  # pragma: no cover - bubble missing dependency
    message = "faiss is required for the embedded index; install faiss-cpu"
    raise ImportError(message) from exc

from lifelogd.core.atomic import atomic_write_bytes, atomic_write_text
from lifelogd.core.locks import FileLock, LockError, LockTimeoutError
from lifelogd.core.logging import Logger
from lifelogd.ingest.models import format_timestamp, parse_timestamp

from .base import BaseVectorIndex, clamp_score
from .errors import VectorDimensionMismatchError, VectorIndexError
from .models import VectorRecord
from .providers import EmbeddingProvider, EmbeddingVector

__all__ = [
    "FaissIndex",
    "FaissIndexError",
    "FaissIndexLoadError",
    "FaissIndexLockError",
    "FaissIndexMetric",
    "FaissIndexPersistenceError",
    "FaissIndexSidecar",
    "FaissIndexValidationError",
    "FaissVectorIndex",
    "index_lock_path",
    "index_writer_lock",
    "load_index_artifacts",
    "persist_index_artifacts",
    "sidecar_path_for_index",
]

SIDECAR_VERSION = 1
_DEFAULT_LOCK_TIMEOUT = 30.0
_DEFAULT_LOCK_POLL_INTERVAL = 0.1


class FaissIndexError(VectorIndexError):
    """Base error raised for FAISS adapter failures."""


class FaissIndexPersistenceError(FaissIndexError):
    """Raised when index artifacts cannot be persisted."""


class FaissIndexLockError(FaissIndexError):
    """Raised when acquiring or releasing the index writer lock fails."""


class FaissIndexLoadError(FaissIndexError):
    """Raised when index artifacts cannot be loaded from disk."""

    def __init__(self, *, index_path: Path, message: str) -> None:
        super().__init__(message)
        self.index_path = index_path


class FaissIndexValidationError(FaissIndexLoadError):
    """Raised when persisted artifacts disagree with their sidecar."""

    def __init__(
        self,
        *,
        index_path: Path,
        field: str,
        expected: Any,
        actual: Any,
    ) -> None:
        super().__init__(
            index_path=index_path,
            message=(
                f"Validation failed for {field} at {index_path}: "
                f"expected {expected!r}, got {actual!r}"
            ),
        )
        self.field = field
        self.expected = expected
        self.actual = actual


# ----------------------------------------------------------------------#
# FAISS wrapper
# ----------------------------------------------------------------------#
@dataclass(frozen=True)
class FaissIndexMetric:
    """Metric descriptor bridging human-readable names to FAISS IDs."""

    name: str
    faiss_metric: int

    @classmethod
    def from_name(cls, name: str) -> "FaissIndexMetric":
        normalized = name.strip().lower()
        if normalized in {"l2", "euclidean"}:
            return cls(name="l2", faiss_metric=faiss.METRIC_L2)
        if normalized == "cosine":
            return cls(name="cosine", faiss_metric=faiss.METRIC_INNER_PRODUCT)
        raise ValueError(f"Unsupported FAISS metric: {name!r}")

    @property
    def normalizes(self) -> bool:
        return self.name == "cosine"

    def similarity(self, distance: float) -> float:
        """Map a raw FAISS distance to a score in ``[0, 1]``."""

        if self.name == "cosine":
            # Inner product of unit vectors is already the cosine similarity.
            return clamp_score(distance)
        return clamp_score(math.exp(-max(distance, 0.0)))


class FaissIndex:
    """Thin wrapper around ``faiss.IndexIDMap`` with typed helpers."""

    def __init__(self, *, index: faiss.Index, metric: FaissIndexMetric) -> None:
        if not isinstance(index, faiss.IndexIDMap):
            raise TypeError("index must be an instance of faiss.IndexIDMap")
        self._index = index
        self._metric = metric

    @property
    def dim(self) -> int:
        return self._index.d

    @property
    def metric(self) -> FaissIndexMetric:
        return self._metric

    @property
    def size(self) -> int:
        """Number of vectors stored in the index."""

        return self._index.ntotal

    @classmethod
    def create(cls, *, dim: int, metric: str) -> "FaissIndex":
        descriptor = FaissIndexMetric.from_name(metric)
        inner = faiss.index_factory(dim, "Flat", descriptor.faiss_metric)
        return cls(index=faiss.IndexIDMap(inner), metric=descriptor)

    @classmethod
    def from_bytes(cls, data: bytes, *, metric: str) -> "FaissIndex":
        descriptor = FaissIndexMetric.from_name(metric)
        raw_index = faiss.deserialize_index(np.frombuffer(data, dtype="uint8"))
        if not isinstance(raw_index, faiss.IndexIDMap):
            raise FaissIndexError("Serialized index must wrap an IDMap")
        return cls(index=raw_index, metric=descriptor)

    def to_bytes(self) -> bytes:
        return faiss.serialize_index(self._index).tobytes()

    def _prepare(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        array = _vectors_to_array(vectors, dim=self.dim)
        if self._metric.normalizes and len(array):
            faiss.normalize_L2(array)
        return array

    def add(self, ids: Sequence[int], vectors: Sequence[Sequence[float]]) -> None:
        id_array = _ids_to_array(ids)
        if id_array.size == 0:
            return
        vector_array = self._prepare(vectors)
        if len(id_array) != len(vector_array):
            raise ValueError("ids and vectors must have matching lengths")
        self._index.add_with_ids(vector_array, id_array)

    def remove(self, ids: Iterable[int]) -> int:
        id_array = _ids_to_array(ids)
        if id_array.size == 0:
            return 0
        return int(self._index.remove_ids(faiss.IDSelectorBatch(id_array)))

    def search(
        self, query: Sequence[float], *, k: int
    ) -> list[tuple[int, float]]:
        if k <= 0:
            raise ValueError("k must be positive")
        if self.size == 0:
            return []
        queries = self._prepare([query])
        distances, ids = self._index.search(queries, min(k, self.size))
        return [
            (int(identifier), float(distance))
            for identifier, distance in zip(ids[0], distances[0])
            if identifier != -1
        ]


# ----------------------------------------------------------------------#
# Sidecar + artifact persistence
# ----------------------------------------------------------------------#
@dataclass(frozen=True, slots=True)
class FaissIndexSidecar:
    """Structured payload persisted alongside the FAISS index file."""

    version: int
    model_name: str
    dim: int
    metric: str
    vector_count: int
    built_at: datetime
    checksum: str

    def to_json(self) -> str:
        payload = {
            "version": self.version,
            "model_name": self.model_name,
            "dim": self.dim,
            "metric": self.metric,
            "vector_count": self.vector_count,
            "built_at": format_timestamp(self.built_at),
            "checksum": self.checksum,
        }
        return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"

    @classmethod
    def from_json(cls, payload: str) -> "FaissIndexSidecar":
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid sidecar JSON payload") from exc
        if not isinstance(data, Mapping):
            raise ValueError("Sidecar JSON must decode to an object")
        checksum = str(data.get("checksum") or "")
        if len(checksum) != 64:
            raise ValueError("sidecar.checksum must be a 64-character hex digest")
        try:
            return cls(
                version=int(data["version"]),
                model_name=str(data["model_name"]),
                dim=int(data["dim"]),
                metric=FaissIndexMetric.from_name(str(data["metric"])).name,
                vector_count=int(data["vector_count"]),
                built_at=parse_timestamp(data.get("built_at"), field_name="built_at"),
                checksum=checksum,
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Incomplete sidecar payload: {exc}") from exc


def sidecar_path_for_index(index_path: Path) -> Path:
    """Derive the sidecar metadata path from the FAISS index path."""

    return index_path.with_name(f"{index_path.name}.meta.json")


def index_lock_path(index_path: Path) -> Path:
    """Return the filesystem lock path for ``index_path``."""

    return index_path.with_name(f"{index_path.name}.lock")


@contextmanager
def index_writer_lock(
    index_path: Path,
    *,
    timeout: float = _DEFAULT_LOCK_TIMEOUT,
    poll_interval: float = _DEFAULT_LOCK_POLL_INTERVAL,
) -> Iterator[FileLock]:
    """Serialize writes to the FAISS index file for ``index_path``."""

    lock_path = index_lock_path(index_path)
    lock = FileLock(path=lock_path, timeout=timeout, poll_interval=poll_interval)
    try:
        lock.acquire()
    except LockTimeoutError as exc:
        raise FaissIndexLockError(
            f"Timed out acquiring index lock at {lock_path}"
        ) from exc
    except LockError as exc:
        raise FaissIndexLockError(
            f"Failed acquiring index lock at {lock_path}: {exc}"
        ) from exc
    try:
        yield lock
    finally:
        lock.release()


def persist_index_artifacts(
    index: FaissIndex,
    *,
    index_path: Path,
    model_name: str,
    built_at: datetime,
    lock_timeout: float = _DEFAULT_LOCK_TIMEOUT,
) -> FaissIndexSidecar:
    """Persist the FAISS index and sidecar metadata atomically."""

    index_bytes = index.to_bytes()
    sidecar = FaissIndexSidecar(
        version=SIDECAR_VERSION,
        model_name=model_name,
        dim=index.dim,
        metric=index.metric.name,
        vector_count=index.size,
        built_at=built_at,
        checksum=hashlib.sha256(index_bytes).hexdigest(),
    )
    with index_writer_lock(index_path, timeout=lock_timeout):
        try:
            atomic_write_bytes(index_path, index_bytes)
            atomic_write_text(sidecar_path_for_index(index_path), sidecar.to_json())
        except OSError as exc:
            # A sidecar that failed to land must not describe a new index.
            index_path.unlink(missing_ok=True)
            raise FaissIndexPersistenceError(
                f"Failed to persist FAISS index artifacts at {index_path}: {exc}"
            ) from exc
    return sidecar


def load_index_artifacts(
    *,
    index_path: Path,
    expected_dim: int | None = None,
    expected_metric: str | None = None,
) -> tuple[FaissIndex, FaissIndexSidecar]:
    """Load FAISS index artifacts and validate them against the sidecar."""

    sidecar_path = sidecar_path_for_index(index_path)
    for path in (index_path, sidecar_path):
        if not path.exists():
            raise FaissIndexLoadError(
                index_path=index_path, message=f"Missing index artifact {path}"
            )
    try:
        sidecar = FaissIndexSidecar.from_json(sidecar_path.read_text(encoding="utf-8"))
        index_bytes = index_path.read_bytes()
    except (OSError, ValueError) as exc:
        raise FaissIndexLoadError(
            index_path=index_path, message=f"Failed reading index artifacts: {exc}"
        ) from exc

    digest = hashlib.sha256(index_bytes).hexdigest()
    if digest != sidecar.checksum:
        raise FaissIndexValidationError(
            index_path=index_path,
            field="checksum",
            expected=sidecar.checksum,
            actual=digest,
        )
    try:
        index = FaissIndex.from_bytes(index_bytes, metric=sidecar.metric)
    except (FaissIndexError, RuntimeError, ValueError) as exc:
        raise FaissIndexLoadError(
            index_path=index_path, message=f"Failed deserializing FAISS index: {exc}"
        ) from exc

    checks = (
        ("dim", sidecar.dim, index.dim),
        ("vector_count", sidecar.vector_count, index.size),
        ("dim", expected_dim, sidecar.dim),
        (
            "metric",
            FaissIndexMetric.from_name(expected_metric).name
            if expected_metric
            else None,
            sidecar.metric,
        ),
    )
    for field, expected, actual in checks:
        if expected is not None and expected != actual:
            raise FaissIndexValidationError(
                index_path=index_path, field=field, expected=expected, actual=actual
            )
    return index, sidecar


def _ids_to_array(ids: Iterable[int]) -> np.ndarray:
    if isinstance(ids, np.ndarray):
        return ids.astype("int64", copy=False).reshape(-1)
    return np.fromiter((int(identifier) for identifier in ids), dtype="int64")


def _vectors_to_array(vectors: Sequence[Sequence[float]], *, dim: int) -> np.ndarray:
    if len(vectors) == 0:
        return np.empty((0, dim), dtype="float32")
    array = np.array(vectors, dtype="float32")
    if array.ndim != 2:
        raise ValueError("vectors must be a 2-D array of shape (n, dim)")
    if array.shape[1] != dim:
        raise VectorDimensionMismatchError(expected=dim, actual=array.shape[1])
    return np.ascontiguousarray(array)


# ----------------------------------------------------------------------#
# Vector index back-end
# ----------------------------------------------------------------------#
_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
    doc_id TEXT NOT NULL UNIQUE,
    content TEXT NOT NULL,
    metadata TEXT NOT NULL,
    vector BLOB NOT NULL,
    dimension INTEGER NOT NULL,
    created_at TEXT NOT NULL
)
"""


class FaissVectorIndex(BaseVectorIndex):
    """Persistent index: FAISS ``IndexIDMap`` plus an SQLite document table.

    SQLite is the source of truth: each row carries the document, its
    metadata and raw vector, and its ``row_id`` doubles as the FAISS id. The
    FAISS artifact is a derived cache written by :meth:`flush` and
    :meth:`close`. The first write after a flush drops the sidecar, so an
    artifact that missed writes fails validation on open and is rebuilt from
    SQLite.

    Scores: ``exp(-distance)`` for ``l2``; the inner product of normalized
    vectors for ``cosine``.
    """

    backend = "faiss"

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        index_dir: Path,
        collection: str = "lifelogs",
        metric: str = "l2",
        lock_timeout: float = _DEFAULT_LOCK_TIMEOUT,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(provider, logger=logger)
        self.index_dir = index_dir
        self.collection = collection
        self.metric = FaissIndexMetric.from_name(metric)
        self.index_path = index_dir / f"{collection}.faiss"
        self.db_path = index_dir / f"{collection}.sqlite3"
        self._lock_timeout = lock_timeout
        self._connection: sqlite3.Connection | None = None
        self._index: FaissIndex | None = None
        self._dirty = False

    # ------------------------------------------------------------------#
    # Lifecycle
    # ------------------------------------------------------------------#
    def initialize(self) -> None:
        super().initialize()
        with self._lock:
            self._open()

    def flush(self) -> None:
        """Persist the FAISS artifact if writes happened since the last flush."""

        with self._lock:
            if not self._dirty:
                return
            self._persist(self._index)
            self._dirty = False

    def close(self) -> None:
        with self._lock:
            self.flush()
            if self._connection is not None:
                self._connection.close()
                self._connection = None
            self._index = None

    def _open(self) -> sqlite3.Connection:
        if self._connection is not None:
            return self._connection
        self.index_dir.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.db_path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        with connection:
            connection.execute(_SCHEMA)
        self._connection = connection
        self._index = self._load_or_rebuild(connection)
        return connection

    def _load_or_rebuild(self, connection: sqlite3.Connection) -> FaissIndex | None:
        count = connection.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        dimension = self._row_dimension(connection)
        try:
            index, sidecar = load_index_artifacts(
                index_path=self.index_path,
                expected_dim=dimension,
                expected_metric=self.metric.name,
            )
        except FaissIndexLoadError as exc:
            if count == 0:
                return None
            self.logger.warning(
                "faiss-index-invalid", path=str(self.index_path), error=str(exc)
            )
        else:
            if sidecar.vector_count == count:
                self._last_updated = sidecar.built_at
                return index
            self.logger.warning(
                "faiss-index-stale",
                path=str(self.index_path),
                indexed=sidecar.vector_count,
                stored=count,
            )
        return self._rebuild(connection, dimension)

    def _rebuild(
        self, connection: sqlite3.Connection, dimension: int | None
    ) -> FaissIndex | None:
        if dimension is None:
            return None
        index = FaissIndex.create(dim=dimension, metric=self.metric.name)
        rows = connection.execute("SELECT row_id, vector FROM documents").fetchall()
        index.add(
            [row["row_id"] for row in rows],
            [_decode_vector(row["vector"]) for row in rows],
        )
        self._persist(index)
        self.logger.info(
            "faiss-index-rebuilt", path=str(self.index_path), vectors=index.size
        )
        return index

    def _persist(self, index: FaissIndex | None) -> None:
        if index is None:
            return
        persist_index_artifacts(
            index,
            index_path=self.index_path,
            model_name=self.provider.model_name,
            built_at=datetime.now(timezone.utc),
            lock_timeout=self._lock_timeout,
        )

    def _mark_dirty(self) -> None:
        if self._dirty:
            return
        with index_writer_lock(self.index_path, timeout=self._lock_timeout):
            sidecar_path_for_index(self.index_path).unlink(missing_ok=True)
        self._dirty = True

    @staticmethod
    def _row_dimension(connection: sqlite3.Connection) -> int | None:
        row = connection.execute("SELECT dimension FROM documents LIMIT 1").fetchone()
        return int(row["dimension"]) if row else None

    # ------------------------------------------------------------------#
    # Back-end primitives
    # ------------------------------------------------------------------#
    @property
    def stored_dimension(self) -> int | None:
        with self._lock:
            return self._row_dimension(self._open())

    def _existing_ids(self) -> set[str]:
        connection = self._open()
        return {row[0] for row in connection.execute("SELECT doc_id FROM documents")}

    def _insert(self, records: Sequence[VectorRecord]) -> None:
        connection = self._open()
        created_at = format_timestamp(datetime.now(timezone.utc))
        row_ids: list[int] = []
        vectors: list[EmbeddingVector] = []
        with connection:
            for record in records:
                assert record.embedding is not None
                cursor = connection.execute(
                    "INSERT INTO documents (doc_id, content, metadata, vector, "
                    "dimension, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.content,
                        json.dumps(dict(record.metadata), ensure_ascii=False),
                        _encode_vector(record.embedding),
                        len(record.embedding),
                        created_at,
                    ),
                )
                row_ids.append(int(cursor.lastrowid))
                vectors.append(record.embedding)
        if self._index is None:
            self._index = FaissIndex.create(
                dim=len(vectors[0]), metric=self.metric.name
            )
        self._index.add(row_ids, vectors)
        self._mark_dirty()

    def _delete(self, ids: Sequence[str]) -> int:
        connection = self._open()
        placeholders = ",".join("?" for _ in ids)
        rows = connection.execute(
            "SELECT row_id FROM documents "
            f"WHERE doc_id IN ({placeholders})",  # noqa: S608
            tuple(ids),
        ).fetchall()
        if not rows:
            return 0
        row_ids = [row["row_id"] for row in rows]
        with connection:
            connection.execute(
                f"DELETE FROM documents WHERE doc_id IN ({placeholders})",  # noqa: S608
                tuple(ids),
            )
        if self._index is not None:
            self._index.remove(row_ids)
            self._mark_dirty()
        return len(row_ids)

    def _query(self, vector: EmbeddingVector, k: int) -> list[tuple[str, float]]:
        connection = self._open()
        if self._index is None:
            return []
        hits = self._index.search(vector, k=k)
        if not hits:
            return []
        placeholders = ",".join("?" for _ in hits)
        rows = connection.execute(
            "SELECT row_id, doc_id FROM documents "
            f"WHERE row_id IN ({placeholders})",  # noqa: S608
            tuple(row_id for row_id, _ in hits),
        ).fetchall()
        lookup = {row["row_id"]: row["doc_id"] for row in rows}
        return [
            (lookup[row_id], self.metric.similarity(distance))
            for row_id, distance in hits
            if row_id in lookup
        ]

    def _fetch(self, ids: Sequence[str]) -> list[VectorRecord]:
        if not ids:
            return []
        connection = self._open()
        placeholders = ",".join("?" for _ in ids)
        rows = connection.execute(
            "SELECT doc_id, content, metadata, vector FROM documents "
            f"WHERE doc_id IN ({placeholders})",  # noqa: S608
            tuple(ids),
        ).fetchall()
        by_id = {
            row["doc_id"]: VectorRecord(
                id=row["doc_id"],
                content=row["content"],
                metadata=json.loads(row["metadata"]),
                embedding=_decode_vector(row["vector"]),
            )
            for row in rows
        }
        return [by_id[doc_id] for doc_id in ids if doc_id in by_id]

    def _clear(self) -> None:
        connection = self._open()
        with connection:
            connection.execute("DELETE FROM documents")
        self._index = None
        self._dirty = False
        with index_writer_lock(self.index_path, timeout=self._lock_timeout):
            self.index_path.unlink(missing_ok=True)
            sidecar_path_for_index(self.index_path).unlink(missing_ok=True)

    def _size_bytes(self) -> int | None:
        total = 0
        for path in (self.index_path, self.db_path):
            if path.exists():
                total += path.stat().st_size
        return total


def _encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype="float32").tobytes()


def _decode_vector(blob: bytes) -> EmbeddingVector:
    return tuple(float(value) for value in np.frombuffer(blob, dtype="float32"))
