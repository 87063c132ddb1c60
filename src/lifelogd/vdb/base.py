"""Vector index contract and the pipeline shared by every back-end."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import (
    Any,
    ClassVar,
    Iterable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from lifelogd.core.logging import Logger, get_logger

from .errors import DocumentNotFoundError, VectorDimensionMismatchError
from .models import (
    IndexStats,
    SearchOptions,
    SearchResult,
    VectorRecord,
    matches_filter,
)
from .providers import EmbeddingProvider, EmbeddingVector, Initializable

__all__ = [
    "BaseVectorIndex",
    "VectorIndex",
    "clamp_score",
]


@runtime_checkable
class VectorIndex(Initializable, Protocol):
    """Boundary contract for vector index back-ends."""

    provider: EmbeddingProvider

    def add_documents(self, records: Sequence[VectorRecord]) -> int: ...

    def update_document(
        self,
        document_id: str,
        *,
        content: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        embedding: Sequence[float] | None = None,
    ) -> None: ...

    def delete_documents(self, ids: Iterable[str]) -> int: ...

    def search_by_text(
        self, query: str, options: SearchOptions | None = None
    ) -> list[SearchResult]: ...

    def search_by_vector(
        self, vector: Sequence[float], options: SearchOptions | None = None
    ) -> list[SearchResult]: ...

    def get_document(self, document_id: str) -> VectorRecord | None: ...

    def get_documents(self, ids: Iterable[str]) -> list[VectorRecord]: ...

    def list_document_ids(self) -> set[str]: ...

    def get_stats(self) -> IndexStats: ...

    def clear(self) -> None: ...

    def flush(self) -> None: ...


class BaseVectorIndex(VectorIndex, ABC):
    """Shared add/update/search pipeline over back-end primitives.

    Subclasses store vectors and documents; this class owns deduplication,
    embedding of missing vectors, dimension checks, score thresholding and
    result hydration. Writes are serialized by a per-instance ``RLock``.

    Scores returned by :meth:`_query` are already similarities in ``[0, 1]``
    where higher is closer.
    """

    backend: ClassVar[str] = "abstract"

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        logger: Logger | None = None,
    ) -> None:
        self.provider = provider
        self.logger = logger or get_logger(
            __name__, component="vdb", backend=self.backend
        )
        self._lock = threading.RLock()
        self._last_updated: datetime | None = None

    # ------------------------------------------------------------------#
    # Back-end primitives
    # ------------------------------------------------------------------#
    @abstractmethod
    def _existing_ids(self) -> set[str]:
        """Return every stored id without loading documents."""

    @abstractmethod
    def _insert(self, records: Sequence[VectorRecord]) -> None:
        """Store ``records``; each carries an embedding."""

    @abstractmethod
    def _delete(self, ids: Sequence[str]) -> int:
        """Delete ``ids`` and return how many were removed."""

    @abstractmethod
    def _query(self, vector: EmbeddingVector, k: int) -> list[tuple[str, float]]:
        """Return up to ``k`` ``(id, similarity)`` pairs, best first."""

    @abstractmethod
    def _fetch(self, ids: Sequence[str]) -> list[VectorRecord]:
        """Load stored records for ``ids`` (unknown ids are skipped)."""

    @abstractmethod
    def _clear(self) -> None:
        """Remove every document."""

    @property
    @abstractmethod
    def stored_dimension(self) -> int | None:
        """Width of vectors already in the index, if any."""

    def _size_bytes(self) -> int | None:
        return None

    # ------------------------------------------------------------------#
    # Lifecycle
    # ------------------------------------------------------------------#
    def initialize(self) -> None:
        self.provider.initialize()

    def flush(self) -> None:
        """Persist derived on-disk state; a no-op for back-ends without any."""

        return None

    def close(self) -> None:
        return None

    @property
    def dimension(self) -> int:
        return self.stored_dimension or self.provider.dimension

    # ------------------------------------------------------------------#
    # Writes
    # ------------------------------------------------------------------#
    def _check_dimension(self, record: VectorRecord) -> None:
        assert record.embedding is not None
        expected = self.dimension
        if len(record.embedding) != expected:
            raise VectorDimensionMismatchError(
                expected=expected, actual=len(record.embedding)
            )

    def _embed_missing(self, records: Sequence[VectorRecord]) -> list[VectorRecord]:
        pending = [record for record in records if record.embedding is None]
        if not pending:
            return list(records)
        vectors = self.provider.embed(
            [record.content for record in pending],
            metadata=[record.metadata for record in pending],
        )
        embedded = iter(
            record.with_embedding(vector) for record, vector in zip(pending, vectors)
        )
        return [
            next(embedded) if record.embedding is None else record
            for record in records
        ]

    def add_documents(self, records: Sequence[VectorRecord]) -> int:
        """Insert records whose ids are not yet indexed; returns count added."""

        with self._lock:
            existing = self._existing_ids()
            fresh: dict[str, VectorRecord] = {}
            for record in records:
                if record.id in existing or record.id in fresh:
                    continue
                fresh[record.id] = record
            skipped = len(records) - len(fresh)
            if not fresh:
                self.logger.debug("vdb-add-skipped", duplicates=skipped)
                return 0

            prepared = self._embed_missing(list(fresh.values()))
            for record in prepared:
                self._check_dimension(record)
            self._insert(prepared)
            self._last_updated = datetime.now(timezone.utc)
            self.logger.info(
                "vdb-documents-added", added=len(prepared), duplicates=skipped
            )
            return len(prepared)

    def update_document(
        self,
        document_id: str,
        *,
        content: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        embedding: Sequence[float] | None = None,
    ) -> None:
        """Merge changes into ``document_id`` and re-store it.

        Raises:
            DocumentNotFoundError: If the id is not indexed.
        """

        with self._lock:
            found = self._fetch([document_id])
            if not found:
                raise DocumentNotFoundError(document_id)
            current = found[0]

            merged_metadata = dict(current.metadata)
            if metadata:
                merged_metadata.update(metadata)
            new_content = current.content if content is None else content

            if embedding is not None:
                vector: EmbeddingVector | None = tuple(float(v) for v in embedding)
            elif new_content != current.content or current.embedding is None:
                vector = self.provider.embed_single(
                    new_content, metadata=merged_metadata
                )
            else:
                vector = current.embedding

            updated = VectorRecord(
                id=document_id,
                content=new_content,
                metadata=merged_metadata,
                embedding=vector,
            )
            self._check_dimension(updated)
            self._delete([document_id])
            self._insert([updated])
            self._last_updated = datetime.now(timezone.utc)

    def delete_documents(self, ids: Iterable[str]) -> int:
        targets = list(dict.fromkeys(ids))
        if not targets:
            return 0
        with self._lock:
            removed = self._delete(targets)
            if removed:
                self._last_updated = datetime.now(timezone.utc)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._clear()
            self._last_updated = datetime.now(timezone.utc)
            self.logger.info("vdb-cleared")

    # ------------------------------------------------------------------#
    # Reads
    # ------------------------------------------------------------------#
    def search_by_text(
        self, query: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        try:
            vector = self.provider.embed_query(query)
        except Exception as exc:
            self.logger.error(
                "vdb-search-failed",
                stage="embed-query",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return []
        return self.search_by_vector(vector, options)

    def search_by_vector(
        self, vector: Sequence[float], options: SearchOptions | None = None
    ) -> list[SearchResult]:
        """Nearest neighbours of ``vector``; failures yield an empty list."""

        options = options or SearchOptions()
        try:
            with self._lock:
                query = tuple(float(value) for value in vector)
                if not self._existing_ids():
                    return []
                stored = self.stored_dimension
                if stored is not None and len(query) != stored:
                    raise VectorDimensionMismatchError(
                        expected=stored, actual=len(query)
                    )
                candidates = self._query(query, options.candidate_count)
                if options.score_threshold is not None:
                    candidates = [
                        (doc_id, score)
                        for doc_id, score in candidates
                        if score >= options.score_threshold
                    ]
                candidates.sort(key=lambda item: item[1], reverse=True)
                return self._hydrate(candidates, options)
        except Exception as exc:
            self.logger.error(
                "vdb-search-failed",
                stage="query",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return []

    def _hydrate(
        self,
        candidates: Sequence[tuple[str, float]],
        options: SearchOptions,
    ) -> list[SearchResult]:
        need_records = (
            options.include_content or options.include_metadata or options.filter
        )
        records: dict[str, VectorRecord] = {}
        if need_records and candidates:
            records = {
                record.id: record
                for record in self._fetch([doc_id for doc_id, _ in candidates])
            }

        results: list[SearchResult] = []
        for doc_id, score in candidates:
            record = records.get(doc_id)
            if options.filter and (
                record is None or not matches_filter(record.metadata, options.filter)
            ):
                continue
            results.append(
                SearchResult(
                    id=doc_id,
                    score=score,
                    content=record.content
                    if record and options.include_content
                    else None,
                    metadata=dict(record.metadata)
                    if record and options.include_metadata
                    else None,
                )
            )
            if len(results) >= options.limit:
                break
        return results

    def get_document(self, document_id: str) -> VectorRecord | None:
        found = self.get_documents([document_id])
        return found[0] if found else None

    def get_documents(self, ids: Iterable[str]) -> list[VectorRecord]:
        with self._lock:
            return self._fetch(list(dict.fromkeys(ids)))

    def list_document_ids(self) -> set[str]:
        with self._lock:
            return set(self._existing_ids())

    def get_stats(self) -> IndexStats:
        with self._lock:
            return IndexStats(
                document_count=len(self._existing_ids()),
                dimension=self.stored_dimension or self.provider.dimension,
                model_name=self.provider.model_name,
                backend=self.backend,
                index_size_bytes=self._size_bytes(),
                last_updated=self._last_updated,
            )


def clamp_score(value: float) -> float:
    """Clamp a similarity into ``[0, 1]``."""

    return min(1.0, max(0.0, float(value)))
