"""Volatile in-process vector index."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from lifelogd.core.logging import Logger

from .base import BaseVectorIndex, clamp_score
from .models import VectorRecord
from .providers import EmbeddingProvider, EmbeddingVector

__all__ = ["InMemoryVectorIndex"]


class InMemoryVectorIndex(BaseVectorIndex):
    """Dictionary-backed index with brute-force cosine search.

    Scores are ``1 - cosine_distance`` clamped into ``[0, 1]``. Nothing is
    persisted; the index is empty after a restart.
    """

    backend = "memory"

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(provider, logger=logger)
        self._records: dict[str, VectorRecord] = {}

    @property
    def stored_dimension(self) -> int | None:
        for record in self._records.values():
            assert record.embedding is not None
            return len(record.embedding)
        return None

    def _existing_ids(self) -> set[str]:
        return set(self._records)

    def _insert(self, records: Sequence[VectorRecord]) -> None:
        for record in records:
            self._records[record.id] = record

    def _delete(self, ids: Sequence[str]) -> int:
        removed = 0
        for doc_id in ids:
            if self._records.pop(doc_id, None) is not None:
                removed += 1
        return removed

    def _fetch(self, ids: Sequence[str]) -> list[VectorRecord]:
        return [self._records[doc_id] for doc_id in ids if doc_id in self._records]

    def _clear(self) -> None:
        self._records.clear()

    def _query(self, vector: EmbeddingVector, k: int) -> list[tuple[str, float]]:
        ids = list(self._records)
        matrix = np.asarray(
            [self._records[doc_id].embedding for doc_id in ids], dtype="float64"
        )
        query = np.asarray(vector, dtype="float64")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarity = np.where(norms > 0, matrix @ query / norms, 0.0)
        distance = 1.0 - similarity
        order = np.argsort(distance)[:k]
        return [(ids[index], clamp_score(1.0 - distance[index])) for index in order]
