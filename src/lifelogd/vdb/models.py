"""Value objects shared by vector index back-ends."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

__all__ = [
    "IndexStats",
    "SearchOptions",
    "SearchResult",
    "VectorRecord",
    "matches_filter",
]

EmbeddingVector = tuple[float, ...]


@dataclass(frozen=True, slots=True)
class VectorRecord:
    """A document to index; ``embedding`` may be omitted and filled on insert.

    Example:
        >>> record = VectorRecord(id="a", content="hello")
        >>> record.with_embedding([1, 0]).embedding
        (1.0, 0.0)
    """

    id: str
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    embedding: EmbeddingVector | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("document id cannot be empty")
        object.__setattr__(self, "metadata", dict(self.metadata))
        if self.embedding is not None:
            object.__setattr__(
                self,
                "embedding",
                tuple(float(value) for value in self.embedding),
            )

    def with_embedding(self, embedding: Any) -> "VectorRecord":
        return replace(self, embedding=tuple(float(v) for v in embedding))


@dataclass(frozen=True, slots=True)
class SearchOptions:
    """Tuning knobs for nearest-neighbour queries."""

    limit: int = 10
    filter: Mapping[str, Any] | None = None
    score_threshold: float | None = None
    include_content: bool = True
    include_metadata: bool = True

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.score_threshold is not None and not (
            0.0 <= self.score_threshold <= 1.0
        ):
            raise ValueError("score_threshold must be within [0, 1]")

    @property
    def candidate_count(self) -> int:
        """Neighbours fetched before threshold filtering."""

        return self.limit * 2


@dataclass(frozen=True, slots=True)
class SearchResult:
    id: str
    score: float
    content: str | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class IndexStats:
    document_count: int
    dimension: int | None
    model_name: str
    backend: str
    index_size_bytes: int | None = None
    last_updated: datetime | None = None


def matches_filter(
    metadata: Mapping[str, Any],
    criteria: Mapping[str, Any] | None,
) -> bool:
    """Return whether ``metadata`` equals every key/value in ``criteria``.

    Example:
        >>> matches_filter({"title": "a", "duration": 5}, {"title": "a"})
        True
    """

    if not criteria:
        return True
    return all(metadata.get(key) == value for key, value in criteria.items())
