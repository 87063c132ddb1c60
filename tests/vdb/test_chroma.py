"""Tests for :mod:`lifelogd.vdb.chroma_index` against an in-process fake."""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
import pytest

from lifelogd.vdb import SearchOptions, VectorRecord
from lifelogd.vdb.chroma_index import (
    ChromaVectorIndex,
    decode_metadata,
    encode_metadata,
)
from lifelogd.vdb.providers import HashingEmbeddingProvider


class _FakeCollection:
    """Minimal cosine-space collection mimicking the Chroma client API."""

    def __init__(self, name: str, metadata: dict[str, Any] | None) -> None:
        self.name = name
        self.metadata = metadata
        self.rows: dict[str, dict[str, Any]] = {}

    def count(self) -> int:
        return len(self.rows)

    def add(
        self,
        *,
        ids: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        documents: Sequence[str],
        metadatas: Sequence[dict[str, Any]],
    ) -> None:
        for doc_id, embedding, document, metadata in zip(
            ids, embeddings, documents, metadatas
        ):
            assert all(
                isinstance(value, (str, int, float, bool))
                for value in metadata.values()
            )
            self.rows[doc_id] = {
                "embedding": list(embedding),
                "document": document,
                "metadata": dict(metadata),
            }

    def get(
        self,
        *,
        ids: Sequence[str] | None = None,
        limit: int | None = None,
        include: Sequence[str] = (),
    ) -> dict[str, Any]:
        selected = [
            doc_id for doc_id in (ids if ids is not None else self.rows)
            if doc_id in self.rows
        ]
        if limit is not None:
            selected = selected[:limit]
        result: dict[str, Any] = {"ids": selected}
        for field, column in (
            ("embeddings", "embedding"),
            ("documents", "document"),
            ("metadatas", "metadata"),
        ):
            result[field] = (
                [self.rows[doc_id][column] for doc_id in selected]
                if field in include
                else None
            )
        return result

    def delete(self, *, ids: Sequence[str]) -> None:
        for doc_id in ids:
            self.rows.pop(doc_id, None)

    def query(
        self,
        *,
        query_embeddings: Sequence[Sequence[float]],
        n_results: int,
        include: Sequence[str],
    ) -> dict[str, Any]:
        query = np.asarray(query_embeddings[0])
        scored = []
        for doc_id, row in self.rows.items():
            vector = np.asarray(row["embedding"])
            denominator = np.linalg.norm(vector) * np.linalg.norm(query)
            similarity = float(vector @ query / denominator) if denominator else 0.0
            scored.append((1.0 - similarity, doc_id))
        scored.sort()
        top = scored[:n_results]
        return {
            "ids": [[doc_id for _, doc_id in top]],
            "distances": [[distance for distance, _ in top]],
        }


class _FakeClient:
    def __init__(self) -> None:
        self.collections: dict[str, _FakeCollection] = {}
        self.deleted: list[str] = []

    def get_or_create_collection(
        self, *, name: str, metadata: dict[str, Any] | None = None
    ) -> _FakeCollection:
        if name not in self.collections:
            self.collections[name] = _FakeCollection(name, metadata)
        return self.collections[name]

    def delete_collection(self, *, name: str) -> None:
        self.deleted.append(name)
        self.collections.pop(name, None)


def _index(client: _FakeClient) -> ChromaVectorIndex:
    index = ChromaVectorIndex(
        HashingEmbeddingProvider(dimension=32),
        collection="lifelogs",
        client=client,
    )
    index.initialize()
    return index


def test_metadata_is_flattened_and_restored() -> None:
    metadata = {"title": "Lunch", "duration": 30, "headings": ["Food", "Plans"]}

    encoded = encode_metadata(metadata)

    assert encoded["title"] == "Lunch"
    assert encoded["duration"] == 30
    assert "headings" not in encoded
    assert decode_metadata(encoded) == metadata
    assert decode_metadata(None) == {}
    assert decode_metadata({"title": "bare"}) == {"title": "bare"}


def test_initialize_creates_cosine_collection() -> None:
    client = _FakeClient()

    _index(client)

    assert client.collections["lifelogs"].metadata == {"hnsw:space": "cosine"}


def test_add_search_and_fetch_round_trip() -> None:
    client = _FakeClient()
    index = _index(client)

    added = index.add_documents(
        [
            VectorRecord(
                id="coffee",
                content="coffee with sam at the corner cafe",
                metadata={"title": "Coffee", "headings": ["Morning"]},
            ),
            VectorRecord(
                id="standup",
                content="daily standup about the release plan",
                metadata={"title": "Standup"},
            ),
        ]
    )
    results = index.search_by_text(
        "coffee with sam at the corner cafe", SearchOptions(score_threshold=0.5)
    )

    assert added == 2
    assert [result.id for result in results] == ["coffee"]
    assert results[0].score == pytest.approx(1.0)
    assert results[0].metadata == {"title": "Coffee", "headings": ["Morning"]}
    assert index.stored_dimension == 32
    record = index.get_document("standup")
    assert record is not None
    assert record.content == "daily standup about the release plan"


def test_delete_and_clear_recreate_collection() -> None:
    client = _FakeClient()
    index = _index(client)
    index.add_documents(
        [
            VectorRecord(id="a", content="alpha"),
            VectorRecord(id="b", content="beta"),
        ]
    )

    assert index.delete_documents(["a", "missing"]) == 1
    assert index.list_document_ids() == {"b"}

    index.clear()

    assert client.deleted == ["lifelogs"]
    assert index.list_document_ids() == set()
    assert index.search_by_text("beta") == []
    assert index.get_stats().backend == "chroma"
