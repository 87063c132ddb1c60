"""Tests for :mod:`lifelogd.vdb.faiss_index`."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

pytest.importorskip("faiss")

from lifelogd.vdb import SearchOptions, VectorRecord  # noqa: E402
from lifelogd.vdb.faiss_index import (  # noqa: E402
    FaissIndex,
    FaissIndexMetric,
    FaissIndexValidationError,
    FaissVectorIndex,
    load_index_artifacts,
    persist_index_artifacts,
    sidecar_path_for_index,
)
from lifelogd.vdb.providers import HashingEmbeddingProvider  # noqa: E402

BUILT_AT = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


def _open(index_dir: Path, *, metric: str = "l2") -> FaissVectorIndex:
    index = FaissVectorIndex(
        HashingEmbeddingProvider(dimension=32),
        index_dir=index_dir,
        collection="lifelogs",
        metric=metric,
        lock_timeout=1.0,
    )
    index.initialize()
    return index


def _records() -> list[VectorRecord]:
    return [
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


def test_wrapper_add_search_and_remove() -> None:
    index = FaissIndex.create(dim=3, metric="cosine")
    assert isinstance(index.metric, FaissIndexMetric)
    index.add(
        [10, 20, 30],
        [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 2.0]],
    )

    hits = index.search([2.0, 0.0, 0.0], k=2)

    assert index.size == 3
    assert hits[0][0] == 10
    assert hits[0][1] == pytest.approx(1.0, rel=1e-6)
    assert index.remove([20, 99]) == 1
    assert index.size == 2
    with pytest.raises(ValueError):
        index.search([1.0, 0.0, 0.0], k=0)


def test_metric_similarity_maps_distances_into_unit_range() -> None:
    l2 = FaissIndexMetric.from_name("euclidean")
    cosine = FaissIndexMetric.from_name("COSINE")

    assert l2.name == "l2"
    assert l2.similarity(0.0) == 1.0
    assert 0.0 < l2.similarity(2.0) < 1.0
    assert cosine.similarity(1.2) == 1.0
    assert cosine.similarity(-0.5) == 0.0
    with pytest.raises(ValueError):
        FaissIndexMetric.from_name("manhattan")


def test_artifacts_round_trip_and_detect_tampering(tmp_path: Path) -> None:
    index = FaissIndex.create(dim=2, metric="l2")
    index.add([1, 2], [[0.0, 1.0], [1.0, 0.0]])
    index_path = tmp_path / "test.faiss"

    sidecar = persist_index_artifacts(
        index, index_path=index_path, model_name="hashing:2", built_at=BUILT_AT
    )
    loaded, loaded_sidecar = load_index_artifacts(
        index_path=index_path, expected_dim=2, expected_metric="l2"
    )

    assert loaded.size == 2
    assert loaded_sidecar == sidecar
    payload = json.loads(sidecar_path_for_index(index_path).read_text())
    assert payload["built_at"] == "2024-01-20T12:00:00Z"
    assert payload["vector_count"] == 2

    with pytest.raises(FaissIndexValidationError) as excinfo:
        load_index_artifacts(index_path=index_path, expected_dim=3)
    assert excinfo.value.field == "dim"

    index_path.write_bytes(index_path.read_bytes() + b"\x00")
    with pytest.raises(FaissIndexValidationError) as excinfo:
        load_index_artifacts(index_path=index_path)
    assert excinfo.value.field == "checksum"


def test_documents_survive_reopen(tmp_path: Path) -> None:
    index = _open(tmp_path)
    assert index.add_documents(_records()) == 2
    index.close()

    reopened = _open(tmp_path)
    results = reopened.search_by_text("coffee with sam at the corner cafe")

    assert reopened.list_document_ids() == {"coffee", "standup"}
    assert results[0].id == "coffee"
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    assert results[0].metadata == {"title": "Coffee", "headings": ["Morning"]}
    assert reopened.add_documents(_records()) == 0
    reopened.close()


def test_missing_artifact_is_rebuilt_from_documents(tmp_path: Path) -> None:
    index = _open(tmp_path)
    index.add_documents(_records())
    index.close()

    index.index_path.unlink()
    sidecar_path_for_index(index.index_path).unlink()

    reopened = _open(tmp_path)

    assert reopened.index_path.exists()
    results = reopened.search_by_text("daily standup about the release plan")
    assert results[0].id == "standup"
    reopened.close()


def test_cosine_scores_and_threshold(tmp_path: Path) -> None:
    index = _open(tmp_path, metric="cosine")
    index.add_documents(_records())

    results = index.search_by_text(
        "coffee with sam at the corner cafe",
        SearchOptions(score_threshold=0.9),
    )

    assert [result.id for result in results] == ["coffee"]
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    index.close()


def test_delete_update_and_clear(tmp_path: Path) -> None:
    index = _open(tmp_path)
    index.add_documents(_records())

    index.update_document("standup", metadata={"team": "core"})
    updated = index.get_document("standup")
    assert updated is not None
    assert updated.metadata == {"title": "Standup", "team": "core"}
    assert index.get_stats().document_count == 2

    assert index.delete_documents(["coffee"]) == 1
    results = index.search_by_text("coffee with sam at the corner cafe")
    assert [result.id for result in results] == ["standup"]

    stats = index.get_stats()
    assert stats.backend == "faiss"
    assert stats.dimension == 32
    assert stats.index_size_bytes and stats.index_size_bytes > 0

    index.clear()
    assert index.list_document_ids() == set()
    assert not index.index_path.exists()
    assert index.search_by_text("coffee") == []
    index.close()


def test_artifact_is_written_on_flush_and_rebuilt_after_missed_writes(
    tmp_path: Path,
) -> None:
    index = _open(tmp_path)
    sidecar_path = sidecar_path_for_index(index.index_path)
    coffee, standup = _records()

    index.add_documents([coffee])
    assert not index.index_path.exists()

    index.flush()
    assert json.loads(sidecar_path.read_text())["vector_count"] == 1

    index.add_documents([standup])
    assert not sidecar_path.exists()

    # A second handle stands in for a restart after the writer died unflushed.
    restarted = _open(tmp_path)
    assert json.loads(sidecar_path.read_text())["vector_count"] == 2
    results = restarted.search_by_text("daily standup about the release plan")
    assert results[0].id == "standup"
    restarted.close()

    index.close()
    loaded, sidecar = load_index_artifacts(index_path=index.index_path)
    assert loaded.size == sidecar.vector_count == 2
