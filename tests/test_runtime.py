"""Tests for :mod:`lifelogd.runtime`."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from lifelogd.cache import QueryClassification, Strategy
from lifelogd.core.config import (
    ApiSettings,
    AppConfig,
    EmbeddingSettings,
    IndexSettings,
)
from lifelogd.core.paths import WorkspacePaths
from lifelogd.ingest import IngestionClient, MissingApiKeyError
from lifelogd.runtime import build_embedding_provider, build_runtime, format_results
from lifelogd.vdb import InMemoryVectorIndex, SearchResult, VectorRecord
from lifelogd.vdb.providers.contextual import ContextualEmbeddingProvider
from lifelogd.vdb.providers.fallback import FallbackProvider
from lifelogd.vdb.providers.local import HashingEmbeddingProvider


def _config(workspace: Path, **embeddings: object) -> AppConfig:
    settings = {"provider": "hashing", "fallback": None, "contextual": False}
    settings.update(embeddings)
    return AppConfig(
        workspace=workspace,
        embeddings=EmbeddingSettings(**settings),
        index=IndexSettings(backend="memory"),
    )


def test_provider_chain_wraps_fallback_then_context() -> None:
    provider = build_embedding_provider(
        EmbeddingSettings(
            provider="sentence-transformers", fallback="hashing", contextual=True
        )
    )

    assert isinstance(provider, ContextualEmbeddingProvider)
    assert isinstance(provider.inner, FallbackProvider)
    assert isinstance(provider.inner.secondary, HashingEmbeddingProvider)


def test_provider_chain_skips_same_fallback_and_context() -> None:
    provider = build_embedding_provider(
        EmbeddingSettings(provider="hashing", fallback="hashing", contextual=False)
    )

    assert isinstance(provider, HashingEmbeddingProvider)


def test_runtime_searches_index_through_learning_cache(tmp_path: Path) -> None:
    paths = WorkspacePaths.for_root(tmp_path / "workspace")
    runtime = build_runtime(_config(paths.workspace), paths)

    assert isinstance(runtime.index, InMemoryVectorIndex)
    runtime.ensure_index().add_documents(
        [
            VectorRecord(
                id="coffee",
                content="coffee with sam",
                metadata={"title": "Coffee", "date": "2024-01-15T09:00:00Z"},
            ),
            VectorRecord(id="walk", content="evening walk in the park"),
        ]
    )

    first = runtime.search("coffee with sam")
    second = runtime.search("coffee with sam")

    assert first.from_cache is False
    assert first.strategy is Strategy.VECTOR
    assert first.results[0].id == "coffee"
    assert second.from_cache is True
    assert second.results == first.results

    runtime.close()
    assert paths.patterns_file.exists()


def test_runtime_runs_learning_cache_sweeper_until_closed(tmp_path: Path) -> None:
    paths = WorkspacePaths.for_root(tmp_path / "workspace")
    runtime = build_runtime(_config(paths.workspace), paths)

    assert runtime.learning.sweeping

    runtime.close()
    assert not runtime.learning.sweeping


def test_fast_strategy_uses_remote_search(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "lifelogs": [
                        {
                            "id": "remote-1",
                            "title": "Budget sync",
                            "markdown": "Talked about the budget",
                            "startTime": "2024-01-15T09:00:00Z",
                        }
                    ]
                }
            },
        )

    settings = ApiSettings(base_url="https://api.test/v1", api_key="secret")
    client = IngestionClient(
        settings=settings,
        http_client=httpx.Client(
            base_url=settings.base_url, transport=httpx.MockTransport(handler)
        ),
    )
    paths = WorkspacePaths.for_root(tmp_path / "workspace")
    runtime = build_runtime(
        _config(paths.workspace),
        paths,
        client=client,
        classifier=lambda query: QueryClassification(
            query_type="keyword", suggested_strategy=Strategy.FAST
        ),
    )

    with runtime:
        outcome = runtime.search("budget", limit=3)

    assert outcome.strategy is Strategy.FAST
    assert [result.id for result in outcome.results] == ["remote-1"]
    assert outcome.results[0].metadata is not None
    assert outcome.results[0].metadata["title"] == "Budget sync"


def test_client_requires_api_key(tmp_path: Path) -> None:
    paths = WorkspacePaths.for_root(tmp_path / "workspace")
    runtime = build_runtime(_config(paths.workspace), paths)

    with pytest.raises(MissingApiKeyError):
        runtime.create_engine()
    runtime.close()


def test_format_results_rounds_scores() -> None:
    rows = format_results(
        [
            SearchResult(
                id="a", score=0.123456, metadata={"title": "A", "date": "2024"}
            ),
            SearchResult(id="b", score=1.0),
        ]
    )

    assert rows == [
        {"id": "a", "score": 0.1235, "title": "A", "date": "2024"},
        {"id": "b", "score": 1.0, "title": None, "date": None},
    ]
