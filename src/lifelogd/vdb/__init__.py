"""Vector indexing: embedding providers and interchangeable index back-ends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from lifelogd.core.config import IndexBackend, IndexSettings
from lifelogd.core.logging import Logger
from lifelogd.core.paths import WorkspacePaths

from .base import BaseVectorIndex, VectorIndex
from .errors import (
    DocumentNotFoundError,
    VdbProviderConfigurationError,
    VdbProviderDimMismatchError,
    VdbProviderError,
    VdbProviderRateLimitError,
    VdbProviderRequestError,
    VdbProviderRetryExceededError,
    VdbProviderRetryableError,
    VdbProviderUnavailableError,
    VectorDimensionMismatchError,
    VectorIndexError,
)
from .memory_index import InMemoryVectorIndex
from .models import (
    IndexStats,
    SearchOptions,
    SearchResult,
    VectorRecord,
    matches_filter,
)
from .providers import EmbeddingProvider

__all__ = [
    "BaseVectorIndex",
    "ChromaVectorIndex",
    "DocumentNotFoundError",
    "FaissVectorIndex",
    "InMemoryVectorIndex",
    "IndexStats",
    "SearchOptions",
    "SearchResult",
    "VdbProviderConfigurationError",
    "VdbProviderDimMismatchError",
    "VdbProviderError",
    "VdbProviderRateLimitError",
    "VdbProviderRequestError",
    "VdbProviderRetryExceededError",
    "VdbProviderRetryableError",
    "VdbProviderUnavailableError",
    "VectorDimensionMismatchError",
    "VectorIndex",
    "VectorIndexError",
    "VectorRecord",
    "create_vector_index",
    "matches_filter",
]

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .chroma_index import ChromaVectorIndex
    from .faiss_index import FaissVectorIndex


_LAZY_EXPORTS = {
    "ChromaVectorIndex": "chroma_index",
    "FaissVectorIndex": "faiss_index",
}


def __getattr__(name: str) -> object:
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        message = f"module {__name__!r} has no attribute {name!r}"
        raise AttributeError(message)

    from importlib import import_module

    module = import_module(f"{__name__}.{module_name}")
    return getattr(module, name)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})


def create_vector_index(
    settings: IndexSettings,
    provider: EmbeddingProvider,
    paths: WorkspacePaths,
    *,
    logger: Logger | None = None,
) -> BaseVectorIndex:
    """Instantiate the back-end selected by ``settings.backend``."""

    if settings.backend is IndexBackend.MEMORY:
        return InMemoryVectorIndex(provider, logger=logger)
    if settings.backend is IndexBackend.CHROMA:
        from .chroma_index import ChromaVectorIndex

        return ChromaVectorIndex(
            provider,
            collection=settings.collection,
            host=settings.chroma_host,
            port=settings.chroma_port,
            ssl=settings.chroma_ssl,
            logger=logger,
        )

    from .faiss_index import FaissVectorIndex

    return FaissVectorIndex(
        provider,
        index_dir=paths.index_dir,
        collection=settings.collection,
        metric=settings.metric,
        logger=logger,
    )
