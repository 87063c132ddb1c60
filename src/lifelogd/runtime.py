"""Wiring from :class:`AppConfig` to concrete, injectable services.

Every long-lived object (caches, API client, store, embedding provider,
vector index, sync engine) is built here exactly once and handed to its
consumers explicitly. :meth:`Runtime.close` releases them in reverse order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from lifelogd.cache import (
    CacheRegistry,
    LearningCache,
    QueryClassification,
    QueryOutcome,
    Strategy,
)
from lifelogd.core.config import AppConfig, EmbeddingSettings
from lifelogd.core.logging import Logger, get_logger
from lifelogd.core.paths import WorkspacePaths
from lifelogd.ingest import IngestionClient
from lifelogd.storage import LifelogStore
from lifelogd.sync import CheckpointStore, SyncEngine
from lifelogd.vdb import (
    BaseVectorIndex,
    SearchOptions,
    SearchResult,
    create_vector_index,
)
from lifelogd.vdb.providers import (
    EmbeddingProvider,
    ProviderRegistry,
    create_default_provider_registry,
)

__all__ = [
    "Runtime",
    "build_embedding_provider",
    "build_runtime",
    "default_classifier",
    "format_results",
]

Classifier = Callable[[str], QueryClassification]


def default_classifier(query: str) -> QueryClassification:
    """Route every query to semantic search.

    Hosts plug in their own classifier; this one keeps the CLI usable.

    Example:
        >>> default_classifier("coffee with Sam").suggested_strategy.value
        'vector'
    """

    return QueryClassification(
        query_type="search",
        suggested_strategy=Strategy.VECTOR,
        confidence=0.5,
    )


def build_embedding_provider(
    settings: EmbeddingSettings,
    *,
    registry: ProviderRegistry | None = None,
    logger: Logger | None = None,
) -> EmbeddingProvider:
    """Create the configured provider chain.

    The primary provider is optionally paired with a fallback and the result
    optionally wrapped with contextual enrichment, in that order.
    """

    from lifelogd.vdb.providers.contextual import ContextualEmbeddingProvider
    from lifelogd.vdb.providers.fallback import FallbackProvider

    log = logger or get_logger(__name__, component="embeddings")
    registry = registry or create_default_provider_registry()
    shared: dict[str, object] = {
        "base_url": settings.ollama_base_url,
        "timeout": settings.timeout,
        "batch_size": settings.batch_size,
    }

    provider = registry.create(
        settings.provider.value,
        logger=log.bind(provider=settings.provider.value),
        config={**shared, "model": settings.model},
    )
    if settings.fallback is not None and settings.fallback != settings.provider:
        secondary = registry.create(
            settings.fallback.value,
            logger=log.bind(provider=settings.fallback.value),
            config=shared,
        )
        provider = FallbackProvider(
            provider, secondary, logger=log.bind(provider="fallback")
        )

    if settings.contextual:
        provider = ContextualEmbeddingProvider(
            provider,
            entity_config_path=settings.entity_config,
            max_length=settings.max_context_length,
            logger=log.bind(provider="contextual"),
        )

    log.debug(
        "embedding-provider-built",
        provider=settings.provider.value,
        fallback=settings.fallback.value if settings.fallback else None,
        contextual=settings.contextual,
    )
    return provider


@dataclass(slots=True)
class Runtime:
    """Live service graph for one workspace."""

    config: AppConfig
    paths: WorkspacePaths
    caches: CacheRegistry
    learning: LearningCache[list[SearchResult]]
    store: LifelogStore
    provider: EmbeddingProvider
    index: BaseVectorIndex
    logger: Logger
    classifier: Classifier = default_classifier
    _client: IngestionClient | None = field(default=None, repr=False)
    _index_ready: bool = field(default=False, repr=False)

    @property
    def client(self) -> IngestionClient:
        """The API client, created on first use since it needs an API key."""

        if self._client is None:
            self._client = IngestionClient(
                settings=self.config.api,
                caches=self.caches,
                logger=self.logger.bind(component="ingest"),
            )
        return self._client

    def ensure_index(self) -> BaseVectorIndex:
        if not self._index_ready:
            self.index.initialize()
            self._index_ready = True
        return self.index

    def create_engine(self, **overrides: Any) -> SyncEngine:
        """Build a :class:`SyncEngine`; ``overrides`` patch sync settings."""

        settings = self.config.sync
        if overrides:
            settings = settings.model_copy(update=overrides)
        return SyncEngine(
            source=self.client,
            store=self.store,
            index=self.ensure_index(),
            settings=settings,
            checkpoint_store=self.checkpoint_store(),
            lock_path=self.paths.lock_file,
            logger=self.logger.bind(component="sync"),
        )

    def checkpoint_store(self) -> CheckpointStore:
        return CheckpointStore(
            self.paths.checkpoint_file,
            logger=self.logger.bind(component="checkpoint"),
        )

    def search(
        self,
        query: str,
        *,
        limit: int = 10,
        score_threshold: float | None = None,
    ) -> QueryOutcome[list[SearchResult]]:
        """Answer ``query`` through the learning cache.

        ``Strategy.FAST`` is served by the remote substring search; every
        other strategy uses the vector index.
        """

        options = SearchOptions(limit=limit, score_threshold=score_threshold)
        cache_key = query
        if limit != 10 or score_threshold is not None:
            cache_key = f"{query} (limit={limit}, threshold={score_threshold})"

        def run(_: str, strategy: Strategy) -> list[SearchResult]:
            if strategy is Strategy.FAST:
                return self._remote_search(query, limit)
            return self.ensure_index().search_by_text(query, options)

        return self.learning.execute(
            cache_key, lambda _: self.classifier(query), run
        )

    def _remote_search(self, query: str, limit: int) -> list[SearchResult]:
        records = self.client.search_lifelogs(query, limit=limit)
        return [
            SearchResult(
                id=record.id,
                score=1.0,
                content=record.document_text,
                metadata=record.index_metadata(),
            )
            for record in records
        ]

    def close(self) -> None:
        self.learning.stop()
        if self.config.cache.learning_enabled:
            self.learning.save_patterns(self.paths.patterns_file)
        if self._client is not None:
            self._client.close()
            self._client = None
        self.index.close()
        self.provider.close()
        self.caches.clear()
        self.logger.debug("runtime-closed")

    def __enter__(self) -> "Runtime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_runtime(
    config: AppConfig,
    paths: WorkspacePaths,
    *,
    registry: ProviderRegistry | None = None,
    classifier: Classifier | None = None,
    client: IngestionClient | None = None,
    logger: Logger | None = None,
) -> Runtime:
    """Assemble the service graph for ``config`` rooted at ``paths``."""

    log = logger or get_logger(__name__, component="runtime")
    paths.ensure()

    caches = CacheRegistry.from_settings(
        config.cache, logger=log.bind(component="cache")
    )
    learning: LearningCache[list[SearchResult]] = LearningCache(
        max_size=config.cache.learning_max_size,
        ttl=config.cache.learning_ttl,
        learning_enabled=config.cache.learning_enabled,
        pattern_limit=config.cache.pattern_limit,
        sweep_interval=config.cache.sweep_interval,
        logger=log.bind(component="learning-cache"),
    )
    if config.cache.learning_enabled:
        learning.load_patterns(paths.patterns_file)
    learning.start()

    store = LifelogStore(
        lifelogs_dir=paths.lifelogs_dir,
        embeddings_dir=paths.embeddings_dir,
        logger=log.bind(component="storage"),
    )
    provider = build_embedding_provider(
        config.embeddings,
        registry=registry,
        logger=log.bind(component="embeddings"),
    )
    index = create_vector_index(
        config.index,
        provider,
        paths,
        logger=log.bind(component="vdb", backend=config.index.backend.value),
    )

    log.info(
        "runtime-ready",
        workspace=str(paths.workspace),
        index_backend=config.index.backend.value,
        embedding_provider=config.embeddings.provider.value,
    )
    return Runtime(
        config=config,
        paths=paths,
        caches=caches,
        learning=learning,
        store=store,
        provider=provider,
        index=index,
        logger=log,
        classifier=classifier or default_classifier,
        _client=client,
    )


def format_results(results: Sequence[SearchResult]) -> list[dict[str, Any]]:
    """Plain mappings for JSON output."""

    return [
        {
            "id": result.id,
            "score": round(result.score, 4),
            "title": (result.metadata or {}).get("title"),
            "date": (result.metadata or {}).get("date"),
        }
        for result in results
    ]
