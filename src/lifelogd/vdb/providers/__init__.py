"""Embedding provider abstractions and registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from lifelogd.core.logging import Logger

__all__ = [
    "BaseEmbeddingProvider",
    "EmbeddingMatrix",
    "EmbeddingProvider",
    "EmbeddingVector",
    "Initializable",
    "ProviderFactory",
    "ProviderInitContext",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "create_default_provider_registry",
    "register_builtin_providers",
    "ContextualEmbeddingProvider",
    "EntityConfig",
    "FallbackProvider",
    "HashingEmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingsProvider",
    "SentenceTransformerEmbeddingProvider",
]

# Embedding vector aliases keep typing concise across provider implementations.
EmbeddingVector = tuple[float, ...]
EmbeddingMatrix = tuple[EmbeddingVector, ...]
MetadataSeq = Sequence[Mapping[str, Any] | None]


@runtime_checkable
class Initializable(Protocol):
    """Optional lifecycle shared by providers and indexes.

    Both hooks default to no-ops so callers can invoke them unconditionally.
    """

    def initialize(self) -> None:
        return None

    def close(self) -> None:
        return None


@runtime_checkable
class EmbeddingProvider(Initializable, Protocol):
    """Boundary contract for embedding providers."""

    @property
    def dimension(self) -> int:
        """Length of every vector the provider returns."""

    @property
    def model_name(self) -> str:
        """Stable identifier of the active model, e.g. ``ollama:nomic``."""

    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        """Embed ``texts``; ``metadata`` aligns index-wise when supplied."""

    def embed_single(
        self,
        text: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> EmbeddingVector:
        """Embed one document."""

    def embed_query(self, query: str) -> EmbeddingVector:
        """Embed a search query (may differ from document embedding)."""


class BaseEmbeddingProvider(EmbeddingProvider, ABC):
    """Convenience base deriving the single-item calls from :meth:`embed`."""

    @abstractmethod
    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        raise NotImplementedError

    def embed_single(
        self,
        text: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> EmbeddingVector:
        vectors = self.embed([text], metadata=[metadata] if metadata else None)
        return vectors[0]

    def embed_query(self, query: str) -> EmbeddingVector:
        return self.embed_single(query)


@dataclass(frozen=True, slots=True)
class ProviderInitContext:
    """Construction context supplied to provider factories."""

    logger: Logger
    config: Mapping[str, object] | None = None

    def __post_init__(self) -> None:
        config = dict(self.config or {})
        object.__setattr__(self, "config", MappingProxyType(config))

    def option(self, key: str, default: Any = None) -> Any:
        assert self.config is not None
        value = self.config.get(key)
        return default if value is None else value


ProviderFactory = Callable[[ProviderInitContext], EmbeddingProvider]
"""Factory callable responsible for instantiating providers."""


class ProviderRegistryError(RuntimeError):
    """Base error type raised when interacting with the provider registry."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when a provider lookup fails for the requested key."""


class ProviderRegistry:
    """Mutable registry mapping provider keys to factory callables.

    Example:
        >>> registry = create_default_provider_registry()
        >>> sorted(registry.snapshot())
        ['hashing', 'ollama', 'openai', 'sentence-transformers']
    """

    def __init__(
        self,
        factories: Mapping[str, ProviderFactory] | None = None,
    ) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        if factories:
            for key, factory in factories.items():
                self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: ProviderFactory) -> None:
        """Register ``factory`` under ``key``; errors if key already present."""

        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def unregister(self, key: str) -> None:
        self._factories.pop(self._normalize_key(key), None)

    def get_factory(self, key: str) -> ProviderFactory:
        normalized = self._normalize_key(key)
        try:
            return self._factories[normalized]
        except KeyError as exc:
            raise ProviderNotRegisteredError(
                f"No provider registered under key {normalized!r}",
            ) from exc

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        config: Mapping[str, object] | None = None,
    ) -> EmbeddingProvider:
        """Instantiate the provider registered under ``key``."""

        factory = self.get_factory(key)
        return factory(ProviderInitContext(logger=logger, config=config))

    def snapshot(self) -> Mapping[str, ProviderFactory]:
        return MappingProxyType(dict(self._factories))


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .contextual import ContextualEmbeddingProvider, EntityConfig
    from .fallback import FallbackProvider
    from .local import (
        HashingEmbeddingProvider,
        SentenceTransformerEmbeddingProvider,
    )
    from .ollama import OllamaEmbeddingProvider
    from .openai import OpenAIEmbeddingsProvider


_LAZY_EXPORTS = {
    "ContextualEmbeddingProvider": "contextual",
    "EntityConfig": "contextual",
    "FallbackProvider": "fallback",
    "HashingEmbeddingProvider": "local",
    "SentenceTransformerEmbeddingProvider": "local",
    "OllamaEmbeddingProvider": "ollama",
    "OpenAIEmbeddingsProvider": "openai",
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


def _hashing_factory(context: ProviderInitContext) -> EmbeddingProvider:
    from .local import hashing_provider_factory

    return hashing_provider_factory(context)


def _sentence_transformers_factory(
    context: ProviderInitContext,
) -> EmbeddingProvider:
    from .local import sentence_transformer_provider_factory

    return sentence_transformer_provider_factory(context)


def _ollama_factory(context: ProviderInitContext) -> EmbeddingProvider:
    from .ollama import ollama_provider_factory

    return ollama_provider_factory(context)


def _openai_factory(context: ProviderInitContext) -> EmbeddingProvider:
    from .openai import openai_provider_factory

    return openai_provider_factory(context)


def register_builtin_providers(
    registry: ProviderRegistry,
) -> ProviderRegistry:
    """Register built-in embedding providers on ``registry``.

    Factories import their modules lazily so optional SDKs are only loaded
    when the provider is actually selected.
    """

    builtins: dict[str, ProviderFactory] = {
        "hashing": _hashing_factory,
        "sentence-transformers": _sentence_transformers_factory,
        "ollama": _ollama_factory,
        "openai": _openai_factory,
    }
    existing = registry.snapshot()
    for key, factory in builtins.items():
        if key not in existing:
            registry.register(key, factory)
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    """Return a provider registry populated with built-in providers."""

    registry = ProviderRegistry()
    register_builtin_providers(registry)
    return registry
