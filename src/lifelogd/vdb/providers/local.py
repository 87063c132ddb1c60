"""In-process embedding providers: sentence-transformers and token hashing."""

from __future__ import annotations

import hashlib
import math
import re
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from lifelogd.core.logging import Logger, get_logger
from lifelogd.vdb.errors import (
    VdbProviderConfigurationError,
    VdbProviderDimMismatchError,
)

from . import (
    BaseEmbeddingProvider,
    EmbeddingMatrix,
    MetadataSeq,
    ProviderInitContext,
)

__all__ = [
    "HashingEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider",
    "hashing_provider_factory",
    "sentence_transformer_provider_factory",
]

DEFAULT_ST_MODEL = "all-MiniLM-L6-v2"
DEFAULT_ST_DIMENSION = 384
DEFAULT_HASH_DIMENSION = 256

_TOKEN_RE = re.compile(r"[a-z0-9']+")


class HashingEmbeddingProvider(BaseEmbeddingProvider):
    """Deterministic bag-of-words embedding via the hashing trick.

    Each token is hashed into one of ``dimension`` buckets with a signed,
    log-scaled term frequency; the result is L2-normalized. No model download
    is needed, which makes it the last-resort fallback.

    Example:
        >>> provider = HashingEmbeddingProvider(dimension=16)
        >>> left = provider.embed_single("coffee with sam")
        >>> left == provider.embed_single("coffee with sam")
        True
    """

    def __init__(self, *, dimension: int = DEFAULT_HASH_DIMENSION) -> None:
        if dimension < 2:
            raise ValueError("dimension must be >= 2")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"hashing:{self._dimension}"

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "big")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self._dimension, sign

    def _vectorize(self, text: str) -> tuple[float, ...]:
        vector = np.zeros(self._dimension, dtype="float64")
        counts = Counter(_TOKEN_RE.findall(text.lower()))
        for token, count in counts.items():
            index, sign = self._bucket(token)
            vector[index] += sign * (1.0 + math.log(count))
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return tuple(float(value) for value in vector)

    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        return tuple(self._vectorize(text) for text in texts)


class SentenceTransformerEmbeddingProvider(BaseEmbeddingProvider):
    """Local transformer model loaded through ``sentence-transformers``.

    The model is loaded on :meth:`initialize` (or lazily on first use) and
    produces normalized, mean-pooled sentence embeddings.
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_ST_MODEL,
        dimension: int | None = None,
        batch_size: int = 32,
        cache_folder: Path | None = None,
        device: str | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._model_id = model
        self._dimension = dimension
        self._batch_size = batch_size
        self._cache_folder = cache_folder
        self._device = device
        self.logger = logger or get_logger(__name__, provider="sentence-transformers")
        self._model: Any = None
        self._load_lock = threading.Lock()

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            if self._model is None and self._model_id == DEFAULT_ST_MODEL:
                return DEFAULT_ST_DIMENSION
            self._dimension = int(self.model.get_sentence_embedding_dimension())
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"sentence-transformers:{self._model_id}"

    @property
    def model(self) -> Any:
        if self._model is None:
            self.initialize()
        return self._model

    def initialize(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:
                raise VdbProviderConfigurationError(
                    "sentence-transformers is not installed; install the "
                    "'local-embeddings' extra",
                    provider="sentence-transformers",
                    model=self._model_id,
                ) from exc

            self.logger.info("embedding-model-loading", model=self._model_id)
            self._model = SentenceTransformer(
                self._model_id,
                cache_folder=str(self._cache_folder) if self._cache_folder else None,
                device=self._device,
            )
            loaded_dim = int(self._model.get_sentence_embedding_dimension())
            if self._dimension is not None and loaded_dim != self._dimension:
                raise VdbProviderDimMismatchError(
                    "Configured dimension does not match the loaded model.",
                    provider="sentence-transformers",
                    model=self._model_id,
                    expected=self._dimension,
                    actual=loaded_dim,
                )
            self._dimension = loaded_dim
            self.logger.info(
                "embedding-model-loaded", model=self._model_id, dimension=loaded_dim
            )

    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()
        vectors = self.model.encode(
            list(texts),
            batch_size=self._batch_size,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return tuple(
            tuple(float(value) for value in row) for row in np.asarray(vectors)
        )

    def close(self) -> None:
        self._model = None


def hashing_provider_factory(
    context: ProviderInitContext,
) -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider(
        dimension=int(context.option("dimension", DEFAULT_HASH_DIMENSION)),
    )


def sentence_transformer_provider_factory(
    context: ProviderInitContext,
) -> SentenceTransformerEmbeddingProvider:
    cache_folder = context.option("cache_folder")
    return SentenceTransformerEmbeddingProvider(
        model=str(context.option("model", DEFAULT_ST_MODEL)),
        batch_size=int(context.option("batch_size", 32)),
        cache_folder=Path(cache_folder) if cache_folder else None,
        logger=context.logger,
    )
