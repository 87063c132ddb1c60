"""Ollama daemon embedding provider."""

from __future__ import annotations

import os
import threading
from typing import Any, Mapping, Sequence

import httpx

from lifelogd.core.logging import Logger, get_logger
from lifelogd.vdb.errors import (
    VdbProviderDimMismatchError,
    VdbProviderRequestError,
    VdbProviderRetryableError,
    VdbProviderUnavailableError,
)

from . import (
    BaseEmbeddingProvider,
    EmbeddingMatrix,
    EmbeddingVector,
    MetadataSeq,
    ProviderInitContext,
)

__all__ = [
    "DEFAULT_OLLAMA_BASE_URL",
    "OllamaEmbeddingProvider",
    "ollama_model_dimension",
    "ollama_provider_factory",
]

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
_DEFAULT_DIMENSION = 768
_PULL_TIMEOUT = 600.0

_MODEL_DIMENSIONS: Mapping[str, int] = {
    "nomic-embed-text": 768,
    "nomic-embed-text-v1.5": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "all-minilm:v2": 384,
    "bge-small": 384,
    "bge-base": 768,
    "bge-large": 1024,
}


def ollama_model_dimension(model: str) -> int:
    """Return the known output width for ``model``.

    Example:
        >>> ollama_model_dimension("mxbai-embed-large")
        1024
        >>> ollama_model_dimension("something-new")
        768
    """

    return _MODEL_DIMENSIONS.get(model, _DEFAULT_DIMENSION)


class OllamaEmbeddingProvider(BaseEmbeddingProvider):
    """Embed texts through a local Ollama daemon.

    :meth:`initialize` checks the daemon's model list and pulls the model
    when it is missing. Ollama has no batch endpoint, so :meth:`embed` issues
    one request per text.
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_OLLAMA_MODEL,
        base_url: str | None = None,
        timeout: float = 30.0,
        batch_size: int = 10,
        http_client: httpx.Client | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._model = model
        self._base_url = (
            base_url or os.environ.get("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL
        ).rstrip("/")
        self._dimension = ollama_model_dimension(model)
        self._batch_size = max(1, batch_size)
        self.logger = logger or get_logger(__name__, provider="ollama")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )
        self._initialized = False
        self._init_lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return f"ollama:{self._model}"

    @property
    def base_url(self) -> str:
        return self._base_url

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            self.logger.info(
                "ollama-initializing", model=self._model, base_url=self._base_url
            )
            available = self._list_models()
            if not any(
                name == self._model or name.startswith(f"{self._model}:")
                for name in available
            ):
                self.logger.warning(
                    "ollama-model-missing", model=self._model, available=available
                )
                self._pull_model()
            self._initialized = True
            self.logger.info(
                "ollama-initialized", model=self._model, dimension=self._dimension
            )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        if not texts:
            return ()
        self.initialize()

        vectors: list[EmbeddingVector] = []
        for offset in range(0, len(texts), self._batch_size):
            batch = texts[offset : offset + self._batch_size]
            vectors.extend(self._embed_one(text) for text in batch)
            if len(texts) > self._batch_size:
                self.logger.debug(
                    "ollama-embed-progress",
                    done=min(offset + self._batch_size, len(texts)),
                    total=len(texts),
                )
        return tuple(vectors)

    # ------------------------------------------------------------------#
    # HTTP helpers
    # ------------------------------------------------------------------#
    def _post(
        self, path: str, payload: Mapping[str, Any], *, timeout: float | None = None
    ) -> Mapping[str, Any]:
        try:
            if timeout is None:
                response = self._client.post(path, json=dict(payload))
            else:
                response = self._client.post(path, json=dict(payload), timeout=timeout)
        except httpx.TimeoutException as exc:
            raise VdbProviderRetryableError(
                f"Ollama request to {path} timed out",
                provider="ollama",
                model=self._model,
            ) from exc
        except httpx.TransportError as exc:
            raise VdbProviderUnavailableError(
                f"Ollama is not reachable at {self._base_url}: {exc}",
                provider="ollama",
                model=self._model,
            ) from exc
        return self._decode(path, response)

    def _decode(self, path: str, response: httpx.Response) -> Mapping[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, Mapping) else None
        if response.status_code >= 500:
            raise VdbProviderRetryableError(
                str(error or f"Ollama {path} returned {response.status_code}"),
                provider="ollama",
                model=self._model,
                status_code=response.status_code,
            )
        if response.status_code >= 400 or error:
            raise VdbProviderRequestError(
                str(error or f"Ollama {path} returned {response.status_code}"),
                provider="ollama",
                model=self._model,
                status_code=response.status_code,
            )
        if not isinstance(body, Mapping):
            raise VdbProviderRequestError(
                f"Unexpected Ollama {path} response",
                provider="ollama",
                model=self._model,
            )
        return body

    def _list_models(self) -> list[str]:
        try:
            response = self._client.get("/api/tags")
        except httpx.HTTPError as exc:
            raise VdbProviderUnavailableError(
                f"Ollama is not reachable at {self._base_url}: {exc}",
                provider="ollama",
                model=self._model,
            ) from exc
        body = self._decode("/api/tags", response)
        return [
            str(entry.get("name", ""))
            for entry in body.get("models") or ()
            if isinstance(entry, Mapping)
        ]

    def _pull_model(self) -> None:
        self.logger.info("ollama-model-pull", model=self._model)
        try:
            self._post(
                "/api/pull",
                {"name": self._model, "stream": False},
                timeout=_PULL_TIMEOUT,
            )
        except VdbProviderRequestError as exc:
            raise VdbProviderUnavailableError(
                f"Failed to pull Ollama model {self._model}: {exc.message}",
                provider="ollama",
                model=self._model,
                status_code=exc.status_code,
            ) from exc
        self.logger.info("ollama-model-pulled", model=self._model)

    def _embed_one(self, text: str) -> EmbeddingVector:
        body = self._post("/api/embeddings", {"model": self._model, "prompt": text})
        embedding = body.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise VdbProviderRequestError(
                "Invalid embedding response from Ollama",
                provider="ollama",
                model=self._model,
            )
        if len(embedding) != self._dimension:
            if self._model in _MODEL_DIMENSIONS:
                raise VdbProviderDimMismatchError(
                    "Embedding dimension mismatch in Ollama response.",
                    provider="ollama",
                    model=self._model,
                    expected=self._dimension,
                    actual=len(embedding),
                )
            # Unknown model: trust the daemon and remember its width.
            self._dimension = len(embedding)
        return tuple(float(value) for value in embedding)


def ollama_provider_factory(
    context: ProviderInitContext,
) -> OllamaEmbeddingProvider:
    return OllamaEmbeddingProvider(
        model=str(context.option("model", DEFAULT_OLLAMA_MODEL)),
        base_url=context.option("base_url"),
        timeout=float(context.option("timeout", 30.0)),
        batch_size=int(context.option("batch_size", 10)),
        logger=context.logger,
    )
