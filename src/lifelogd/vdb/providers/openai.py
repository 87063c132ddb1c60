"""OpenAI embeddings provider implementation."""

from __future__ import annotations

import os
import random
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import httpx
import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from lifelogd.core.logging import Logger, get_logger
from lifelogd.vdb.errors import (
    VdbProviderConfigurationError,
    VdbProviderDimMismatchError,
    VdbProviderError,
    VdbProviderRateLimitError,
    VdbProviderRequestError,
    VdbProviderRetryExceededError,
    VdbProviderRetryableError,
)

from . import (
    BaseEmbeddingProvider,
    EmbeddingMatrix,
    EmbeddingVector,
    MetadataSeq,
    ProviderInitContext,
)

__all__ = [
    "OpenAIEmbeddingsProvider",
    "openai_provider_factory",
]

DEFAULT_MODEL = "text-embedding-3-small"

_DEFAULT_TIMEOUT = 30.0
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2
_MAX_ATTEMPTS = 5


@dataclass(frozen=True, slots=True)
class _OpenAIModelMetadata:
    name: str
    dim: int
    max_batch_size: int
    max_input_tokens: int


_OPENAI_MODELS: Mapping[str, _OpenAIModelMetadata] = {
    "text-embedding-3-small": _OpenAIModelMetadata(
        name="text-embedding-3-small",
        dim=1_536,
        max_batch_size=128,
        max_input_tokens=8_191,
    ),
    "text-embedding-3-large": _OpenAIModelMetadata(
        name="text-embedding-3-large",
        dim=3_072,
        max_batch_size=64,
        max_input_tokens=8_191,
    ),
    "text-embedding-ada-002": _OpenAIModelMetadata(
        name="text-embedding-ada-002",
        dim=1_536,
        max_batch_size=128,
        max_input_tokens=8_191,
    ),
}


def _resolve_timeout(config: Mapping[str, object] | None) -> float:
    raw_env = os.environ.get("OPENAI_TIMEOUT_SECONDS")
    raw_config = None
    if config:
        candidate = config.get("timeout")
        if isinstance(candidate, (float, int)):
            raw_config = float(candidate)
    value = raw_env or raw_config
    if value is None:
        return _DEFAULT_TIMEOUT
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(
            "OPENAI_TIMEOUT_SECONDS must be a number when provided.",
        ) from exc
    if parsed <= 0:
        raise ValueError("OPENAI_TIMEOUT_SECONDS must be positive.")
    return parsed


class OpenAIEmbeddingsProvider(BaseEmbeddingProvider):
    """Embed texts via the OpenAI embeddings API.

    Inputs above the model's token cap are truncated with ``tiktoken``
    rather than rejected, so a long recording still gets a vector.
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        logger: Logger | None = None,
        config: Mapping[str, object] | None = None,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
        rng: random.Random | None = None,
    ) -> None:
        name = model.strip()
        if not name:
            raise ValueError("model cannot be blank")
        self._model = name
        self.logger = logger or get_logger(__name__, provider="openai")
        self._config = dict(config or {})
        self._sleep = sleep
        self._now = now
        self._rng = rng or random.Random()
        self._metadata = _OPENAI_MODELS.get(name)
        self._observed_dim: int | None = None
        self._stats = {"requests": 0, "retries": 0, "failures": 0}
        self._client = client
        self._encoding: tiktoken.Encoding | None = None

    @property
    def stats(self) -> Mapping[str, int]:
        """Return counters captured during the provider lifetime."""

        return dict(self._stats)

    # ------------------------------------------------------------------#
    # Provider interface
    # ------------------------------------------------------------------#
    @property
    def dimension(self) -> int:
        if self._metadata is not None:
            return self._metadata.dim
        if self._observed_dim is None:
            self._observed_dim = len(self.embed_single("dimension probe"))
        return self._observed_dim

    @property
    def model_name(self) -> str:
        return f"openai:{self._model}"

    def initialize(self) -> None:
        if self._client is None:
            self._client = self._build_client()

    def close(self) -> None:
        if self._client is not None:
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

        batch_size = self._metadata.max_batch_size if self._metadata else 128
        token_limit = self._metadata.max_input_tokens if self._metadata else 8_191
        configured = self._config.get("max_input_tokens")
        if isinstance(configured, int) and configured > 0:
            token_limit = min(token_limit, configured)

        prepared = [
            self._truncate(self._normalize_text(text), token_limit)
            for text in texts
        ]

        results: list[EmbeddingVector] = []
        for offset in range(0, len(prepared), batch_size):
            batch = prepared[offset : offset + batch_size]
            for vector in self._invoke_with_retries(batch):
                self._check_dimension(len(vector))
                results.append(tuple(float(value) for value in vector))
        return tuple(results)

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _build_client(self) -> OpenAI:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise VdbProviderConfigurationError(
                "OPENAI_API_KEY must be set to use the OpenAI provider.",
                provider="openai",
                model=self._model,
            )
        return OpenAI(
            api_key=api_key,
            base_url=os.environ.get("OPENAI_BASE_URL"),
            organization=os.environ.get("OPENAI_ORG_ID"),
            timeout=_resolve_timeout(self._config),
        )

    def _check_dimension(self, actual: int) -> None:
        expected = self._metadata.dim if self._metadata else self._observed_dim
        if expected is None:
            self._observed_dim = actual
            return
        if actual != expected:
            raise VdbProviderDimMismatchError(
                "Embedding dimension mismatch in OpenAI response.",
                provider="openai",
                model=self._model,
                expected=expected,
                actual=actual,
            )

    def _get_encoding(self) -> tiktoken.Encoding:
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self._model)
            except KeyError:
                self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def _truncate(self, text: str, token_limit: int) -> str:
        encoding = self._get_encoding()
        tokens = encoding.encode(text)
        if len(tokens) <= token_limit:
            return text
        self.logger.warning(
            "openai-input-truncated",
            model=self._model,
            token_count=len(tokens),
            limit=token_limit,
        )
        return encoding.decode(tokens[:token_limit])

    @staticmethod
    def _normalize_text(text: str) -> str:
        normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
        return normalized or " "

    def _invoke_with_retries(self, batch: Sequence[str]) -> list[list[float]]:
        attempts = 0
        assert self._client is not None

        while attempts < _MAX_ATTEMPTS:
            attempts += 1
            start = self._now()
            try:
                response = self._client.embeddings.create(
                    model=self._model,
                    input=list(batch),
                )
            except Exception as exc:
                retryable = self._is_retryable(exc)
                status, request_id = self._extract_context(exc)
                if not (retryable and attempts < _MAX_ATTEMPTS):
                    self._stats["failures"] += 1
                    raise self._translate_exception(
                        exc,
                        attempts=attempts,
                        model=self._model,
                        status=status,
                        request_id=request_id,
                    ) from exc

                delay = self._compute_backoff(attempt=attempts, rng=self._rng)
                self.logger.warning(
                    "openai-embed-retry",
                    model=self._model,
                    attempt=attempts,
                    max_attempts=_MAX_ATTEMPTS,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=status,
                    request_id=request_id,
                )
                self._stats["retries"] += 1
                self._sleep(delay)
                continue

            self._stats["requests"] += 1
            self.logger.debug(
                "openai-embed-request",
                model=self._model,
                batch_size=len(batch),
                latency=self._now() - start,
                attempts=attempts,
            )
            return [list(item.embedding) for item in response.data]

        raise VdbProviderRetryExceededError(
            "Failed to embed texts after multiple attempts.",
            provider="openai",
            model=self._model,
            attempts=attempts,
        )

    @staticmethod
    def _compute_backoff(*, attempt: int, rng: random.Random) -> float:
        base = _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 1))
        base = min(base, _BACKOFF_CAP)
        jitter = 1.0 + rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
        return round(base * jitter, 2)

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            status, _ = OpenAIEmbeddingsProvider._extract_context(exc)
            return status is not None and status >= 500
        return False

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None

        status_value = getattr(exc, "status_code", None)
        if isinstance(status_value, int):
            status = status_value
        value = getattr(exc, "request_id", None)
        if isinstance(value, str):
            request_id = value
        return status, request_id

    @staticmethod
    def _translate_exception(
        exc: Exception,
        *,
        attempts: int,
        model: str,
        status: int | None,
        request_id: str | None,
    ) -> VdbProviderError:
        message = str(exc) or exc.__class__.__name__
        context = {
            "provider": "openai",
            "model": model,
            "status_code": status,
            "request_id": request_id,
        }
        if attempts >= _MAX_ATTEMPTS:
            return VdbProviderRetryExceededError(
                "Exceeded retry attempts when calling OpenAI embeddings API.",
                attempts=attempts,
                **context,
            )
        if isinstance(exc, RateLimitError):
            return VdbProviderRateLimitError(message, **context)
        if isinstance(exc, (APITimeoutError, APIConnectionError, httpx.HTTPError)):
            return VdbProviderRetryableError(message, **context)
        return VdbProviderRequestError(message, **context)


def openai_provider_factory(
    context: ProviderInitContext,
) -> OpenAIEmbeddingsProvider:
    """Factory registered with the provider registry."""

    return OpenAIEmbeddingsProvider(
        model=str(context.option("model", DEFAULT_MODEL)),
        logger=context.logger,
        config=context.config,
    )
