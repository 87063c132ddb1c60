"""Typed error hierarchy for embedding providers and vector indexes."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "DocumentNotFoundError",
    "VdbProviderConfigurationError",
    "VdbProviderDimMismatchError",
    "VdbProviderError",
    "VdbProviderRateLimitError",
    "VdbProviderRequestError",
    "VdbProviderRetryExceededError",
    "VdbProviderRetryableError",
    "VdbProviderUnavailableError",
    "VectorDimensionMismatchError",
    "VectorIndexError",
]


@dataclass(slots=True)
class VdbProviderError(RuntimeError):
    """Base error raised by embedding providers."""

    message: str
    provider: str
    model: str
    request_id: str | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class VdbProviderConfigurationError(VdbProviderError):
    """Raised when the provider configuration is invalid."""


@dataclass(slots=True)
class VdbProviderUnavailableError(VdbProviderError):
    """Raised when a provider's back-end cannot be reached or lacks the model."""


@dataclass(slots=True)
class VdbProviderRequestError(VdbProviderError):
    """Raised for non-retryable request errors."""


@dataclass(slots=True)
class VdbProviderRetryableError(VdbProviderError):
    """Raised for retryable transport or server-side errors."""


@dataclass(slots=True)
class VdbProviderRateLimitError(VdbProviderRetryableError):
    """Raised when the provider returns a rate limiting response."""


@dataclass(slots=True)
class VdbProviderRetryExceededError(VdbProviderError):
    """Raised when retry attempts are exhausted."""

    attempts: int = 0


@dataclass(slots=True)
class VdbProviderDimMismatchError(VdbProviderError):
    """Raised when the provider returns vectors with unexpected dimension."""

    expected: int | None = None
    actual: int | None = None


class VectorIndexError(RuntimeError):
    """Base error raised by vector index back-ends."""


class DocumentNotFoundError(VectorIndexError, KeyError):
    """Raised when an operation targets an id the index does not hold."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id!r}")
        self.document_id = document_id

    def __str__(self) -> str:
        return self.args[0]


class VectorDimensionMismatchError(VectorIndexError):
    """Raised when a vector does not match the index dimension."""

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Vector dimensionality mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual
