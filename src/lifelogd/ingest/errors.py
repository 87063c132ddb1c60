"""Typed error hierarchy for the remote lifelog API client."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "IngestError",
    "MissingApiKeyError",
    "RemoteApiError",
    "RemoteResponseFormatError",
    "RemoteTimeoutError",
]


@dataclass(slots=True)
class IngestError(RuntimeError):
    """Base error raised by the ingestion client."""

    message: str

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class MissingApiKeyError(IngestError):
    """Raised when no API key is configured."""


@dataclass(slots=True)
class RemoteApiError(IngestError):
    """Raised when the remote API answers with an error status."""

    status_code: int | None = None
    code: str | None = None

    @property
    def retryable(self) -> bool:
        status = self.status_code
        return status is None or status == 429 or status >= 500


@dataclass(slots=True)
class RemoteTimeoutError(RemoteApiError):
    """Raised when a request times out after exhausting retries."""

    def __post_init__(self) -> None:
        if self.status_code is None:
            self.status_code = 408
        if self.code is None:
            self.code = "TIMEOUT"
        IngestError.__post_init__(self)


@dataclass(slots=True)
class RemoteResponseFormatError(RemoteApiError):
    """Raised when a response body does not match any known shape."""

    @property
    def retryable(self) -> bool:
        return False
