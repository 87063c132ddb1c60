"""Remote lifelog API facade and the canonical :class:`Lifelog` record."""

from __future__ import annotations

from .client import IngestionClient
from .errors import (
    IngestError,
    MissingApiKeyError,
    RemoteApiError,
    RemoteResponseFormatError,
    RemoteTimeoutError,
)
from .models import Lifelog, format_timestamp, parse_timestamp

__all__ = [
    "IngestError",
    "IngestionClient",
    "Lifelog",
    "MissingApiKeyError",
    "RemoteApiError",
    "RemoteResponseFormatError",
    "RemoteTimeoutError",
    "format_timestamp",
    "parse_timestamp",
]
