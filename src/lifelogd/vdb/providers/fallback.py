"""Composite provider that degrades to a secondary on primary failure."""

from __future__ import annotations

import threading
from typing import Any, Mapping, Sequence

from lifelogd.core.logging import Logger, get_logger

from . import (
    EmbeddingMatrix,
    EmbeddingProvider,
    EmbeddingVector,
    MetadataSeq,
)

__all__ = ["FallbackProvider"]


class FallbackProvider(EmbeddingProvider):
    """Route calls to ``primary`` until it fails, then to ``secondary``.

    Any exception from the primary during :meth:`initialize` or an embed call
    logs a warning and retries the call on the secondary. With ``sticky``
    (the default) the switch is permanent for the life of the instance so
    vectors from two models never end up in one index.

    ``dimension`` and ``model_name`` always describe the active provider.
    """

    def __init__(
        self,
        primary: EmbeddingProvider,
        secondary: EmbeddingProvider,
        *,
        sticky: bool = True,
        logger: Logger | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.sticky = sticky
        self.logger = logger or get_logger(__name__, provider="fallback")
        self._using_secondary = False
        self._secondary_ready = False
        self._lock = threading.Lock()

    @property
    def active(self) -> EmbeddingProvider:
        return self.secondary if self._using_secondary else self.primary

    @property
    def using_fallback(self) -> bool:
        return self._using_secondary

    @property
    def dimension(self) -> int:
        return self.active.dimension

    @property
    def model_name(self) -> str:
        return self.active.model_name

    def initialize(self) -> None:
        if self._using_secondary:
            self._ensure_secondary()
            return
        try:
            self.primary.initialize()
        except Exception as exc:
            self._switch(exc, operation="initialize")

    def close(self) -> None:
        self.primary.close()
        self.secondary.close()

    def _ensure_secondary(self) -> None:
        if not self._secondary_ready:
            self.secondary.initialize()
            self._secondary_ready = True

    def _switch(self, exc: Exception, *, operation: str) -> None:
        with self._lock:
            if not self._using_secondary:
                self.logger.warning(
                    "embedding-fallback-activated",
                    primary=self.primary.model_name,
                    secondary=self.secondary.model_name,
                    operation=operation,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
            self._using_secondary = True
            self._ensure_secondary()

    def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        if not self._using_secondary:
            try:
                return getattr(self.primary, operation)(*args, **kwargs)
            except Exception as exc:
                self._switch(exc, operation=operation)
                if not self.sticky:
                    try:
                        return getattr(self.secondary, operation)(*args, **kwargs)
                    finally:
                        self._using_secondary = False
        else:
            self._ensure_secondary()
        return getattr(self.secondary, operation)(*args, **kwargs)

    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        return self._call("embed", texts, metadata=metadata)

    def embed_single(
        self,
        text: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> EmbeddingVector:
        return self._call("embed_single", text, metadata=metadata)

    def embed_query(self, query: str) -> EmbeddingVector:
        return self._call("embed_query", query)
