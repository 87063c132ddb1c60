"""Server-backed vector index on a Chroma HTTP server."""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from lifelogd.core.logging import Logger

from .base import BaseVectorIndex, clamp_score
from .errors import VectorIndexError
from .models import VectorRecord
from .providers import EmbeddingProvider, EmbeddingVector

__all__ = [
    "ChromaVectorIndex",
    "decode_metadata",
    "encode_metadata",
]

_JSON_KEY = "_json"
_SCALARS = (str, int, float, bool)


def encode_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten ``metadata`` for Chroma, which only stores scalar values.

    The full mapping is kept JSON-encoded under ``_json`` and scalar values
    are copied alongside so server-side ``where`` filters still work.

    Example:
        >>> encode_metadata({"title": "a", "headings": ["x"]})
        {'_json': '{"title": "a", "headings": ["x"]}', 'title': 'a'}
    """

    encoded: dict[str, Any] = {
        _JSON_KEY: json.dumps(dict(metadata), ensure_ascii=False)
    }
    for key, value in metadata.items():
        if isinstance(value, _SCALARS):
            encoded[key] = value
    return encoded


def decode_metadata(stored: Mapping[str, Any] | None) -> dict[str, Any]:
    if not stored:
        return {}
    raw = stored.get(_JSON_KEY)
    if isinstance(raw, str):
        return json.loads(raw)
    return {key: value for key, value in stored.items() if key != _JSON_KEY}


def _column(result: Mapping[str, Any], key: str) -> list[Any]:
    value = result.get(key)
    return [] if value is None else list(value)


class ChromaVectorIndex(BaseVectorIndex):
    """Index stored in a Chroma collection created with ``hnsw:space=cosine``.

    Scores are ``1 - distance`` clamped into ``[0, 1]``.
    """

    backend = "chroma"

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        collection: str = "lifelogs",
        host: str = "localhost",
        port: int = 8000,
        ssl: bool = False,
        client: Any = None,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(provider, logger=logger)
        self.collection_name = collection
        self.host = host
        self.port = port
        self.ssl = ssl
        self._client = client
        self._collection: Any = None

    def _build_client(self) -> Any:
        try:
            import chromadb
            from chromadb.config import Settings
        except ImportError as exc:
            raise VectorIndexError(
                "chromadb is not installed; install the 'chroma' extra"
            ) from exc
        return chromadb.HttpClient(
            host=self.host,
            port=self.port,
            ssl=self.ssl,
            settings=Settings(anonymized_telemetry=False),
        )

    def initialize(self) -> None:
        super().initialize()
        with self._lock:
            self._get_collection()

    def close(self) -> None:
        self._collection = None

    def _get_collection(self) -> Any:
        if self._collection is None:
            if self._client is None:
                self._client = self._build_client()
            self._collection = self._client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
            self.logger.info(
                "chroma-collection-ready",
                collection=self.collection_name,
                host=self.host,
                port=self.port,
            )
        return self._collection

    # ------------------------------------------------------------------#
    # Back-end primitives
    # ------------------------------------------------------------------#
    @property
    def stored_dimension(self) -> int | None:
        with self._lock:
            result = self._get_collection().get(limit=1, include=["embeddings"])
        embeddings = _column(result, "embeddings")
        return len(embeddings[0]) if embeddings else None

    def _existing_ids(self) -> set[str]:
        result = self._get_collection().get(include=[])
        return set(_column(result, "ids"))

    def _insert(self, records: Sequence[VectorRecord]) -> None:
        self._get_collection().add(
            ids=[record.id for record in records],
            embeddings=[list(record.embedding or ()) for record in records],
            documents=[record.content for record in records],
            metadatas=[encode_metadata(record.metadata) for record in records],
        )

    def _delete(self, ids: Sequence[str]) -> int:
        collection = self._get_collection()
        present = _column(collection.get(ids=list(ids), include=[]), "ids")
        if present:
            collection.delete(ids=present)
        return len(present)

    def _query(self, vector: EmbeddingVector, k: int) -> list[tuple[str, float]]:
        collection = self._get_collection()
        count = collection.count()
        if count == 0:
            return []
        result = collection.query(
            query_embeddings=[list(vector)],
            n_results=min(k, count),
            include=["distances"],
        )
        ids = _column(result, "ids")
        distances = _column(result, "distances")
        if not ids:
            return []
        return [
            (doc_id, clamp_score(1.0 - float(distance)))
            for doc_id, distance in zip(ids[0], distances[0])
        ]

    def _fetch(self, ids: Sequence[str]) -> list[VectorRecord]:
        if not ids:
            return []
        result = self._get_collection().get(
            ids=list(ids), include=["documents", "metadatas", "embeddings"]
        )
        found_ids = _column(result, "ids")
        documents = _column(result, "documents")
        metadatas = _column(result, "metadatas")
        embeddings = _column(result, "embeddings")
        by_id: dict[str, VectorRecord] = {}
        for position, doc_id in enumerate(found_ids):
            embedding = embeddings[position] if position < len(embeddings) else None
            by_id[doc_id] = VectorRecord(
                id=doc_id,
                content=documents[position] if position < len(documents) else "",
                metadata=decode_metadata(
                    metadatas[position] if position < len(metadatas) else None
                ),
                embedding=None if embedding is None else tuple(embedding),
            )
        return [by_id[doc_id] for doc_id in ids if doc_id in by_id]

    def _clear(self) -> None:
        self._get_collection()
        self._client.delete_collection(name=self.collection_name)
        self._collection = None
        self._get_collection()
