"""Durable file storage for mirrored lifelogs and their embeddings."""

from __future__ import annotations

from .files import LifelogStore, LifelogStoreError, StorageStats, StoredEmbedding

__all__ = [
    "LifelogStore",
    "LifelogStoreError",
    "StorageStats",
    "StoredEmbedding",
]
