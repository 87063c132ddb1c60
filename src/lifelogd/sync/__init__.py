"""Checkpointed synchronization of the remote lifelog API."""

from __future__ import annotations

from .checkpoint import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointStore,
    DateSet,
    ErrorEntry,
    SyncCheckpoint,
    SyncPhase,
    SyncProgress,
)
from .engine import LifelogSource, SyncEngine
from .errors import (
    CheckpointLoadError,
    CheckpointPersistenceError,
    SyncAlreadyRunningError,
    SyncError,
)

__all__ = [
    "CHECKPOINT_SCHEMA_VERSION",
    "CheckpointLoadError",
    "CheckpointPersistenceError",
    "CheckpointStore",
    "DateSet",
    "ErrorEntry",
    "LifelogSource",
    "SyncAlreadyRunningError",
    "SyncCheckpoint",
    "SyncEngine",
    "SyncError",
    "SyncPhase",
    "SyncProgress",
]
