"""Errors raised by the sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "CheckpointLoadError",
    "CheckpointPersistenceError",
    "SyncAlreadyRunningError",
    "SyncError",
]


@dataclass(slots=True)
class SyncError(RuntimeError):
    """Base error for sync engine failures."""

    message: str

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class CheckpointPersistenceError(SyncError):
    """Raised when the checkpoint cannot be written; halts the engine."""

    path: Path | None = None


@dataclass(slots=True)
class CheckpointLoadError(SyncError):
    """Raised when an existing checkpoint file is unreadable or invalid."""

    path: Path | None = None


@dataclass(slots=True)
class SyncAlreadyRunningError(SyncError):
    """Raised when another engine owns the data directory."""

    lock_path: Path | None = None
