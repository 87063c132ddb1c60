"""Core utilities shared across :mod:`lifelogd` packages.

The core namespace provides configuration loading, logging setup, workspace
path resolution, lock files and atomic writes so feature packages stay thin.

Example:
    >>> from lifelogd.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .atomic import atomic_write_bytes, atomic_write_json, atomic_write_text
from .config import AppConfig, load_config
from .locks import FileLock, LockError, LockTimeoutError
from .logging import configure_logging, get_logger
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "FileLock",
    "LockError",
    "LockTimeoutError",
    "WorkspacePaths",
    "atomic_write_bytes",
    "atomic_write_json",
    "atomic_write_text",
    "configure_logging",
    "get_logger",
    "load_config",
    "resolve_workspace",
]
