"""Workspace path helpers for :mod:`lifelogd`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "WorkspacePaths",
    "resolve_workspace",
]

CONFIG_FILENAME = "lifelogd.toml"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> paths = WorkspacePaths.for_root(Path("/tmp/lifelogd"))
        >>> paths.lifelogs_dir.as_posix()
        '/tmp/lifelogd/data/lifelogs'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    data_dir: Path
    lifelogs_dir: Path
    embeddings_dir: Path
    index_dir: Path
    checkpoint_file: Path
    lock_file: Path
    patterns_file: Path

    @classmethod
    def for_root(cls, workspace: Path) -> "WorkspacePaths":
        """Build the canonical layout beneath ``workspace``."""

        data_dir = workspace / "data"
        return cls(
            workspace=workspace,
            config_file=workspace / CONFIG_FILENAME,
            logs_dir=workspace / "logs",
            data_dir=data_dir,
            lifelogs_dir=data_dir / "lifelogs",
            embeddings_dir=data_dir / "embeddings",
            index_dir=data_dir / "index",
            checkpoint_file=data_dir / "sync-checkpoint.json",
            lock_file=data_dir / "sync.lock",
            patterns_file=data_dir / "query-patterns.json",
        )

    def iter_dirs(self) -> Iterable[Path]:
        """Yield every directory managed within the workspace."""

        yield from (
            self.workspace,
            self.logs_dir,
            self.data_dir,
            self.lifelogs_dir,
            self.embeddings_dir,
            self.index_dir,
        )

    def ensure(self) -> None:
        """Create the workspace directories if they are missing."""

        for directory in self.iter_dirs():
            directory.mkdir(parents=True, exist_ok=True)


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    Args:
        workspace_override: Optional override provided by CLI flags.
        env_override: Optional override from environment variables.

    Returns:
        Resolved workspace paths after precedence rules are applied.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = workspace_override or env_override or Path.home() / ".lifelogd"
    raw = Path(base).expanduser()
    if raw.is_absolute():
        workspace = raw.resolve(strict=False)
    else:
        workspace = (Path.cwd() / raw).resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.for_root(workspace)
