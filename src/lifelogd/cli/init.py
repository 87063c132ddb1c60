"""Helpers for the ``lifelogd init`` command."""

from __future__ import annotations

from pathlib import Path

from lifelogd.core.config import (
    AppConfig,
    DEFAULTS_RESOURCE_NAME,
    env_overrides,
    load_config,
    load_packaged_defaults,
    read_packaged_defaults_text,
    render_user_config,
)
from lifelogd.core.paths import resolve_workspace


def init_workspace(
    *,
    workspace: Path,
    force: bool = False,
    log_level: str | None = None,
) -> AppConfig:
    """Bootstrap the workspace directory and seed its configuration.

    Example:
        >>> from pathlib import Path
        >>> config = init_workspace(workspace=Path("/tmp/lifelogd-example"))
        >>> str(config.workspace).endswith("lifelogd-example")
        True

    Args:
        workspace: Target directory for the workspace.
        force: Rewrite ``lifelogd.toml`` even when it already exists.
        log_level: Optional override for the configured logging level.

    Returns:
        The resolved configuration after applying overrides.
    """

    paths = resolve_workspace(workspace_override=workspace)
    paths.ensure()

    cli_overrides: dict[str, object] = {"workspace": str(paths.workspace)}
    if log_level:
        cli_overrides["log_level"] = log_level

    env_layer = env_overrides()
    # The API key never lands in the rendered file.
    env_layer.pop("api", None)
    env_layer.pop("workspace", None)

    config = load_config(
        defaults=load_packaged_defaults(),
        env_config=env_layer,
        cli_overrides=cli_overrides,
    )

    defaults_path = paths.workspace / DEFAULTS_RESOURCE_NAME
    if force or not defaults_path.exists():
        defaults_path.write_text(read_packaged_defaults_text(), encoding="utf-8")

    if force or not paths.config_file.exists():
        paths.config_file.write_text(render_user_config(config), encoding="utf-8")

    return config


__all__ = ["init_workspace"]
