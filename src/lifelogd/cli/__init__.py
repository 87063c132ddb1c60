"""Command-line interface for :mod:`lifelogd`.

This module exposes the Typer application behind the ``lifelogd`` console
script. ``init`` seeds a workspace; the sync commands are registered from
:mod:`lifelogd.cli.sync`.

Example:
    >>> import typer
    >>> from lifelogd.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

import os
from pathlib import Path

import typer

from lifelogd.cli.init import init_workspace
from lifelogd.cli.sync import register_sync_commands
from lifelogd.core.config import AppConfig, DEFAULTS_RESOURCE_NAME
from lifelogd.core.logging import configure_logging, get_logger
from lifelogd.core.paths import resolve_workspace

_app_help = (
    "Local-first mirror of a remote lifelog API with semantic search."
    "\n\n"
    "Use `lifelogd init` to bootstrap a workspace, then `lifelogd sync`."
)


def _emit_workspace_summary(
    *,
    config: AppConfig,
    existing: bool,
    force: bool,
    has_api_key: bool,
) -> None:
    """Print a human-friendly summary of bootstrap results."""

    typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  workspace: {config.workspace}")
    typer.echo(f"  config: {config.workspace / 'lifelogd.toml'}")
    typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
    typer.echo(f"  log level: {config.log_level}")
    typer.echo(f"  embeddings: {config.embeddings.provider.value}")
    typer.echo(f"  index: {config.index.backend.value}")

    if existing and not force:
        typer.echo("  note: existing workspace detected; config left untouched")
    elif force:
        typer.echo("  note: config rewritten from defaults")

    if not has_api_key:
        typer.secho(
            "  hint: export LIMITLESS_API_KEY before running `lifelogd sync`",
            fg=typer.colors.YELLOW,
        )


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``lifelogd`` CLI.

    Returns:
        A configured Typer application ready to be invoked by ``lifelogd``.
    """

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Bootstrap a workspace and seed configuration files.",
    )
    def init_command(
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to "
                "$HOME/.lifelogd or LIFELOGD_WORKSPACE)."
            ),
        ),
        force: bool = typer.Option(
            False,
            "--force",
            help="Rewrite lifelogd.toml even if it already exists.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Initialize the local workspace.

        Example:
            >>> from typer.testing import CliRunner
            >>> runner = CliRunner()
            >>> app = create_app()
            >>> result = runner.invoke(app, ["init", "--help"])
            >>> result.exit_code
            0
        """

        env_workspace = os.environ.get("LIFELOGD_WORKSPACE")
        env_workspace_path = (
            Path(env_workspace).expanduser() if env_workspace else None
        )

        try:
            paths = resolve_workspace(
                workspace_override=workspace,
                env_override=env_workspace_path,
            )
        except ValueError as exc:  # pragma: no cover
            typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        existing = paths.config_file.exists()

        try:
            config = init_workspace(
                workspace=paths.workspace,
                force=force,
                log_level=log_level,
            )
        except Exception as exc:  # pragma: no cover
            message = f"Failed to initialize workspace: {exc}"
            typer.secho(message, fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        configure_logging(
            level=config.log_level,
            workspace_path=config.workspace,
        )
        logger = get_logger(__name__, command="init")
        logger.info(
            "init-complete",
            workspace=str(config.workspace),
            force=force,
            existing=existing,
        )

        _emit_workspace_summary(
            config=config,
            existing=existing,
            force=force,
            has_api_key=bool(os.environ.get("LIMITLESS_API_KEY")),
        )

    register_sync_commands(app)
    return app


__all__ = ["create_app"]
