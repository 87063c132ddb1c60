"""Typer commands driving the sync engine and the search path."""

from __future__ import annotations

import json
import os
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterator

import typer

from lifelogd.core.config import (
    AppConfig,
    env_overrides,
    load_config,
    load_packaged_defaults,
    load_user_config,
)
from lifelogd.core.logging import Logger, configure_logging, get_logger
from lifelogd.core.paths import WorkspacePaths, resolve_workspace
from lifelogd.ingest import IngestError
from lifelogd.runtime import Runtime, build_runtime, format_results
from lifelogd.sync import (
    CheckpointLoadError,
    CheckpointPersistenceError,
    SyncAlreadyRunningError,
    SyncCheckpoint,
)


@dataclass(slots=True)
class SyncCLIContext:
    """Resolved workspace, configuration and logger for one command."""

    paths: WorkspacePaths
    config: AppConfig
    logger: Logger


_WORKSPACE_OPTION = typer.Option(
    None,
    "--workspace",
    "-w",
    help=(
        "Override workspace directory (defaults to "
        "LIFELOGD_WORKSPACE or ~/.lifelogd)."
    ),
)
_LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
)


def _resolve_workspace_override(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("LIFELOGD_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def load_cli_context(
    workspace: Path | None,
    log_level: str | None,
    *,
    command: str,
) -> SyncCLIContext:
    """Resolve the workspace and layered configuration or exit with code 1."""

    try:
        paths = _resolve_workspace_override(workspace)
    except ValueError as exc:
        typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    if not paths.config_file.exists():
        typer.secho(
            (
                "Workspace config not found at "
                f"{paths.config_file}. Run `lifelogd init` first."
            ),
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)

    cli_overrides: dict[str, object] = {"workspace": str(paths.workspace)}
    if log_level:
        cli_overrides["log_level"] = log_level
    try:
        config = load_config(
            defaults=load_packaged_defaults(),
            user_config=load_user_config(paths.config_file),
            env_config=env_overrides(),
            cli_overrides=cli_overrides,
        )
    except (ValueError, OSError) as exc:
        typer.secho(
            f"Failed to load workspace config: {exc}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1) from exc

    configure_logging(level=config.log_level, workspace_path=config.workspace)
    logger = get_logger(__name__, command=command)
    return SyncCLIContext(paths=paths, config=config, logger=logger)


@contextmanager
def open_runtime(context: SyncCLIContext) -> Iterator[Runtime]:
    try:
        runtime = build_runtime(
            context.config, context.paths, logger=context.logger
        )
    except Exception as exc:
        _fail("runtime setup", exc, logger=context.logger)
    try:
        yield runtime
    finally:
        runtime.close()


def _fail(action: str, error: Exception, *, logger: Logger) -> None:
    typer.secho(f"{action.capitalize()} failed: {error}", fg=typer.colors.RED)
    logger.error("cli-action-failed", action=action, error=str(error))
    raise typer.Exit(code=1) from error


def _render_checkpoint(checkpoint: SyncCheckpoint | None) -> list[str]:
    if checkpoint is None:
        return ["  checkpoint: none (next sync bootstraps)"]
    progress = checkpoint.progress().to_mapping()
    lines = [
        f"  {key}: {value}"
        for key, value in progress.items()
        if key != "errors"
    ]
    errors = progress["errors"]
    lines.append(f"  errors: {len(errors)}")
    for entry in errors[-5:]:
        lines.append(f"    - {entry['date']}: {entry['error']}")
    return lines


def register_sync_commands(app: typer.Typer) -> None:
    """Attach ``sync``, ``vectorize``, ``status``, ``search`` and
    ``clear-checkpoint`` to ``app``."""

    @app.command("sync", help="Backfill history, vectorize, then monitor.")
    def sync_command(
        workspace: Path | None = _WORKSPACE_OPTION,
        log_level: str | None = _LOG_LEVEL_OPTION,
        download_only: bool = typer.Option(
            False,
            "--download-only",
            help="Stop after the download phase.",
        ),
        start_date: datetime | None = typer.Option(
            None,
            "--start-date",
            formats=["%Y-%m-%d"],
            help="Last day walked by the download phase (YYYY-MM-DD).",
        ),
        once: bool = typer.Option(
            False,
            "--once",
            help="Run a single monitoring tick instead of polling.",
        ),
    ) -> None:
        context = load_cli_context(workspace, log_level, command="sync")
        overrides: dict[str, object] = {}
        if download_only:
            overrides["download_only"] = True
        if start_date is not None:
            overrides["start_date"] = start_date.date()

        with open_runtime(context) as runtime:
            try:
                engine = runtime.create_engine(**overrides)
            except IngestError as exc:
                _fail("sync", exc, logger=context.logger)

            previous = signal.signal(signal.SIGINT, lambda *_: engine.stop())
            try:
                progress = engine.start(once=once)
            except (
                SyncAlreadyRunningError,
                CheckpointLoadError,
                CheckpointPersistenceError,
            ) as exc:
                _fail("sync", exc, logger=context.logger)
            finally:
                signal.signal(signal.SIGINT, previous)

        typer.secho("Sync finished", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  phase: {progress.phase.value}")
        typer.echo(f"  downloaded: {progress.total_downloaded}")
        typer.echo(f"  vectorized: {progress.total_vectorized}")
        typer.echo(f"  errors: {len(progress.errors)}")

    @app.command("vectorize", help="Index stored lifelogs lacking embeddings.")
    def vectorize_command(
        workspace: Path | None = _WORKSPACE_OPTION,
        log_level: str | None = _LOG_LEVEL_OPTION,
    ) -> None:
        context = load_cli_context(workspace, log_level, command="vectorize")
        with open_runtime(context) as runtime:
            try:
                engine = runtime.create_engine()
                with engine.exclusive():
                    engine.load_checkpoint()
                    count = engine.vectorize()
            except (
                IngestError,
                SyncAlreadyRunningError,
                CheckpointLoadError,
                CheckpointPersistenceError,
            ) as exc:
                _fail("vectorize", exc, logger=context.logger)
        typer.secho(
            f"Vectorized {count} lifelogs", fg=typer.colors.GREEN, bold=True
        )

    @app.command("status", help="Show sync progress and storage statistics.")
    def status_command(
        workspace: Path | None = _WORKSPACE_OPTION,
        log_level: str | None = _LOG_LEVEL_OPTION,
    ) -> None:
        context = load_cli_context(workspace, log_level, command="status")
        with open_runtime(context) as runtime:
            try:
                checkpoint = runtime.checkpoint_store().load()
            except CheckpointLoadError as exc:
                _fail("status", exc, logger=context.logger)
            stats = runtime.store.stats()

        typer.secho("Sync status", fg=typer.colors.CYAN, bold=True)
        typer.echo(f"  workspace: {context.paths.workspace}")
        for line in _render_checkpoint(checkpoint):
            typer.echo(line)
        typer.secho("Storage", fg=typer.colors.CYAN, bold=True)
        typer.echo(f"  lifelogs: {stats.total_lifelogs}")
        typer.echo(f"  embeddings: {stats.total_embeddings}")
        typer.echo(f"  size_bytes: {stats.size_bytes}")
        typer.echo(f"  oldest_day: {_iso(stats.oldest_date)}")
        typer.echo(f"  newest_day: {_iso(stats.newest_date)}")

    @app.command("search", help="Semantic search over the local index.")
    def search_command(
        query: str = typer.Argument(..., help="Free-text query."),
        workspace: Path | None = _WORKSPACE_OPTION,
        log_level: str | None = _LOG_LEVEL_OPTION,
        limit: int = typer.Option(10, "--limit", "-n", min=1),
        threshold: float | None = typer.Option(
            None, "--threshold", min=0.0, max=1.0
        ),
        as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
    ) -> None:
        context = load_cli_context(workspace, log_level, command="search")
        with open_runtime(context) as runtime:
            outcome = runtime.search(
                query, limit=limit, score_threshold=threshold
            )

        rows = format_results(outcome.results)
        if as_json:
            typer.echo(json.dumps(rows, indent=2))
            return
        if not rows:
            typer.echo("No matches.")
            return
        for row in rows:
            typer.echo(
                f"{row['score']:.3f}  {row['date']}  "
                f"{row['title']}  [{row['id']}]"
            )

    @app.command("clear-checkpoint", help="Forget sync progress.")
    def clear_checkpoint_command(
        workspace: Path | None = _WORKSPACE_OPTION,
        log_level: str | None = _LOG_LEVEL_OPTION,
    ) -> None:
        context = load_cli_context(
            workspace, log_level, command="clear-checkpoint"
        )
        with open_runtime(context) as runtime:
            removed = runtime.checkpoint_store().clear()
        if removed:
            typer.secho("Checkpoint cleared", fg=typer.colors.GREEN)
        else:
            typer.echo("No checkpoint to clear.")


def _iso(value: date | None) -> str:
    return value.isoformat() if value else "-"


__all__ = [
    "SyncCLIContext",
    "load_cli_context",
    "open_runtime",
    "register_sync_commands",
]
