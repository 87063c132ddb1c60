"""Tests for :mod:`lifelogd.core.logging`."""

from __future__ import annotations

import gzip
import io
import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from rich.console import Console
from rich.logging import RichHandler

from lifelogd.core.logging import configure_logging, get_logger


def _build_console() -> Console:
    """Return a console that writes to an in-memory buffer for tests."""

    return Console(file=io.StringIO(), width=120, record=True)


def _flush_root() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_configure_logging_writes_json_events_to_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    log_file = configure_logging(
        level="debug", workspace_path=workspace, console=_build_console()
    )

    root = logging.getLogger()
    assert len([h for h in root.handlers if isinstance(h, RichHandler)]) == 1
    assert log_file == workspace.resolve() / "logs" / "lifelogd.log"

    logger = get_logger(__name__, component="sync")
    logger.info("sync-day-complete", day="2024-01-15", saved=3)
    _flush_root()

    payload = json.loads(log_file.read_text(encoding="utf-8").strip())
    assert payload["event"] == "sync-day-complete"
    assert payload["component"] == "sync"
    assert payload["saved"] == 3
    assert payload["level"] == "info"


def test_configure_logging_without_workspace_omits_file_handler() -> None:
    assert configure_logging(level="info", console=_build_console()) is None

    root = logging.getLogger()
    assert all(
        not isinstance(h, TimedRotatingFileHandler) for h in root.handlers
    )


def test_configure_logging_rejects_unknown_level(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        configure_logging(
            level="loud",
            workspace_path=tmp_path / "workspace",
            console=_build_console(),
        )


def test_configure_logging_quiets_http_libraries() -> None:
    configure_logging(level="debug", console=_build_console())

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING


def test_configure_logging_rotates_with_compression(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    configure_logging(
        level="warning", workspace_path=workspace, console=_build_console()
    )
    file_handler = next(
        h
        for h in logging.getLogger().handlers
        if isinstance(h, TimedRotatingFileHandler)
    )

    get_logger("rotate", task="rotation").warning("pre-rotation", sample=True)
    _flush_root()
    file_handler.doRollover()

    archives = sorted((workspace / "logs").glob("lifelogd.log.*.gz"))
    assert archives, "Expected a compressed log archive after rollover"
    with gzip.open(archives[-1], "rt", encoding="utf-8") as fh:
        archived = fh.read()
    assert "pre-rotation" in archived
