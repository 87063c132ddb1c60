"""Tests for :mod:`lifelogd.cli.init`."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest
import tomlkit

from lifelogd.cli.init import init_workspace
from lifelogd.core.config import DEFAULTS_RESOURCE_NAME


def test_init_workspace_seeds_config_and_layout(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    config = init_workspace(workspace=workspace)

    config_path = workspace / "lifelogd.toml"
    assert config_path.exists()
    assert (workspace / DEFAULTS_RESOURCE_NAME).exists()
    assert (workspace / "logs").is_dir()
    assert (workspace / "data" / "lifelogs").is_dir()
    assert (workspace / "data" / "index").is_dir()

    text = config_path.read_text(encoding="utf-8")
    rendered = tomllib.loads(text)
    assert text.startswith("# Generated by lifelogd init")
    assert rendered["workspace"]["root"].endswith("workspace")
    assert rendered["log_level"] == "INFO"
    assert rendered["index"]["backend"] == "faiss"
    assert config.workspace == workspace
    assert config.log_level == "INFO"


def test_init_workspace_never_writes_the_api_key(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LIMITLESS_API_KEY", "super-secret")

    init_workspace(workspace=tmp_path / "workspace")

    text = (tmp_path / "workspace" / "lifelogd.toml").read_text(encoding="utf-8")
    assert "super-secret" not in text
    assert "api_key" not in tomllib.loads(text)["api"]


def test_init_workspace_keeps_existing_config_unless_forced(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    init_workspace(workspace=workspace)

    config_path = workspace / "lifelogd.toml"
    document = tomlkit.loads(config_path.read_text(encoding="utf-8"))
    document["log_level"] = "WARNING"
    config_path.write_text(tomlkit.dumps(document), encoding="utf-8")

    init_workspace(workspace=workspace)
    assert tomllib.loads(config_path.read_text())["log_level"] == "WARNING"

    config = init_workspace(workspace=workspace, force=True, log_level="debug")
    assert config.log_level == "DEBUG"
    assert tomllib.loads(config_path.read_text())["log_level"] == "DEBUG"


def test_init_workspace_applies_env_before_cli(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace = tmp_path / "workspace"
    monkeypatch.setenv("LIFELOGD_LOG_LEVEL", "warning")

    assert init_workspace(workspace=workspace).log_level == "WARNING"
    assert (
        init_workspace(workspace=workspace, log_level="error").log_level == "ERROR"
    )
