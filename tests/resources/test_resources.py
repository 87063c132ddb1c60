"""Tests for :mod:`lifelogd.resources`."""

from __future__ import annotations

import tomllib

import pytest

from lifelogd.resources import get_resource


def test_packaged_defaults_are_shipped() -> None:
    handle = get_resource("lifelogd.defaults.toml")

    defaults = tomllib.loads(handle.read_text(encoding="utf-8"))

    assert defaults["index"]["backend"] == "faiss"
    assert "api_key" not in defaults["api"]


def test_get_resource_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        get_resource("does-not-exist.toml")
