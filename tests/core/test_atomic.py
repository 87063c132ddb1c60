"""Tests for :mod:`lifelogd.core.atomic`."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from lifelogd.core.atomic import atomic_write_json, atomic_write_text


def test_atomic_write_json_creates_parents_and_sorts_keys(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.json"

    atomic_write_json(target, {"b": 1, "a": "ü"}, fsync=True)

    text = target.read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert text.index('"a"') < text.index('"b"')
    assert json.loads(text) == {"a": "ü", "b": 1}
    assert [p.name for p in target.parent.iterdir()] == ["state.json"]


def test_atomic_write_text_replaces_existing_file(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_text("old", encoding="utf-8")

    atomic_write_text(target, "new")

    assert target.read_text(encoding="utf-8") == "new"


def test_atomic_write_cleans_up_temp_file_on_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    target = tmp_path / "state.json"
    target.write_text("{}", encoding="utf-8")

    def _boom(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)

    with pytest.raises(OSError):
        atomic_write_json(target, {"value": 1})

    assert target.read_text(encoding="utf-8") == "{}"
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
