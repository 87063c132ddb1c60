"""Tests for :mod:`lifelogd.core.locks`."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from lifelogd.core.locks import FileLock, LockTimeoutError, process_alive


def test_file_lock_writes_pid_and_removes_file(tmp_path: Path) -> None:
    lock_path = tmp_path / "data" / "sync.lock"

    with FileLock(lock_path) as lock:
        assert lock.held
        assert lock_path.read_text(encoding="ascii") == str(os.getpid())

    assert not lock.held
    assert not lock_path.exists()


def test_file_lock_times_out_when_held(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync.lock"
    sleeps: list[float] = []

    with FileLock(lock_path):
        contender = FileLock(lock_path, timeout=0, sleep=sleeps.append)
        with pytest.raises(LockTimeoutError):
            contender.acquire()

    assert sleeps == []
    assert not contender.held


def test_file_lock_acquire_is_reentrant_for_same_instance(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "sync.lock")

    lock.acquire()
    lock.acquire()
    lock.release()
    lock.release()

    assert not (tmp_path / "sync.lock").exists()


def test_file_lock_reclaims_lock_left_by_dead_process(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync.lock"
    lock_path.write_text("424242", encoding="ascii")
    checked: list[int] = []

    def is_alive(pid: int) -> bool:
        checked.append(pid)
        return False

    with FileLock(lock_path, timeout=0, is_alive=is_alive) as lock:
        assert lock.held
        assert lock.owner() == os.getpid()

    assert checked == [424242]
    assert not lock_path.exists()


def test_file_lock_respects_live_foreign_owner(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync.lock"
    lock_path.write_text("424242", encoding="ascii")

    contender = FileLock(lock_path, timeout=0, is_alive=lambda pid: True)
    with pytest.raises(LockTimeoutError):
        contender.acquire()

    assert lock_path.read_text(encoding="ascii") == "424242"


def test_file_lock_keeps_unreadable_owner(tmp_path: Path) -> None:
    lock_path = tmp_path / "sync.lock"
    lock_path.write_text("", encoding="ascii")

    contender = FileLock(lock_path, timeout=0, is_alive=lambda pid: False)
    with pytest.raises(LockTimeoutError):
        contender.acquire()

    assert contender.owner() is None


def test_process_alive_reports_current_and_reaped_processes() -> None:
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()

    assert process_alive(os.getpid())
    assert not process_alive(0)
    if os.name != "nt":
        assert not process_alive(child.pid)
