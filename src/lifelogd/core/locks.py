"""Filesystem lock files guarding single-owner workspace resources."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

__all__ = [
    "FileLock",
    "LockError",
    "LockTimeoutError",
    "process_alive",
]


class LockError(RuntimeError):
    """Base error type for lock file failures."""


class LockTimeoutError(LockError):
    """Raised when acquiring a lock times out."""


def process_alive(pid: int) -> bool:
    """Return ``False`` only when ``pid`` certainly names no running process."""

    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill terminates the target on Windows.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(slots=True)
class FileLock:
    """Exclusive lock file created with ``O_CREAT | O_EXCL``.

    The owning process id is written into the file. A lock left behind by a
    process that no longer exists is reclaimed on the next acquire, so a
    hard-killed owner never blocks its successor. ``timeout=0`` fails
    immediately when a live owner holds the lock.
    """

    path: Path
    timeout: float = 5.0
    poll_interval: float = 0.1
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    is_alive: Callable[[int], bool] = field(default=process_alive, repr=False)
    _handle: int | None = field(init=False, default=None, repr=False)

    @property
    def held(self) -> bool:
        return self._handle is not None

    def owner(self) -> int | None:
        """Return the pid recorded in the lock file, if readable."""

        try:
            text = self.path.read_text(encoding="ascii").strip()
        except (FileNotFoundError, UnicodeDecodeError):
            return None
        except OSError as exc:  # pragma: no cover - surfaced at runtime
            raise LockError(f"Failed reading lock at {self.path}: {exc}") from exc
        return int(text) if text.isdigit() else None

    def _reclaim_stale(self) -> bool:
        pid = self.owner()
        if pid is None or pid == os.getpid() or self.is_alive(pid):
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def acquire(self) -> None:
        """Acquire the lock, waiting up to ``timeout`` seconds."""

        if self._handle is not None:
            return

        deadline = time.monotonic() + max(self.timeout, 0.0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                handle = os.open(
                    self.path,
                    os.O_CREAT | os.O_EXCL | os.O_WRONLY,
                )
            except FileExistsError:
                if self._reclaim_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Timed out acquiring lock at {self.path}"
                    ) from None
                self.sleep(self.poll_interval)
                continue
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise LockError(
                    f"Failed acquiring lock at {self.path}: {exc}"
                ) from exc

            os.write(handle, str(os.getpid()).encode("ascii"))
            self._handle = handle
            return

    def release(self) -> None:
        """Release the lock if held."""

        handle = self._handle
        if handle is None:
            return

        try:
            os.close(handle)
        finally:
            self._handle = None
            try:
                self.path.unlink()
            except FileNotFoundError:  # pragma: no cover - removed externally
                pass
            except OSError as exc:  # pragma: no cover - surfaced at runtime
                raise LockError(
                    f"Failed removing lock at {self.path}: {exc}"
                ) from exc

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
