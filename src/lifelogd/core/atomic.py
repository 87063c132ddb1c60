"""Atomic file replacement helpers.

Writers stage data in a temporary file inside the destination directory and
``os.replace`` it into place, so readers only ever observe a complete file.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

__all__ = [
    "atomic_write_bytes",
    "atomic_write_json",
    "atomic_write_text",
]


def atomic_write_bytes(path: Path, data: bytes, *, fsync: bool = False) -> None:
    """Write ``data`` to ``path`` atomically.

    Raises:
        OSError: If staging or replacing the file fails. The temporary file is
            removed before the error propagates.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=f".{path.name}-",
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_path = Path(handle.name)
            handle.write(data)
            if fsync:
                handle.flush()
                os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except OSError:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str, *, fsync: bool = False) -> None:
    atomic_write_bytes(path, text.encode("utf-8"), fsync=fsync)


def atomic_write_json(
    path: Path,
    payload: Any,
    *,
    fsync: bool = False,
    indent: int | None = 2,
) -> None:
    """Serialize ``payload`` as JSON and write it atomically."""

    text = json.dumps(payload, ensure_ascii=False, indent=indent, sort_keys=True)
    atomic_write_text(path, text + "\n", fsync=fsync)
