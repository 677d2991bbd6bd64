"""
applyforge: filesystem helpers

Checkpoints, run summaries, idempotency records, and evidence manifests are
rewritten in place while a host may lose power mid-run (a reboot is part of the
normal apply cycle), so every such write goes through ``atomic_write``: a
sibling temp file is fsynced and then moved over the target with
``os.replace``. Readers therefore see either the old or the new document.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` in one step; the parent must already exist."""

    target = Path(path)
    directory = target.parent.resolve(strict=True)
    if not directory.is_dir():
        raise NotADirectoryError(f"{directory} is not a directory")

    payload = data if isinstance(data, bytes) else data.encode(encoding)
    fd, scratch_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=directory)
    scratch = Path(scratch_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(scratch, target)
    except BaseException:
        with contextlib.suppress(OSError):
            scratch.unlink(missing_ok=True)
        raise
    _sync_directory(directory)


def atomic_write_json(path: PathLike, payload: object) -> None:
    """Write ``payload`` as indented, key-sorted JSON ending in a newline."""

    atomic_write(path, json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n")


def ensure_directory(path: PathLike) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _sync_directory(directory: Path) -> None:
    # Persists the rename itself; unsupported on Windows and some filesystems.
    if os.name == "nt":
        return
    try:
        fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    with contextlib.suppress(OSError):
        os.fsync(fd)
    os.close(fd)


__all__ = ["atomic_write", "atomic_write_json", "ensure_directory"]
