"""Advisory single-writer lock for a bundle's ``Apply/`` directory."""

from __future__ import annotations

import json
import os
import socket
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from applyforge.apply_plane.errors import ApplyPreconditionError
from applyforge.constants import LOCK_FILE
from applyforge.domain.models import isoformat_z, utc_now


def lock_path(bundle_root: Path) -> Path:
    return Path(bundle_root) / LOCK_FILE


def read_lock_holder(bundle_root: Path) -> dict[str, Any] | None:
    """Holder metadata of an existing lock; ``{}`` when unreadable, ``None`` when absent."""

    path = lock_path(bundle_root)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


class BundleLock:
    """Exclusive-create lock file held for the duration of one run.

    A stale lock left by a crashed run is never broken automatically; the
    operator removes it.
    """

    def __init__(
        self,
        bundle_root: Path,
        *,
        run_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._path = lock_path(bundle_root)
        self._run_id = run_id
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            holder = read_lock_holder(self._path.parent.parent) or {}
            description = ", ".join(f"{key}={value}" for key, value in sorted(holder.items()))
            raise ApplyPreconditionError(
                f"Bundle is locked by another apply run ({description or 'holder unknown'}); "
                f"remove {self._path} only if that run is no longer active."
            ) from exc

        holder_info = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "run_id": self._run_id,
            "acquired_at": isoformat_z(utc_now()),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(holder_info, handle, sort_keys=True)
        self._held = True
        self._logger.debug("apply_lock_acquired", path=str(self._path))

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self._path.unlink()
        except FileNotFoundError:
            self._logger.warning("apply_lock_missing_on_release", path=str(self._path))
            return
        self._logger.debug("apply_lock_released", path=str(self._path))

    def __enter__(self) -> BundleLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["BundleLock", "lock_path", "read_lock_holder"]
