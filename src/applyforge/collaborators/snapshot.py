"""File-copy snapshot service with a SHA-256 manifest and a POSIX rollback script."""

from __future__ import annotations

import json
import os
import shlex
import shutil
from collections.abc import Iterator, Sequence
from pathlib import Path, PurePosixPath
from typing import Any, Final

import structlog

from applyforge.collaborators.contracts import SnapshotError, SnapshotResult
from applyforge.domain.ids import generate_snapshot_id
from applyforge.domain.models import isoformat_z, utc_now
from applyforge.utils.fs import atomic_write, atomic_write_json, ensure_directory
from applyforge.utils.hashing import sha256_file

SNAPSHOT_FILES_DIR: Final[str] = "files"
SNAPSHOT_MANIFEST_FILE: Final[str] = "manifest.json"
ROLLBACK_SCRIPT_FILE: Final[str] = "rollback.sh"


class FileSnapshotService:
    """Copy configured host paths into ``<directory>/<snapshot-id>/files/``.

    Directories are expanded to their regular files. Paths that do not exist
    at snapshot time are recorded as ``absent`` so rollback removes them.
    """

    def __init__(self, paths: Sequence[Path | str] = (), *, logger: Any | None = None) -> None:
        self._paths = tuple(Path(item) for item in paths)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def create_snapshot(self, directory: Path) -> SnapshotResult:
        snapshot_id = generate_snapshot_id()
        created_at = utc_now()
        try:
            snapshot_dir = ensure_directory(Path(directory) / snapshot_id)
            files_root = ensure_directory(snapshot_dir / SNAPSHOT_FILES_DIR)
            entries: list[dict[str, str]] = []
            absent: list[str] = []
            for source in self._iter_sources():
                if not source.exists():
                    absent.append(str(source))
                    continue
                stored_rel = _stored_relative_path(source)
                destination = files_root / stored_rel
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, destination)
                entries.append(
                    {
                        "source": str(source),
                        "stored": (PurePosixPath(SNAPSHOT_FILES_DIR) / stored_rel).as_posix(),
                        "sha256": sha256_file(destination),
                    }
                )

            manifest_path = snapshot_dir / SNAPSHOT_MANIFEST_FILE
            atomic_write_json(
                manifest_path,
                {
                    "snapshot_id": snapshot_id,
                    "created_at": isoformat_z(created_at),
                    "entries": entries,
                    "absent": sorted(absent),
                },
            )
        except OSError as exc:
            raise SnapshotError(f"Snapshot creation failed: {exc}") from exc

        self._logger.info(
            "snapshot_created",
            snapshot_id=snapshot_id,
            snapshot_dir=str(snapshot_dir),
            file_count=len(entries),
            absent_count=len(absent),
        )
        return SnapshotResult(
            snapshot_id=snapshot_id,
            created_at=created_at,
            snapshot_dir=snapshot_dir,
            manifest_path=manifest_path,
        )

    def generate_rollback_script(self, snapshot: SnapshotResult) -> Path:
        """Write ``rollback.sh`` next to the manifest; running it is always an operator action."""

        try:
            manifest = json.loads(snapshot.manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SnapshotError(
                f"Snapshot manifest unreadable for {snapshot.snapshot_id}: {exc}"
            ) from exc

        snapshot_dir = shlex.quote(str(snapshot.snapshot_dir))
        lines = [
            "#!/bin/sh",
            f"# Restores host files captured by snapshot {snapshot.snapshot_id}.",
            "set -eu",
            f"SNAPSHOT_DIR={snapshot_dir}",
        ]
        for entry in manifest.get("entries", []):
            source = entry["source"]
            stored = entry["stored"]
            lines.append(f"mkdir -p {shlex.quote(os.path.dirname(source) or '.')}")
            lines.append(f'cp -p "$SNAPSHOT_DIR"/{shlex.quote(stored)} {shlex.quote(source)}')
        for source in manifest.get("absent", []):
            lines.append(f"rm -f {shlex.quote(source)}")
        lines.append(f"echo {shlex.quote(f'snapshot {snapshot.snapshot_id} restored')}")

        script_path = snapshot.snapshot_dir / ROLLBACK_SCRIPT_FILE
        try:
            atomic_write(script_path, "\n".join(lines) + "\n")
            script_path.chmod(0o755)
        except OSError as exc:
            raise SnapshotError(f"Rollback script generation failed: {exc}") from exc

        self._logger.info(
            "rollback_script_generated",
            snapshot_id=snapshot.snapshot_id,
            path=str(script_path),
        )
        return script_path

    def _iter_sources(self) -> Iterator[Path]:
        for configured in self._paths:
            source = configured.expanduser().absolute()
            if source.is_dir():
                for current_dir, dir_names, file_names in os.walk(source):
                    dir_names.sort()
                    for file_name in sorted(file_names):
                        candidate = Path(current_dir) / file_name
                        if candidate.is_file():
                            yield candidate
                continue
            yield source


def _stored_relative_path(source: Path) -> PurePosixPath:
    parts = source.parts[1:] if source.is_absolute() else source.parts
    return PurePosixPath(*parts)


__all__ = ["FileSnapshotService", "ROLLBACK_SCRIPT_FILE", "SNAPSHOT_MANIFEST_FILE"]
