"""Evidence collector writing content plus ``metadata.json`` under a per-run tree."""

from __future__ import annotations

import getpass
import re
import shutil
import socket
from pathlib import Path
from typing import Final

from applyforge.collaborators.contracts import (
    EvidenceType,
    EvidenceWriteRequest,
    EvidenceWriteResult,
)
from applyforge.constants import EVIDENCE_DIR
from applyforge.domain.ids import generate_evidence_id
from applyforge.domain.models import isoformat_z, utc_now
from applyforge.utils.fs import atomic_write, atomic_write_json, ensure_directory
from applyforge.utils.hashing import sha256_file

METADATA_FILE: Final[str] = "metadata.json"
_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")


class FileEvidenceCollector:
    """Persist evidence at ``<evidence_root>/<run_id>/<step>/<evidence_id>/``.

    The evidence root defaults to ``<bundle_root>/Evidence``.
    """

    def __init__(self, evidence_root: Path | None = None) -> None:
        self._evidence_root = None if evidence_root is None else Path(evidence_root)

    def write_evidence(self, request: EvidenceWriteRequest) -> EvidenceWriteResult:
        bundle_root = Path(request.bundle_root)
        if not bundle_root.is_dir():
            raise FileNotFoundError(f"Bundle root not found: {bundle_root}")

        root = self._evidence_root if self._evidence_root is not None else bundle_root / EVIDENCE_DIR
        evidence_id = generate_evidence_id()
        evidence_dir = ensure_directory(
            root
            / _segment(request.run_id or "adhoc")
            / _segment(request.step_name or "general")
            / evidence_id
        )

        if request.source_file_path is not None:
            source = Path(request.source_file_path)
            evidence_path = evidence_dir / f"content{source.suffix or _default_suffix(request)}"
            shutil.copy2(source, evidence_path)
        else:
            evidence_path = evidence_dir / f"content{_default_suffix(request)}"
            atomic_write(evidence_path, request.content_text or "")

        digest = sha256_file(evidence_path)
        metadata_path = evidence_dir / METADATA_FILE
        atomic_write_json(
            metadata_path,
            {
                "evidence_id": evidence_id,
                "title": request.title,
                "type": request.evidence_type.value,
                "source": request.source,
                "original_path": (
                    None if request.source_file_path is None else str(request.source_file_path)
                ),
                "timestamp_utc": isoformat_z(utc_now()),
                "host": socket.gethostname(),
                "user": _current_user(),
                "bundle_root": str(bundle_root),
                "sha256": digest,
                "tags": dict(sorted(request.tags.items())),
                "run_id": request.run_id,
                "step_name": request.step_name,
            },
        )
        return EvidenceWriteResult(
            evidence_id=evidence_id,
            evidence_dir=evidence_dir,
            evidence_path=evidence_path,
            metadata_path=metadata_path,
            sha256=digest,
        )


def _default_suffix(request: EvidenceWriteRequest) -> str:
    return ".png" if request.evidence_type is EvidenceType.SCREENSHOT else ".txt"


def _segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT.sub("", value.strip()).strip(".")
    return cleaned or "unknown"


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


__all__ = ["FileEvidenceCollector", "METADATA_FILE"]
