"""Append-only JSON-lines audit trail protected by a SHA-256 hash chain."""

from __future__ import annotations

import dataclasses
import getpass
import json
import os
import socket
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from applyforge.collaborators.contracts import AUDIT_GENESIS_HASH, AuditEntry, AuditTrailError
from applyforge.domain.models import isoformat_z


class JsonlAuditTrail:
    """Each line's ``entry_hash`` covers its fields and the previous line's hash."""

    def __init__(self, path: Path, *, logger: Any | None = None) -> None:
        self._path = Path(path)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def record_entry(self, entry: AuditEntry) -> AuditEntry:
        entries = self.read_entries()
        previous_hash = entries[-1].entry_hash if entries else AUDIT_GENESIS_HASH
        chained = dataclasses.replace(
            entry,
            user=entry.user or _current_user(),
            machine=entry.machine or socket.gethostname(),
            previous_hash=previous_hash,
            entry_hash="",
        )
        recorded = dataclasses.replace(chained, entry_hash=chained.compute_hash())

        line = json.dumps(_entry_to_dict(recorded), sort_keys=True, ensure_ascii=False)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise AuditTrailError(f"unable to append audit entry to {self._path}: {exc}") from exc
        return recorded

    def read_entries(self) -> list[AuditEntry]:
        if not self._path.exists():
            return []
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise AuditTrailError(f"unable to read audit trail {self._path}: {exc}") from exc

        entries: list[AuditEntry] = []
        for index, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(_entry_from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as exc:
                raise AuditTrailError(f"{self._path}:{index}: malformed audit entry: {exc}") from exc
        return entries

    def verify_integrity(self) -> bool:
        try:
            entries = self.read_entries()
        except AuditTrailError as exc:
            self._logger.warning("audit_trail_unreadable", path=str(self._path), error=str(exc))
            return False

        expected_previous = AUDIT_GENESIS_HASH
        for position, entry in enumerate(entries):
            if entry.previous_hash != expected_previous or entry.entry_hash != entry.compute_hash():
                self._logger.warning(
                    "audit_chain_broken", path=str(self._path), position=position
                )
                return False
            expected_previous = entry.entry_hash
        return True


def _entry_to_dict(entry: AuditEntry) -> dict[str, str]:
    return {
        "timestamp": isoformat_z(entry.timestamp),
        "user": entry.user,
        "machine": entry.machine,
        "action": entry.action,
        "target": entry.target,
        "result": entry.result,
        "detail": entry.detail,
        "previous_hash": entry.previous_hash,
        "entry_hash": entry.entry_hash,
    }


def _entry_from_dict(payload: dict[str, Any]) -> AuditEntry:
    raw_timestamp = str(payload["timestamp"])
    if raw_timestamp.endswith("Z"):
        raw_timestamp = raw_timestamp[:-1] + "+00:00"
    return AuditEntry(
        timestamp=datetime.fromisoformat(raw_timestamp),
        user=str(payload["user"]),
        machine=str(payload["machine"]),
        action=str(payload["action"]),
        target=str(payload["target"]),
        result=str(payload["result"]),
        detail=str(payload.get("detail", "")),
        previous_hash=str(payload["previous_hash"]),
        entry_hash=str(payload["entry_hash"]),
    )


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


__all__ = ["JsonlAuditTrail"]
