"""Per-bundle record of completed operations, keyed by operation key and input fingerprint."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from applyforge.constants import IDEMPOTENCY_FILE, IDEMPOTENCY_SCHEMA_VERSION
from applyforge.domain.models import isoformat_z, utc_now
from applyforge.utils.fs import atomic_write_json


@dataclass(frozen=True, slots=True)
class CompletedOperation:
    key: str
    fingerprint: str
    description: str
    completed_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "key": self.key,
            "fingerprint": self.fingerprint,
            "description": self.description,
            "completed_at": isoformat_z(self.completed_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CompletedOperation:
        raw_completed = payload["completed_at"]
        if not isinstance(raw_completed, str):
            raise ValueError("completed_at must be an ISO-8601 string")
        text = raw_completed[:-1] + "+00:00" if raw_completed.endswith("Z") else raw_completed
        return cls(
            key=str(payload["key"]),
            fingerprint=str(payload["fingerprint"]),
            description=str(payload.get("description", "")),
            completed_at=datetime.fromisoformat(text),
        )


class IdempotencyTracker:
    """Tracks completed operations in ``Apply/idempotency_tracker.json``.

    Every mutation is saved immediately by atomic replace. An unreadable file
    is treated as empty, so operations re-run rather than being skipped.
    """

    def __init__(self, bundle_root: Path, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._path = Path(bundle_root) / IDEMPOTENCY_FILE
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._created_at = utc_now()
        self._operations: dict[str, CompletedOperation] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def is_completed(self, key: str) -> bool:
        return key in self._operations

    def fingerprint_matches(self, key: str, fingerprint: str) -> bool:
        """``False`` when the key is unknown or its inputs changed since completion."""

        operation = self._operations.get(key)
        if operation is None:
            return False
        return operation.fingerprint == fingerprint

    def mark_completed(self, key: str, fingerprint: str, description: str) -> CompletedOperation:
        operation = CompletedOperation(
            key=key, fingerprint=fingerprint, description=description, completed_at=utc_now()
        )
        self._operations[key] = operation
        self._save()
        return operation

    def reset(self) -> None:
        self._created_at = utc_now()
        self._operations = {}
        self._save()

    def get_completed_operations(self) -> list[CompletedOperation]:
        return sorted(self._operations.values(), key=lambda operation: operation.completed_at)

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            operations_raw = payload["completed_operations"]
            operations = {
                str(key): CompletedOperation.from_dict(value)
                for key, value in operations_raw.items()
            }
            created_raw = payload.get("created_at")
            created_at = (
                datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
                if isinstance(created_raw, str)
                else self._created_at
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            self._logger.warning(
                "apply_idempotency_tracker_corrupt", path=str(self._path), error=str(exc)
            )
            return
        self._operations = operations
        self._created_at = created_at

    def _save(self) -> None:
        atomic_write_json(
            self._path,
            {
                "schema_version": IDEMPOTENCY_SCHEMA_VERSION,
                "created_at": isoformat_z(self._created_at),
                "completed_operations": {
                    key: operation.to_dict() for key, operation in self._operations.items()
                },
            },
        )


__all__ = ["CompletedOperation", "IdempotencyTracker"]
