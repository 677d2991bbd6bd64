"""
applyforge: collaborator contracts consumed by the apply engine.

Purpose
- Define the structural interfaces (``typing.Protocol``) for snapshotting,
  configuration-manager (LCM) control, evidence persistence, and the audit trail.
- Define the value objects and failure types exchanged across those seams.

Functional requirements
- ``SnapshotError`` is fatal to a run; ``ConfigurationManagerError`` is fatal
  only for ``configure``; evidence failures are absorbed by the caller.
- Audit entries hash the ``|``-joined fields including the previous hash.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from applyforge.domain.models import isoformat_z
from applyforge.utils.hashing import sha256_text

AUDIT_GENESIS_HASH: Final[str] = "genesis"


class SnapshotError(RuntimeError):
    """Raised when a pre-apply snapshot or its rollback script cannot be produced."""


class ConfigurationManagerError(RuntimeError):
    """Raised when the configuration manager cannot be queried or reconfigured."""


class AuditTrailError(RuntimeError):
    """Raised when an audit entry cannot be recorded or the trail cannot be read."""


class EvidenceType(StrEnum):
    COMMAND = "command"
    FILE = "file"
    REGISTRY = "registry"
    POLICY_EXPORT = "policy-export"
    SCREENSHOT = "screenshot"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class SnapshotResult:
    snapshot_id: str
    created_at: datetime
    snapshot_dir: Path
    manifest_path: Path
    rollback_script_path: Path | None = None


@dataclass(frozen=True, slots=True)
class LcmConfig:
    """Desired configuration-manager settings for an apply."""

    configuration_mode: str = "ApplyAndMonitor"
    reboot_node_if_needed: bool = True
    configuration_mode_frequency_mins: int = 15
    allow_module_overwrite: bool = True


@dataclass(frozen=True, slots=True)
class LcmState:
    """Observed configuration-manager settings, captured so they can be restored."""

    configuration_mode: str = ""
    reboot_node_if_needed: bool = False
    configuration_mode_frequency_mins: int = 0
    allow_module_overwrite: bool = False
    lcm_state: str = ""


@dataclass(frozen=True, slots=True)
class EvidenceWriteRequest:
    bundle_root: Path
    title: str
    evidence_type: EvidenceType = EvidenceType.OTHER
    source: str = "applyforge"
    content_text: str | None = None
    source_file_path: Path | None = None
    tags: dict[str, str] = field(default_factory=dict)
    run_id: str | None = None
    step_name: str | None = None


@dataclass(frozen=True, slots=True)
class EvidenceWriteResult:
    evidence_id: str
    evidence_dir: Path
    evidence_path: Path
    metadata_path: Path
    sha256: str


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """One tamper-evident audit record.

    ``previous_hash`` and ``entry_hash`` are filled by the trail when the entry
    is recorded; callers leave them empty.
    """

    timestamp: datetime
    user: str
    machine: str
    action: str
    target: str
    result: str
    detail: str = ""
    previous_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        payload = "|".join(
            (
                isoformat_z(self.timestamp),
                self.user,
                self.machine,
                self.action,
                self.target,
                self.result,
                self.detail,
                self.previous_hash,
            )
        )
        return sha256_text(payload)


@runtime_checkable
class SnapshotService(Protocol):
    def create_snapshot(self, directory: Path) -> SnapshotResult: ...

    def generate_rollback_script(self, snapshot: SnapshotResult) -> Path: ...


@runtime_checkable
class ConfigurationManager(Protocol):
    def get_state(self) -> LcmState: ...

    def configure(self, config: LcmConfig) -> None: ...

    def reset(self, state: LcmState) -> None: ...


@runtime_checkable
class EvidenceCollector(Protocol):
    def write_evidence(self, request: EvidenceWriteRequest) -> EvidenceWriteResult: ...


@runtime_checkable
class AuditTrail(Protocol):
    def record_entry(self, entry: AuditEntry) -> AuditEntry: ...

    def verify_integrity(self) -> bool: ...


__all__ = [
    "AUDIT_GENESIS_HASH",
    "AuditEntry",
    "AuditTrail",
    "AuditTrailError",
    "ConfigurationManager",
    "ConfigurationManagerError",
    "EvidenceCollector",
    "EvidenceType",
    "EvidenceWriteRequest",
    "EvidenceWriteResult",
    "LcmConfig",
    "LcmState",
    "SnapshotError",
    "SnapshotResult",
    "SnapshotService",
]
