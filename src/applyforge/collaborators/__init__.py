"""Collaborator contracts and file-based reference implementations."""

from applyforge.collaborators.audit import JsonlAuditTrail
from applyforge.collaborators.contracts import (
    AUDIT_GENESIS_HASH,
    AuditEntry,
    AuditTrail,
    AuditTrailError,
    ConfigurationManager,
    ConfigurationManagerError,
    EvidenceCollector,
    EvidenceType,
    EvidenceWriteRequest,
    EvidenceWriteResult,
    LcmConfig,
    LcmState,
    SnapshotError,
    SnapshotResult,
    SnapshotService,
)
from applyforge.collaborators.evidence import FileEvidenceCollector
from applyforge.collaborators.lcm import JsonFileConfigurationManager
from applyforge.collaborators.snapshot import FileSnapshotService

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
    "FileEvidenceCollector",
    "FileSnapshotService",
    "JsonFileConfigurationManager",
    "JsonlAuditTrail",
    "LcmConfig",
    "LcmState",
    "SnapshotError",
    "SnapshotResult",
    "SnapshotService",
]
