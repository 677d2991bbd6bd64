"""Stable constants shared across the apply plane."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_SUMMARY_SCHEMA_VERSION: Final[int] = 1
REBOOT_CONTEXT_SCHEMA_VERSION: Final[int] = 1
IDEMPOTENCY_SCHEMA_VERSION: Final[int] = 1

# Bundle-relative layout.
APPLY_DIR: Final[PurePosixPath] = PurePosixPath("Apply")
LOGS_DIR: Final[PurePosixPath] = APPLY_DIR / "Logs"
SNAPSHOTS_DIR: Final[PurePosixPath] = APPLY_DIR / "Snapshots"
RUNS_DIR: Final[PurePosixPath] = APPLY_DIR / "Runs"
POLICY_COMPILE_OUTPUT_DIR: Final[PurePosixPath] = APPLY_DIR / "Dsc"
TEMPLATE_DESTINATION_DIR: Final[PurePosixPath] = APPLY_DIR / "PolicyDefinitions"
PREFLIGHT_SCRIPT: Final[PurePosixPath] = APPLY_DIR / "Preflight" / "preflight"
RUN_SUMMARY_FILE: Final[PurePosixPath] = APPLY_DIR / "apply_run.json"
RESUME_MARKER_FILE: Final[PurePosixPath] = APPLY_DIR / ".resume_marker.json"
IDEMPOTENCY_FILE: Final[PurePosixPath] = APPLY_DIR / "idempotency_tracker.json"
LOCK_FILE: Final[PurePosixPath] = APPLY_DIR / ".apply.lock"
AUDIT_LOG_FILE: Final[PurePosixPath] = APPLY_DIR / "audit_trail.jsonl"
LCM_STATE_FILE: Final[PurePosixPath] = APPLY_DIR / "lcm_state.json"
EVIDENCE_DIR: Final[PurePosixPath] = PurePosixPath("Evidence")
MANIFEST_CANDIDATES: Final[tuple[PurePosixPath, ...]] = (
    PurePosixPath("Manifest/manifest.json"),
    PurePosixPath("Manifest/manifest.yaml"),
    PurePosixPath("Manifest/manifest.yml"),
)

# Reboot accounting.
MAX_REBOOTS: Final[int] = 3

# Per-step timeouts in seconds.
SCRIPT_TIMEOUT_SECONDS: Final[float] = 30.0
DECLARATIVE_APPLY_TIMEOUT_SECONDS: Final[float] = 600.0
POLICY_COMPILE_TIMEOUT_SECONDS: Final[float] = 300.0
LOCAL_POLICY_APPLY_TIMEOUT_SECONDS: Final[float] = 60.0
PREFLIGHT_TIMEOUT_SECONDS: Final[float] = 60.0

# Synthetic exit codes for outcomes that never produced a process exit status.
EXIT_CODE_NOT_FOUND: Final[int] = -1
EXIT_CODE_TIMEOUT: Final[int] = -2
EXIT_CODE_SPAWN_FAILURE: Final[int] = -3

# Environment injected into every step process.
ENV_PREFIX: Final[str] = "APPLYFORGE_"
ENV_BUNDLE_ROOT: Final[str] = "APPLYFORGE_BUNDLE_ROOT"
ENV_APPLY_LOG_DIR: Final[str] = "APPLYFORGE_APPLY_LOG_DIR"
ENV_SNAPSHOT_DIR: Final[str] = "APPLYFORGE_SNAPSHOT_DIR"
ENV_HARDENING_MODE: Final[str] = "APPLYFORGE_HARDENING_MODE"
ENV_RUN_ID: Final[str] = "APPLYFORGE_RUN_ID"
ENV_STEP_NAME: Final[str] = "APPLYFORGE_STEP_NAME"
ENV_TRACEPARENT: Final[str] = "TRACEPARENT"

__all__ = [
    "APPLY_DIR",
    "AUDIT_LOG_FILE",
    "CONFIG_SCHEMA_VERSION",
    "DECLARATIVE_APPLY_TIMEOUT_SECONDS",
    "ENV_APPLY_LOG_DIR",
    "ENV_BUNDLE_ROOT",
    "ENV_HARDENING_MODE",
    "ENV_PREFIX",
    "ENV_RUN_ID",
    "ENV_SNAPSHOT_DIR",
    "ENV_STEP_NAME",
    "ENV_TRACEPARENT",
    "EVIDENCE_DIR",
    "EXIT_CODE_NOT_FOUND",
    "EXIT_CODE_SPAWN_FAILURE",
    "EXIT_CODE_TIMEOUT",
    "IDEMPOTENCY_FILE",
    "IDEMPOTENCY_SCHEMA_VERSION",
    "LCM_STATE_FILE",
    "LOCAL_POLICY_APPLY_TIMEOUT_SECONDS",
    "LOCK_FILE",
    "LOGS_DIR",
    "MANIFEST_CANDIDATES",
    "MAX_REBOOTS",
    "POLICY_COMPILE_OUTPUT_DIR",
    "POLICY_COMPILE_TIMEOUT_SECONDS",
    "PREFLIGHT_SCRIPT",
    "PREFLIGHT_TIMEOUT_SECONDS",
    "REBOOT_CONTEXT_SCHEMA_VERSION",
    "RESUME_MARKER_FILE",
    "RUNS_DIR",
    "RUN_SUMMARY_FILE",
    "RUN_SUMMARY_SCHEMA_VERSION",
    "SCRIPT_TIMEOUT_SECONDS",
    "SNAPSHOTS_DIR",
    "TEMPLATE_DESTINATION_DIR",
]
