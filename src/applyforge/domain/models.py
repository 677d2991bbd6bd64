"""Dataclass domain models for apply runs with strict validation and JSON serialization."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import Final, NoReturn, TypeVar

from applyforge.constants import REBOOT_CONTEXT_SCHEMA_VERSION

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT: Final[int] = 8192
_MODE_SEPARATORS: Final[re.Pattern[str]] = re.compile(r"[\s_\-]+")


class HardeningMode(StrEnum):
    """How aggressively configuration changes are applied."""

    AUDIT_ONLY = "audit-only"
    SAFE = "safe"
    FULL = "full"

    @classmethod
    def parse(cls, value: object) -> HardeningMode:
        """Leniently parse manifest/CLI spellings (``AuditOnly``, ``audit_only``, ``0``)."""

        if isinstance(value, HardeningMode):
            return value
        if isinstance(value, bool):
            raise ValueError(f"invalid hardening mode {value!r}")
        if isinstance(value, int):
            ordinal = tuple(cls)
            if 0 <= value < len(ordinal):
                return ordinal[value]
            raise ValueError(f"invalid hardening mode ordinal {value}")
        if not isinstance(value, str):
            raise ValueError(f"invalid hardening mode {value!r}")
        normalized = _MODE_SEPARATORS.sub("", value.strip().lower())
        if normalized.isdigit():
            return cls.parse(int(normalized))
        for member in cls:
            if member.value.replace("-", "") == normalized:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ValueError(f"invalid hardening mode {value!r}; expected one of: {allowed}")


class StepName(StrEnum):
    """Stable identifiers for apply steps, declared in execution order."""

    POLICY_COMPILE = "policy-compile"
    SCRIPT = "script"
    DECLARATIVE_APPLY = "declarative-apply"
    TEMPLATE_IMPORT = "template-import"
    LOCAL_POLICY_APPLY = "local-policy-apply"


STEP_ORDER: Final[tuple[StepName, ...]] = tuple(StepName)


class ContinuityMarker(StrEnum):
    RETAINED = "retained"
    SUPERSEDED = "superseded"


class ConvergenceStatus(StrEnum):
    NOT_APPLICABLE = "not-applicable"
    CONVERGED = "converged"
    DIVERGED = "diverged"
    EXCEEDED = "exceeded"


class LocalPolicyScope(StrEnum):
    MACHINE = "machine"
    USER = "user"


class RunStatus(StrEnum):
    COMPLETED = "completed"
    PAUSED_FOR_REBOOT = "paused-for-reboot"
    BLOCKED = "blocked"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class ApplyRequest:
    """Immutable input for one apply attempt.

    A step is planned only when its tool path is present; everything else
    is optional tuning for that step.
    """

    bundle_root: Path
    mode_override: HardeningMode | None = None
    script_path: Path | None = None
    script_args: str | None = None
    declarative_manifest_path: Path | None = None
    declarative_verbose: bool = False
    policy_module_path: Path | None = None
    policy_data_file: Path | None = None
    policy_output_path: Path | None = None
    policy_verbose: bool = False
    template_root_path: Path | None = None
    template_destination_path: Path | None = None
    local_policy_file: Path | None = None
    local_policy_scope: LocalPolicyScope = LocalPolicyScope.MACHINE
    local_policy_tool_path: Path | None = None
    skip_snapshot: bool = False
    reset_lcm_after_apply: bool = False
    run_id: str | None = None
    prior_run_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, base_dir: Path | None = None) -> ApplyRequest:
        """Build a request from a YAML/JSON mapping; relative paths resolve against ``base_dir``."""

        parsed = _expect_object(
            data,
            "ApplyRequest",
            required={"bundle_root"},
            optional=_REQUEST_OPTIONAL_FIELDS,
        )

        def _path(key: str) -> Path | None:
            raw = _as_optional_str(parsed.get(key), f"ApplyRequest.{key}")
            if raw is None:
                return None
            candidate = Path(raw).expanduser()
            if base_dir is not None and not candidate.is_absolute():
                candidate = base_dir / candidate
            return candidate

        bundle_root = _path("bundle_root")
        if bundle_root is None:
            _fail("ApplyRequest.bundle_root", "must not be empty")

        mode_raw = parsed.get("mode_override")
        mode_override: HardeningMode | None = None
        if mode_raw is not None:
            try:
                mode_override = HardeningMode.parse(mode_raw)
            except ValueError as exc:
                _fail("ApplyRequest.mode_override", str(exc))

        return cls(
            bundle_root=bundle_root,
            mode_override=mode_override,
            script_path=_path("script_path"),
            script_args=_as_optional_str(parsed.get("script_args"), "ApplyRequest.script_args"),
            declarative_manifest_path=_path("declarative_manifest_path"),
            declarative_verbose=_as_bool(
                parsed.get("declarative_verbose", False), "ApplyRequest.declarative_verbose"
            ),
            policy_module_path=_path("policy_module_path"),
            policy_data_file=_path("policy_data_file"),
            policy_output_path=_path("policy_output_path"),
            policy_verbose=_as_bool(
                parsed.get("policy_verbose", False), "ApplyRequest.policy_verbose"
            ),
            template_root_path=_path("template_root_path"),
            template_destination_path=_path("template_destination_path"),
            local_policy_file=_path("local_policy_file"),
            local_policy_scope=_as_enum(
                LocalPolicyScope,
                parsed.get("local_policy_scope", LocalPolicyScope.MACHINE.value),
                "ApplyRequest.local_policy_scope",
            ),
            local_policy_tool_path=_path("local_policy_tool_path"),
            skip_snapshot=_as_bool(parsed.get("skip_snapshot", False), "ApplyRequest.skip_snapshot"),
            reset_lcm_after_apply=_as_bool(
                parsed.get("reset_lcm_after_apply", False), "ApplyRequest.reset_lcm_after_apply"
            ),
            run_id=_as_optional_str(parsed.get("run_id"), "ApplyRequest.run_id"),
            prior_run_id=_as_optional_str(parsed.get("prior_run_id"), "ApplyRequest.prior_run_id"),
        )


_REQUEST_OPTIONAL_FIELDS: Final[set[str]] = {
    "mode_override",
    "script_path",
    "script_args",
    "declarative_manifest_path",
    "declarative_verbose",
    "policy_module_path",
    "policy_data_file",
    "policy_output_path",
    "policy_verbose",
    "template_root_path",
    "template_destination_path",
    "local_policy_file",
    "local_policy_scope",
    "local_policy_tool_path",
    "skip_snapshot",
    "reset_lcm_after_apply",
    "run_id",
    "prior_run_id",
}


@dataclass(frozen=True, slots=True)
class ApplyStepOutcome:
    """Result of one executed step, including evidence correlation fields."""

    step_name: StepName
    exit_code: int
    started_at: datetime
    finished_at: datetime
    stdout_path: str = ""
    stderr_path: str = ""
    timed_out: bool = False
    command: tuple[str, ...] = ()
    evidence_metadata_path: str | None = None
    artifact_sha256: str | None = None
    continuity_marker: ContinuityMarker | None = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "step_name": self.step_name.value,
            "exit_code": self.exit_code,
            "started_at": _datetime_to_iso8601z(self.started_at),
            "finished_at": _datetime_to_iso8601z(self.finished_at),
            "stdout_path": self.stdout_path,
            "stderr_path": self.stderr_path,
            "timed_out": self.timed_out,
            "command": list(self.command),
            "evidence_metadata_path": self.evidence_metadata_path,
            "artifact_sha256": self.artifact_sha256,
            "continuity_marker": (
                None if self.continuity_marker is None else self.continuity_marker.value
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ApplyStepOutcome:
        parsed = _expect_object(
            data,
            "ApplyStepOutcome",
            required={"step_name", "exit_code", "started_at", "finished_at"},
            optional={
                "stdout_path",
                "stderr_path",
                "timed_out",
                "command",
                "evidence_metadata_path",
                "artifact_sha256",
                "continuity_marker",
            },
        )
        marker_raw = parsed.get("continuity_marker")
        command_raw = parsed.get("command", [])
        if not isinstance(command_raw, (list, tuple)):
            _fail("ApplyStepOutcome.command", "expected array")
        return cls(
            step_name=_as_enum(StepName, parsed["step_name"], "ApplyStepOutcome.step_name"),
            exit_code=_as_int(parsed["exit_code"], "ApplyStepOutcome.exit_code"),
            started_at=_as_datetime(parsed["started_at"], "ApplyStepOutcome.started_at"),
            finished_at=_as_datetime(parsed["finished_at"], "ApplyStepOutcome.finished_at"),
            stdout_path=_as_text(parsed.get("stdout_path", ""), "ApplyStepOutcome.stdout_path"),
            stderr_path=_as_text(parsed.get("stderr_path", ""), "ApplyStepOutcome.stderr_path"),
            timed_out=_as_bool(parsed.get("timed_out", False), "ApplyStepOutcome.timed_out"),
            command=tuple(
                _as_text(item, f"ApplyStepOutcome.command[{index}]")
                for index, item in enumerate(command_raw)
            ),
            evidence_metadata_path=_as_optional_str(
                parsed.get("evidence_metadata_path"), "ApplyStepOutcome.evidence_metadata_path"
            ),
            artifact_sha256=_as_optional_str(
                parsed.get("artifact_sha256"), "ApplyStepOutcome.artifact_sha256"
            ),
            continuity_marker=(
                None
                if marker_raw is None
                else _as_enum(ContinuityMarker, marker_raw, "ApplyStepOutcome.continuity_marker")
            ),
        )


@dataclass(frozen=True, slots=True)
class RebootContext:
    """Checkpoint persisted before a reboot and consumed once by the next attempt."""

    bundle_root: str
    current_step_index: int
    completed_steps: tuple[StepName, ...]
    reboot_scheduled_at: datetime
    reboot_count: int
    run_id: str | None = None
    schema_version: int = REBOOT_CONTEXT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "bundle_root": self.bundle_root,
            "current_step_index": self.current_step_index,
            "completed_steps": [step.value for step in self.completed_steps],
            "reboot_scheduled_at": _datetime_to_iso8601z(self.reboot_scheduled_at),
            "reboot_count": self.reboot_count,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RebootContext:
        parsed = _expect_object(
            data,
            "RebootContext",
            required={
                "bundle_root",
                "current_step_index",
                "completed_steps",
                "reboot_scheduled_at",
                "reboot_count",
            },
            optional={"schema_version", "run_id"},
        )
        version = _as_int(
            parsed.get("schema_version", REBOOT_CONTEXT_SCHEMA_VERSION),
            "RebootContext.schema_version",
            minimum=1,
        )
        if version != REBOOT_CONTEXT_SCHEMA_VERSION:
            _fail(
                "RebootContext.schema_version",
                f"unsupported version {version}; expected {REBOOT_CONTEXT_SCHEMA_VERSION}",
            )
        completed_raw = parsed["completed_steps"]
        if not isinstance(completed_raw, (list, tuple)):
            _fail("RebootContext.completed_steps", "expected array")
        return cls(
            bundle_root=_as_str(parsed["bundle_root"], "RebootContext.bundle_root"),
            current_step_index=_as_int(
                parsed["current_step_index"], "RebootContext.current_step_index", minimum=0
            ),
            completed_steps=tuple(
                _as_enum(StepName, item, f"RebootContext.completed_steps[{index}]")
                for index, item in enumerate(completed_raw)
            ),
            reboot_scheduled_at=_as_datetime(
                parsed["reboot_scheduled_at"], "RebootContext.reboot_scheduled_at"
            ),
            reboot_count=_as_int(parsed["reboot_count"], "RebootContext.reboot_count", minimum=0),
            run_id=_as_optional_str(parsed.get("run_id"), "RebootContext.run_id"),
            schema_version=version,
        )


@dataclass(frozen=True, slots=True)
class ApplyResult:
    """Output of one apply attempt; persisted as the run summary log."""

    bundle_root: str
    mode: HardeningMode
    log_path: str
    run_id: str
    steps: tuple[ApplyStepOutcome, ...] = ()
    prior_run_id: str | None = None
    snapshot_id: str = ""
    rollback_script_path: str = ""
    is_mission_complete: bool = False
    integrity_verified: bool = False
    blocking_failures: tuple[str, ...] = ()
    recovery_artifact_paths: tuple[str, ...] = ()
    reboot_count: int = 0
    convergence_status: ConvergenceStatus = ConvergenceStatus.NOT_APPLICABLE

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "bundle_root": self.bundle_root,
            "mode": self.mode.value,
            "log_path": self.log_path,
            "run_id": self.run_id,
            "prior_run_id": self.prior_run_id,
            "steps": [step.to_dict() for step in self.steps],
            "snapshot_id": self.snapshot_id,
            "rollback_script_path": self.rollback_script_path,
            "is_mission_complete": self.is_mission_complete,
            "integrity_verified": self.integrity_verified,
            "blocking_failures": list(self.blocking_failures),
            "recovery_artifact_paths": list(self.recovery_artifact_paths),
            "reboot_count": self.reboot_count,
            "convergence_status": self.convergence_status.value,
        }


@dataclass(frozen=True, slots=True)
class PreflightRequest:
    bundle_root: Path
    modules_path: Path | None = None
    policy_module_path: Path | None = None
    check_local_policy_conflict: bool = False
    bundle_manifest_path: Path | None = None


@dataclass(frozen=True, slots=True)
class PreflightResult:
    ok: bool
    exit_code: int
    timestamp: str
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ok": self.ok,
            "exit_code": self.exit_code,
            "timestamp": self.timestamp,
            "issues": list(self.issues),
        }


# ------------------------
# Validation helpers
# ------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_text(value: object, path: str) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    return value


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def isoformat_z(value: datetime) -> str:
    """Render an aware datetime as ISO-8601 with a ``Z`` suffix."""

    return _datetime_to_iso8601z(value)


__all__ = [
    "STEP_ORDER",
    "ApplyRequest",
    "ApplyResult",
    "ApplyStepOutcome",
    "ContinuityMarker",
    "ConvergenceStatus",
    "HardeningMode",
    "JSONScalar",
    "JSONValue",
    "LocalPolicyScope",
    "PreflightRequest",
    "PreflightResult",
    "RebootContext",
    "RunStatus",
    "StepName",
    "isoformat_z",
    "utc_now",
]
