"""Typed, frozen view of a validated config mapping consumed by the apply engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from applyforge.config.schema import assert_valid_config, default_config
from applyforge.domain.models import HardeningMode, StepName


@dataclass(frozen=True, slots=True)
class StepTimeouts:
    script_seconds: float
    declarative_apply_seconds: float
    policy_compile_seconds: float
    local_policy_apply_seconds: float
    preflight_seconds: float

    def for_step(self, step: StepName) -> float | None:
        """Return the hard timeout for a step; ``None`` for in-process steps."""

        if step is StepName.SCRIPT:
            return self.script_seconds
        if step is StepName.DECLARATIVE_APPLY:
            return self.declarative_apply_seconds
        if step is StepName.POLICY_COMPILE:
            return self.policy_compile_seconds
        if step is StepName.LOCAL_POLICY_APPLY:
            return self.local_policy_apply_seconds
        return None


@dataclass(frozen=True, slots=True)
class CommandTemplates:
    """argv templates rendered with ``str.format`` fields per step."""

    script: tuple[str, ...]
    policy_compile: tuple[str, ...]
    declarative_apply: tuple[str, ...]
    local_policy_apply: tuple[str, ...]
    local_policy_tool: str
    preflight: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class RebootSettings:
    marker_paths: tuple[Path, ...]
    status_command: tuple[str, ...] = ()
    status_reboot_exit_code: int = 1
    schedule_command: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ApplySettings:
    default_mode: HardeningMode
    max_reboots: int
    lock_enabled: bool
    timeouts: StepTimeouts
    commands: CommandTemplates
    reboot: RebootSettings
    preflight_script: str
    snapshot_paths: tuple[Path, ...] = ()
    template_destination: Path | None = None
    lcm_state_path: Path | None = None
    audit_log_path: Path | None = None
    evidence_root: Path | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> ApplySettings:
        """Validate ``config`` and project it onto typed engine settings."""

        validated = assert_valid_config(config)
        apply = validated["apply"]
        timeouts = validated["timeouts"]
        commands = validated["commands"]
        reboot = validated["reboot"]

        return cls(
            default_mode=HardeningMode.parse(apply["default_mode"]),
            max_reboots=apply["max_reboots"],
            lock_enabled=apply["lock_enabled"],
            timeouts=StepTimeouts(
                script_seconds=timeouts["script_seconds"],
                declarative_apply_seconds=timeouts["declarative_apply_seconds"],
                policy_compile_seconds=timeouts["policy_compile_seconds"],
                local_policy_apply_seconds=timeouts["local_policy_apply_seconds"],
                preflight_seconds=timeouts["preflight_seconds"],
            ),
            commands=CommandTemplates(
                script=tuple(commands["script"]),
                policy_compile=tuple(commands["policy_compile"]),
                declarative_apply=tuple(commands["declarative_apply"]),
                local_policy_apply=tuple(commands["local_policy_apply"]),
                local_policy_tool=commands["local_policy_tool"],
                preflight=tuple(commands["preflight"]),
            ),
            reboot=RebootSettings(
                marker_paths=tuple(Path(item) for item in reboot["marker_paths"]),
                status_command=tuple(reboot["status_command"]),
                status_reboot_exit_code=reboot["status_reboot_exit_code"],
                schedule_command=tuple(reboot["schedule_command"]),
            ),
            preflight_script=validated["preflight"]["script"],
            snapshot_paths=tuple(Path(item) for item in validated["snapshot"]["paths"]),
            template_destination=_optional_path(apply["template_destination"]),
            lcm_state_path=_optional_path(apply["lcm_state_path"]),
            audit_log_path=_optional_path(apply["audit_log_path"]),
            evidence_root=_optional_path(apply["evidence_root"]),
        )

    @classmethod
    def defaults(cls) -> ApplySettings:
        return cls.from_config(default_config())


def _optional_path(value: str) -> Path | None:
    if not value:
        return None
    return Path(value)


__all__ = ["ApplySettings", "CommandTemplates", "RebootSettings", "StepTimeouts"]
