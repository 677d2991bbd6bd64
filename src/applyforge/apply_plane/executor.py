"""
applyforge: step executor.

Purpose
- Turn one planned step into an ``ApplyStepOutcome``: render its argv from the
  configured template, run it under a hard timeout with the apply environment
  injected, and persist captured output under ``Apply/Logs``.

Functional requirements
- Never raise for step-level failures: non-zero exit, timeout (``-2``), spawn
  failure (``-3``), and a missing primary artifact (``-1``) are all outcomes.
- Template import runs in process without a timeout and fails only when no
  applicable template file exists.
- Cancellation raised during template enumeration propagates to the caller.
"""

from __future__ import annotations

import shlex
import string
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Final

import structlog

from applyforge.apply_plane.plan import (
    DeclarativeApplyStep,
    LocalPolicyApplyStep,
    PlannedStep,
    PolicyCompileStep,
    ScriptStep,
    TemplateImportStep,
)
from applyforge.apply_plane.templates import import_templates
from applyforge.config.settings import ApplySettings
from applyforge.constants import (
    ENV_APPLY_LOG_DIR,
    ENV_BUNDLE_ROOT,
    ENV_HARDENING_MODE,
    ENV_RUN_ID,
    ENV_SNAPSHOT_DIR,
    ENV_STEP_NAME,
    ENV_TRACEPARENT,
    EXIT_CODE_NOT_FOUND,
    EXIT_CODE_SPAWN_FAILURE,
    EXIT_CODE_TIMEOUT,
)
from applyforge.domain.ids import format_traceparent, generate_span_id
from applyforge.domain.models import (
    ApplyStepOutcome,
    HardeningMode,
    LocalPolicyScope,
    StepName,
    utc_now,
)
from applyforge.observability.logging import correlation_scope
from applyforge.sandbox.process_runner import ProcessLaunchError, ProcessRunner
from applyforge.utils.concurrency import CancellationToken

VERBOSE_FLAG: Final[str] = "--verbose"
WHAT_IF_FLAG: Final[str] = "--what-if"
CHECK_CONFLICT_FLAG: Final[str] = "--check-local-policy-conflict"
LOG_STAMP_FORMAT: Final[str] = "%Y%m%d_%H%M%S_%f"

_SPLIT_FIELDS: Final[frozenset[str]] = frozenset({"script_args"})
_SCOPE_FLAGS: Final[dict[LocalPolicyScope, str]] = {
    LocalPolicyScope.MACHINE: "/m",
    LocalPolicyScope.USER: "/u",
}


class CommandTemplateError(ValueError):
    """Raised when an argv template references an unknown placeholder."""


@dataclass(frozen=True, slots=True)
class StepContext:
    """Run-scoped values every step sees."""

    bundle_root: Path
    logs_dir: Path
    snapshots_dir: Path
    mode: HardeningMode
    run_id: str
    trace_id: str
    cancellation: CancellationToken | None = None


def render_command(template: Sequence[str], fields: Mapping[str, str]) -> tuple[str, ...]:
    """Render an argv template with ``str.format`` placeholders.

    A token with any placeholder that resolves empty is dropped.
    A token that is exactly ``{script_args}`` is split shell-style into
    several arguments.
    """

    formatter = string.Formatter()
    argv: list[str] = []
    for token in template:
        names = [name for _, name, _, _ in formatter.parse(token) if name is not None]
        unknown = [name for name in names if name not in fields]
        if unknown:
            raise CommandTemplateError(
                f"unknown placeholder(s) {sorted(set(unknown))} in template token {token!r}"
            )
        if any(not fields[name] for name in names):
            continue
        if len(names) == 1 and token == f"{{{names[0]}}}" and names[0] in _SPLIT_FIELDS:
            argv.extend(shlex.split(fields[names[0]]))
            continue
        argv.append(token.format_map(fields))
    return tuple(argv)


class StepExecutor:
    """Executes planned steps; one instance per orchestrator."""

    def __init__(
        self,
        settings: ApplySettings,
        *,
        runner: ProcessRunner | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._runner = runner if runner is not None else ProcessRunner()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def execute(self, step: PlannedStep, context: StepContext) -> ApplyStepOutcome:
        span_id = generate_span_id()
        with correlation_scope(step_name=step.name.value, span_id=span_id):
            self._logger.info("apply_step_started", step=step.name.value)
            if isinstance(step, TemplateImportStep):
                outcome = self._execute_template_import(step, context)
            else:
                outcome = self._execute_process(step, context, span_id)
            self._logger.info(
                "apply_step_completed",
                step=step.name.value,
                exit_code=outcome.exit_code,
                timed_out=outcome.timed_out,
                stdout_path=outcome.stdout_path,
            )
        return outcome

    def _execute_process(
        self, step: PlannedStep, context: StepContext, span_id: str
    ) -> ApplyStepOutcome:
        started_at = utc_now()
        stdout_path, stderr_path = _log_paths(context.logs_dir, step.name, started_at)

        primary = _primary_artifact(step)
        if primary is not None and not primary.exists():
            return _finish(
                step.name,
                started_at,
                stdout_path,
                stderr_path,
                exit_code=EXIT_CODE_NOT_FOUND,
                stderr=f"{step.name.value} artifact not found: {primary}\n",
            )

        if isinstance(step, PolicyCompileStep):
            step.output_path.mkdir(parents=True, exist_ok=True)

        try:
            command = render_command(self._template_for(step), self._fields_for(step, context))
        except CommandTemplateError as exc:
            return _finish(
                step.name,
                started_at,
                stdout_path,
                stderr_path,
                exit_code=EXIT_CODE_SPAWN_FAILURE,
                stderr=f"{exc}\n",
            )

        env = {
            ENV_BUNDLE_ROOT: str(context.bundle_root),
            ENV_APPLY_LOG_DIR: str(context.logs_dir),
            ENV_SNAPSHOT_DIR: str(context.snapshots_dir),
            ENV_HARDENING_MODE: context.mode.value,
            ENV_RUN_ID: context.run_id,
            ENV_STEP_NAME: step.name.value,
            ENV_TRACEPARENT: format_traceparent(context.trace_id, span_id),
        }
        try:
            result = self._runner.execute(
                command,
                cwd=context.bundle_root,
                timeout_seconds=self._settings.timeouts.for_step(step.name),
                env=env,
            )
        except (ProcessLaunchError, ValueError, OSError) as exc:
            self._logger.warning("apply_step_spawn_failed", step=step.name.value, error=str(exc))
            return _finish(
                step.name,
                started_at,
                stdout_path,
                stderr_path,
                exit_code=EXIT_CODE_SPAWN_FAILURE,
                stderr=f"{exc}\n",
                command=command,
            )

        if result.timed_out:
            timeout = self._settings.timeouts.for_step(step.name)
            self._logger.warning(
                "apply_step_timed_out", step=step.name.value, timeout_seconds=timeout
            )
            return _finish(
                step.name,
                started_at,
                stdout_path,
                stderr_path,
                exit_code=EXIT_CODE_TIMEOUT,
                stdout=result.stdout,
                stderr=result.stderr + f"\n{step.name.value} timed out after {timeout:g} seconds\n",
                command=command,
                timed_out=True,
            )

        return _finish(
            step.name,
            started_at,
            stdout_path,
            stderr_path,
            exit_code=result.returncode if result.returncode is not None else EXIT_CODE_TIMEOUT,
            stdout=result.stdout,
            stderr=result.stderr,
            command=command,
        )

    def _execute_template_import(
        self, step: TemplateImportStep, context: StepContext
    ) -> ApplyStepOutcome:
        started_at = utc_now()
        stdout_path, stderr_path = _log_paths(context.logs_dir, step.name, started_at)
        try:
            report = import_templates(
                step.template_root, step.destination, cancellation=context.cancellation
            )
        except FileNotFoundError as exc:
            return _finish(
                step.name,
                started_at,
                stdout_path,
                stderr_path,
                exit_code=EXIT_CODE_NOT_FOUND,
                stderr=f"{exc}\n",
            )
        except OSError as exc:
            return _finish(
                step.name, started_at, stdout_path, stderr_path, exit_code=1, stderr=f"{exc}\n"
            )

        if not report.copied:
            return _finish(
                step.name,
                started_at,
                stdout_path,
                stderr_path,
                exit_code=1,
                stdout=report.render(),
                stderr=f"No applicable template files found under {step.template_root}\n",
            )
        return _finish(
            step.name, started_at, stdout_path, stderr_path, exit_code=0, stdout=report.render()
        )

    def _template_for(self, step: PlannedStep) -> tuple[str, ...]:
        commands = self._settings.commands
        if isinstance(step, PolicyCompileStep):
            return commands.policy_compile
        if isinstance(step, ScriptStep):
            return commands.script
        if isinstance(step, DeclarativeApplyStep):
            return commands.declarative_apply
        if isinstance(step, LocalPolicyApplyStep):
            return commands.local_policy_apply
        raise TypeError(f"no command template for {type(step).__name__}")

    def _fields_for(self, step: PlannedStep, context: StepContext) -> dict[str, str]:
        fields = {
            "bundle_root": str(context.bundle_root),
            "log_dir": str(context.logs_dir),
            "snapshot_dir": str(context.snapshots_dir),
            "mode": context.mode.value,
            "run_id": context.run_id,
        }
        if isinstance(step, PolicyCompileStep):
            fields.update(
                module_path=str(step.module_path),
                output_path=str(step.output_path),
                data_file="" if step.data_file is None else str(step.data_file),
                verbose_flag=VERBOSE_FLAG if step.verbose else "",
            )
        elif isinstance(step, ScriptStep):
            fields.update(script_path=str(step.script_path), script_args=step.script_args or "")
        elif isinstance(step, DeclarativeApplyStep):
            fields.update(
                manifest_path=str(step.manifest_path),
                what_if_flag=WHAT_IF_FLAG if context.mode is HardeningMode.AUDIT_ONLY else "",
                verbose_flag=VERBOSE_FLAG if step.verbose else "",
            )
        elif isinstance(step, LocalPolicyApplyStep):
            fields.update(
                tool_path=(
                    str(step.tool_path)
                    if step.tool_path is not None
                    else self._settings.commands.local_policy_tool
                ),
                scope_flag=_SCOPE_FLAGS[step.scope],
                policy_file=str(step.policy_file),
            )
        return fields


def _primary_artifact(step: PlannedStep) -> Path | None:
    if isinstance(step, PolicyCompileStep):
        return step.module_path
    if isinstance(step, ScriptStep):
        return step.script_path
    if isinstance(step, DeclarativeApplyStep):
        return step.manifest_path
    if isinstance(step, LocalPolicyApplyStep):
        return step.policy_file
    return None


def _log_paths(logs_dir: Path, step: StepName, started_at: datetime) -> tuple[Path, Path]:
    stem = f"{step.value}_{started_at.strftime(LOG_STAMP_FORMAT)}"
    return logs_dir / f"{stem}.out.log", logs_dir / f"{stem}.err.log"


def _finish(
    step: StepName,
    started_at: datetime,
    stdout_path: Path,
    stderr_path: Path,
    *,
    exit_code: int,
    stdout: str = "",
    stderr: str = "",
    command: tuple[str, ...] = (),
    timed_out: bool = False,
) -> ApplyStepOutcome:
    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    stdout_path.write_text(stdout, encoding="utf-8")
    stderr_path.write_text(stderr, encoding="utf-8")
    return ApplyStepOutcome(
        step_name=step,
        exit_code=exit_code,
        started_at=started_at,
        finished_at=utc_now(),
        stdout_path=str(stdout_path),
        stderr_path=str(stderr_path),
        timed_out=timed_out,
        command=command,
    )


__all__ = [
    "CHECK_CONFLICT_FLAG",
    "CommandTemplateError",
    "StepContext",
    "StepExecutor",
    "VERBOSE_FLAG",
    "WHAT_IF_FLAG",
    "render_command",
]
