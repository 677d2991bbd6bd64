"""
applyforge: preflight readiness check.

Purpose
- Invoke the bundle's external readiness script under a hard timeout and
  interpret its exit code and optional JSON output.

Functional requirements
- The external script decides what "ready" means; this runner only invokes,
  bounds, and interprets.
- Every failure mode is returned as a ``PreflightResult``; nothing raises.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Final

import structlog

from applyforge.apply_plane.executor import (
    CHECK_CONFLICT_FLAG,
    CommandTemplateError,
    render_command,
)
from applyforge.config.settings import ApplySettings
from applyforge.constants import (
    APPLY_DIR,
    EXIT_CODE_NOT_FOUND,
    EXIT_CODE_SPAWN_FAILURE,
    EXIT_CODE_TIMEOUT,
)
from applyforge.domain.models import PreflightRequest, PreflightResult, isoformat_z, utc_now
from applyforge.sandbox.process_runner import ProcessLaunchError, ProcessRunner

DEFAULT_MODULES_DIR: Final = APPLY_DIR / "Modules"


def _timestamp() -> str:
    return isoformat_z(utc_now())


def parse_preflight_output(stdout: str, exit_code: int) -> PreflightResult:
    """Interpret preflight output; the process exit code always wins over the JSON one."""

    text = stdout.strip()
    if not text:
        return PreflightResult(
            ok=exit_code == 0,
            exit_code=exit_code,
            timestamp=_timestamp(),
            issues=() if exit_code == 0 else ("Preflight produced no output",),
        )

    parsed = _parse_json_object(text)
    if parsed is not None:
        issues_raw = parsed.get("issues") or []
        if isinstance(issues_raw, str):
            issues_raw = [issues_raw]
        timestamp = parsed.get("timestamp")
        return PreflightResult(
            ok=parsed.get("ok") is True,
            exit_code=exit_code,
            timestamp=timestamp if isinstance(timestamp, str) and timestamp else _timestamp(),
            issues=tuple(str(issue) for issue in issues_raw),
        )

    return PreflightResult(
        ok=exit_code == 0,
        exit_code=exit_code,
        timestamp=_timestamp(),
        issues=(f"Preflight output (exit {exit_code}): {text}",),
    )


def _parse_json_object(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return {str(key).lower(): value for key, value in payload.items()}


class PreflightRunner:
    def __init__(
        self,
        settings: ApplySettings | None = None,
        *,
        runner: ProcessRunner | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else ApplySettings.defaults()
        self._runner = runner if runner is not None else ProcessRunner()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def script_path(self, bundle_root: Path) -> Path:
        configured = Path(self._settings.preflight_script)
        if configured.is_absolute():
            return configured
        return Path(bundle_root) / configured

    def run_preflight(self, request: PreflightRequest) -> PreflightResult:
        script = self.script_path(request.bundle_root)
        if not script.is_file():
            self._logger.warning("apply_preflight_script_missing", path=str(script))
            return PreflightResult(
                ok=False,
                exit_code=EXIT_CODE_NOT_FOUND,
                timestamp=_timestamp(),
                issues=(f"Preflight script not found at {script}",),
            )

        modules_path = (
            request.modules_path
            if request.modules_path is not None
            else Path(request.bundle_root) / DEFAULT_MODULES_DIR
        )
        fields = {
            "script_path": str(script),
            "bundle_root": str(request.bundle_root),
            "modules_path": str(modules_path),
            "policy_module_path": (
                "" if request.policy_module_path is None else str(request.policy_module_path)
            ),
            "manifest_path": (
                "" if request.bundle_manifest_path is None else str(request.bundle_manifest_path)
            ),
            "check_conflict_flag": CHECK_CONFLICT_FLAG if request.check_local_policy_conflict else "",
        }
        timeout = self._settings.timeouts.preflight_seconds

        try:
            command = render_command(self._settings.commands.preflight, fields)
            self._logger.info("apply_preflight_started", command=list(command))
            result = self._runner.execute(
                command, cwd=request.bundle_root, timeout_seconds=timeout
            )
        except (CommandTemplateError, ProcessLaunchError, OSError, ValueError) as exc:
            self._logger.error("apply_preflight_failed", error=str(exc))
            return PreflightResult(
                ok=False,
                exit_code=EXIT_CODE_SPAWN_FAILURE,
                timestamp=_timestamp(),
                issues=(f"Failed to execute preflight: {exc}",),
            )

        if result.timed_out:
            self._logger.warning("apply_preflight_timed_out", timeout_seconds=timeout)
            return PreflightResult(
                ok=False,
                exit_code=EXIT_CODE_TIMEOUT,
                timestamp=_timestamp(),
                issues=(f"Preflight script timed out after {timeout:g} seconds",),
            )

        if result.stderr.strip():
            self._logger.warning("apply_preflight_stderr", stderr=result.stderr.strip())
        exit_code = result.returncode if result.returncode is not None else EXIT_CODE_TIMEOUT
        parsed = parse_preflight_output(result.stdout, exit_code)
        self._logger.info(
            "apply_preflight_completed",
            ok=parsed.ok,
            exit_code=parsed.exit_code,
            issue_count=len(parsed.issues),
        )
        return parsed


__all__ = ["DEFAULT_MODULES_DIR", "PreflightRunner", "parse_preflight_output"]
