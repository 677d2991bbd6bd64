"""
applyforge: reboot coordinator.

Purpose
- Persist and validate the single cross-reboot checkpoint (``Apply/.resume_marker.json``).
- Probe the host for a pending reboot and optionally schedule one.

States
- Idle: no checkpoint file.
- PendingResume: checkpoint present; consumed exactly once by the next attempt.

Functional requirements
- Checkpoints are written by atomic replace and re-validated on every read.
- Invalid checkpoints are never repaired; they block continuation pending an
  operator decision and stay on disk for inspection.
- A failing probe counts as "no reboot required" and is logged.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Final, NoReturn

import structlog

from applyforge.apply_plane.errors import ResumeContextError
from applyforge.config.settings import RebootSettings
from applyforge.constants import MAX_REBOOTS, RESUME_MARKER_FILE
from applyforge.domain.models import RebootContext, StepName, utc_now
from applyforge.sandbox.process_runner import ProcessLaunchError, ProcessRunner
from applyforge.utils.fs import atomic_write_json

RebootProbe = Callable[[], bool]

_PROBE_TIMEOUT_SECONDS: Final[float] = 30.0
_OPERATOR_HINT: Final[str] = (
    "Automatic continuation is blocked pending an operator decision; "
    "review the checkpoint at {marker} and remove it to start over."
)


def marker_file_probe(path: Path) -> RebootProbe:
    """Reboot required while ``path`` exists (e.g. ``/var/run/reboot-required``)."""

    def probe() -> bool:
        return Path(path).exists()

    probe.__name__ = f"marker_file:{path}"
    return probe


def status_command_probe(
    command: Sequence[str],
    *,
    reboot_exit_code: int = 1,
    runner: ProcessRunner | None = None,
) -> RebootProbe:
    """Reboot required when ``command`` exits with ``reboot_exit_code``.

    ``needs-restarting -r`` follows this convention with exit code 1.
    """

    resolved_runner = runner if runner is not None else ProcessRunner()
    argv = tuple(command)

    def probe() -> bool:
        result = resolved_runner.execute(argv, cwd=Path.cwd(), timeout_seconds=_PROBE_TIMEOUT_SECONDS)
        return not result.timed_out and result.returncode == reboot_exit_code

    probe.__name__ = f"status_command:{' '.join(argv)}"
    return probe


class RebootCoordinator:
    def __init__(
        self,
        settings: RebootSettings | None = None,
        *,
        probes: Sequence[RebootProbe] | None = None,
        runner: ProcessRunner | None = None,
        max_reboots: int = MAX_REBOOTS,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else RebootSettings(marker_paths=())
        self._runner = runner if runner is not None else ProcessRunner()
        self._max_reboots = max_reboots
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        if probes is not None:
            self._probes = tuple(probes)
        else:
            self._probes = _default_probes(self._settings, self._runner)

    @property
    def max_reboots(self) -> int:
        return self._max_reboots

    @staticmethod
    def marker_path(bundle_root: Path) -> Path:
        return Path(bundle_root) / RESUME_MARKER_FILE

    def schedule_reboot(self, context: RebootContext) -> RebootContext:
        """Persist ``context`` with an incremented counter, then ask the host to reboot.

        Exceeding ``max_reboots`` is logged but does not stop scheduling; the
        convergence classifier reports it.
        """

        scheduled = dataclasses.replace(
            context,
            reboot_count=context.reboot_count + 1,
            reboot_scheduled_at=self._clock(),
        )
        marker = self.marker_path(Path(scheduled.bundle_root))
        marker.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_json(marker, scheduled.to_dict())
        self._logger.info(
            "apply_reboot_scheduled",
            marker=str(marker),
            next_step_index=scheduled.current_step_index,
            reboot_count=scheduled.reboot_count,
        )
        if scheduled.reboot_count > self._max_reboots:
            self._logger.warning(
                "apply_reboot_limit_exceeded",
                reboot_count=scheduled.reboot_count,
                max_reboots=self._max_reboots,
            )

        if self._settings.schedule_command:
            self._run_schedule_command()
        return scheduled

    def resume_after_reboot(
        self, bundle_root: Path, planned_steps: Sequence[StepName]
    ) -> RebootContext | None:
        """Consume the checkpoint for ``bundle_root``; ``None`` when Idle."""

        marker = self.marker_path(bundle_root)
        context = self.read_context(bundle_root)
        if context is None:
            return None

        planned = tuple(planned_steps)
        if context.bundle_root != str(bundle_root):
            self._reject(
                marker,
                f"checkpoint bundle root {context.bundle_root!r} does not match {str(bundle_root)!r}",
            )
        if not planned:
            self._reject(marker, "no steps are planned for the resumed attempt")
        if context.current_step_index >= len(planned):
            self._reject(
                marker,
                f"checkpoint step index {context.current_step_index} is outside the "
                f"{len(planned)} planned step(s)",
            )
        unplanned = [step.value for step in context.completed_steps if step not in planned]
        if unplanned:
            self._reject(marker, f"completed step(s) {unplanned} are not part of the current plan")

        marker.unlink()
        self._logger.info(
            "apply_resume_accepted",
            next_step_index=context.current_step_index,
            completed_steps=[step.value for step in context.completed_steps],
            reboot_count=context.reboot_count,
        )
        return context

    def detect_reboot_required(self) -> bool:
        for probe in self._probes:
            try:
                required = probe()
            except (OSError, ValueError, ProcessLaunchError) as exc:
                self._logger.warning(
                    "apply_reboot_probe_failed", probe=getattr(probe, "__name__", "probe"), error=str(exc)
                )
                continue
            if required:
                self._logger.info(
                    "apply_reboot_required", probe=getattr(probe, "__name__", "probe")
                )
                return True
        return False

    def has_pending_resume(self, bundle_root: Path) -> bool:
        return self.marker_path(bundle_root).exists()

    def read_context(self, bundle_root: Path) -> RebootContext | None:
        """Parse the checkpoint without consuming it; ``None`` when Idle."""

        marker = self.marker_path(bundle_root)
        if not marker.exists():
            return None
        try:
            payload = json.loads(marker.read_text(encoding="utf-8"))
            return RebootContext.from_dict(payload)
        except (OSError, ValueError) as exc:
            self._reject(marker, f"checkpoint is unreadable ({exc})")

    def reject_context(self, bundle_root: Path, reason: str) -> NoReturn:
        """Refuse the checkpoint for ``bundle_root``; it stays on disk."""

        self._reject(self.marker_path(bundle_root), reason)

    def _reject(self, marker: Path, reason: str) -> NoReturn:
        self._logger.error("apply_resume_rejected", marker=str(marker), reason=reason)
        raise ResumeContextError(
            f"Resume context invalid: {reason}. {_OPERATOR_HINT.format(marker=marker)}"
        )

    def _run_schedule_command(self) -> None:
        command = self._settings.schedule_command
        try:
            result = self._runner.execute(
                command, cwd=Path.cwd(), timeout_seconds=_PROBE_TIMEOUT_SECONDS
            )
        except (ProcessLaunchError, OSError, ValueError) as exc:
            self._logger.error("apply_reboot_schedule_failed", command=list(command), error=str(exc))
            return
        if not result.succeeded:
            self._logger.error(
                "apply_reboot_schedule_failed",
                command=list(command),
                exit_code=result.returncode,
                timed_out=result.timed_out,
            )


def _default_probes(settings: RebootSettings, runner: ProcessRunner) -> tuple[RebootProbe, ...]:
    probes: list[RebootProbe] = [marker_file_probe(path) for path in settings.marker_paths]
    if settings.status_command:
        probes.append(
            status_command_probe(
                settings.status_command,
                reboot_exit_code=settings.status_reboot_exit_code,
                runner=runner,
            )
        )
    return tuple(probes)


__all__ = [
    "RebootCoordinator",
    "RebootProbe",
    "marker_file_probe",
    "status_command_probe",
]
