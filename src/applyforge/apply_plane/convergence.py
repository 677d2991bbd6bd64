"""Convergence classification and the end-of-run blocking-failure gate."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Final

from applyforge.constants import MAX_REBOOTS
from applyforge.domain.models import ApplyStepOutcome, ConvergenceStatus

ROLLBACK_NOTICE: Final[str] = (
    "Rollback remains operator-initiated; no automatic rollback was performed."
)
AUDIT_UNAVAILABLE_FAILURE: Final[str] = (
    "Audit trail unavailable: the apply run could not be recorded."
)
AUDIT_INTEGRITY_FAILURE: Final[str] = (
    "Audit trail integrity verification failed: the hash chain does not validate."
)


def classify_convergence(
    step_count: int,
    any_failed: bool,
    reboot_pending: bool,
    reboot_count: int,
    max_reboots: int = MAX_REBOOTS,
) -> ConvergenceStatus:
    if step_count <= 0:
        return ConvergenceStatus.NOT_APPLICABLE
    if not reboot_pending and not any_failed:
        return ConvergenceStatus.CONVERGED
    if reboot_count >= max_reboots:
        return ConvergenceStatus.EXCEEDED
    return ConvergenceStatus.DIVERGED


def describe_step_failure(outcome: ApplyStepOutcome) -> str:
    if outcome.timed_out:
        return f"Step '{outcome.step_name.value}' timed out (exit code {outcome.exit_code})."
    return f"Step '{outcome.step_name.value}' failed with exit code {outcome.exit_code}."


def collect_blocking_failures(
    outcomes: Iterable[ApplyStepOutcome],
    audit_available: bool,
    audit_integrity: bool | None,
) -> tuple[str, ...]:
    """Every condition that forbids reporting mission completion, in a stable order.

    ``audit_integrity`` is ``None`` when verification never ran; only an
    explicit ``False`` counts as an integrity failure.
    """

    failures = [describe_step_failure(outcome) for outcome in outcomes if not outcome.succeeded]
    if not audit_available:
        failures.append(AUDIT_UNAVAILABLE_FAILURE)
    if audit_integrity is False:
        failures.append(AUDIT_INTEGRITY_FAILURE)
    return tuple(failures)


def format_blocking_failure_message(
    failures: Sequence[str],
    recovery_artifacts: Sequence[str],
) -> str:
    lines = [f"Mission completion blocked: {len(failures)} blocking failure(s) detected."]
    lines.append("Blocking failures:")
    lines.extend(f"  - {failure}" for failure in failures)
    if recovery_artifacts:
        lines.append("Recovery artifacts:")
        lines.extend(f"  - {artifact}" for artifact in recovery_artifacts)
    else:
        lines.append("Recovery artifacts: none were produced for this run.")
    lines.append(ROLLBACK_NOTICE)
    return "\n".join(lines)


__all__ = [
    "AUDIT_INTEGRITY_FAILURE",
    "AUDIT_UNAVAILABLE_FAILURE",
    "ROLLBACK_NOTICE",
    "classify_convergence",
    "collect_blocking_failures",
    "describe_step_failure",
    "format_blocking_failure_message",
]
