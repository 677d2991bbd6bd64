"""Unit and property tests for convergence classification and the blocking gate."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from applyforge.apply_plane.convergence import (
    AUDIT_INTEGRITY_FAILURE,
    AUDIT_UNAVAILABLE_FAILURE,
    ROLLBACK_NOTICE,
    classify_convergence,
    collect_blocking_failures,
    format_blocking_failure_message,
)
from applyforge.domain.models import ApplyStepOutcome, ConvergenceStatus, StepName

_T0 = datetime(2026, 3, 1, tzinfo=UTC)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("step_count", "any_failed", "reboot_pending", "reboot_count", "expected"),
    [
        (0, True, True, 9, ConvergenceStatus.NOT_APPLICABLE),
        (3, False, False, 0, ConvergenceStatus.CONVERGED),
        (3, False, False, 5, ConvergenceStatus.CONVERGED),
        (3, True, False, 0, ConvergenceStatus.DIVERGED),
        (3, False, True, 2, ConvergenceStatus.DIVERGED),
        (3, False, True, 3, ConvergenceStatus.EXCEEDED),
        (3, True, False, 4, ConvergenceStatus.EXCEEDED),
    ],
)
def test_classification_table(
    step_count: int,
    any_failed: bool,
    reboot_pending: bool,
    reboot_count: int,
    expected: ConvergenceStatus,
) -> None:
    assert classify_convergence(step_count, any_failed, reboot_pending, reboot_count) is expected


@pytest.mark.unit
@settings(max_examples=200, derandomize=True, deadline=None)
@given(
    step_count=st.integers(min_value=-2, max_value=10),
    any_failed=st.booleans(),
    reboot_pending=st.booleans(),
    reboot_count=st.integers(min_value=0, max_value=10),
    max_reboots=st.integers(min_value=1, max_value=5),
)
def test_classification_is_total_and_consistent(
    step_count: int,
    any_failed: bool,
    reboot_pending: bool,
    reboot_count: int,
    max_reboots: int,
) -> None:
    status = classify_convergence(step_count, any_failed, reboot_pending, reboot_count, max_reboots)
    if step_count <= 0:
        assert status is ConvergenceStatus.NOT_APPLICABLE
    elif status is ConvergenceStatus.CONVERGED:
        assert not any_failed and not reboot_pending
    elif status is ConvergenceStatus.EXCEEDED:
        assert reboot_count >= max_reboots
    else:
        assert status is ConvergenceStatus.DIVERGED
        assert reboot_count < max_reboots


@pytest.mark.unit
def test_blocking_failures_are_ordered_steps_then_audit() -> None:
    outcomes = [
        ApplyStepOutcome(StepName.POLICY_COMPILE, 0, _T0, _T0),
        ApplyStepOutcome(StepName.SCRIPT, 5, _T0, _T0),
        ApplyStepOutcome(StepName.DECLARATIVE_APPLY, -2, _T0, _T0, timed_out=True),
    ]
    failures = collect_blocking_failures(outcomes, audit_available=False, audit_integrity=False)
    assert failures == (
        "Step 'script' failed with exit code 5.",
        "Step 'declarative-apply' timed out (exit code -2).",
        AUDIT_UNAVAILABLE_FAILURE,
        AUDIT_INTEGRITY_FAILURE,
    )
    assert collect_blocking_failures(outcomes[:1], True, None) == ()
    assert collect_blocking_failures([], True, True) == ()


@pytest.mark.unit
def test_blocking_message_lists_failures_artifacts_and_rollback_notice() -> None:
    message = format_blocking_failure_message(
        ["Step 'script' failed with exit code 5."],
        ["/b/Apply/Snapshots/snap-1/rollback.sh"],
    )
    lines = message.splitlines()
    assert lines[0] == "Mission completion blocked: 1 blocking failure(s) detected."
    assert "  - Step 'script' failed with exit code 5." in lines
    assert "  - /b/Apply/Snapshots/snap-1/rollback.sh" in lines
    assert lines[-1] == ROLLBACK_NOTICE

    bare = format_blocking_failure_message(["x"], [])
    assert "Recovery artifacts: none were produced for this run." in bare
