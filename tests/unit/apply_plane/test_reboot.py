"""
applyforge: unit tests for the reboot coordinator

File: tests/unit/apply_plane/test_reboot.py

Purpose
- Validate checkpoint persistence, the consume-once resume protocol, checkpoint
  rejection rules, and reboot probing.
"""

from __future__ import annotations

import json
import sys
from datetime import UTC, datetime
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from applyforge.apply_plane.errors import ResumeContextError
from applyforge.apply_plane.reboot import (
    RebootCoordinator,
    marker_file_probe,
    status_command_probe,
)
from applyforge.config.settings import RebootSettings
from applyforge.domain.models import RebootContext, StepName

_T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
_T1 = datetime(2026, 3, 1, 12, 5, 0, tzinfo=UTC)
_PLAN = (StepName.POLICY_COMPILE, StepName.SCRIPT, StepName.DECLARATIVE_APPLY)


def _context(root: Path, /, **overrides: object) -> RebootContext:
    values: dict[str, object] = {
        "bundle_root": str(root),
        "current_step_index": 2,
        "completed_steps": (StepName.POLICY_COMPILE, StepName.SCRIPT),
        "reboot_scheduled_at": _T0,
        "reboot_count": 0,
        "run_id": "run-1",
    }
    values.update(overrides)
    return RebootContext(**values)  # type: ignore[arg-type]


def _coordinator(**kwargs: object) -> RebootCoordinator:
    return RebootCoordinator(probes=(), clock=lambda: _T1, **kwargs)  # type: ignore[arg-type]


@pytest.mark.unit
def test_schedule_persists_incremented_checkpoint(bundle_root: Path) -> None:
    coordinator = _coordinator()
    scheduled = coordinator.schedule_reboot(_context(bundle_root))

    assert scheduled.reboot_count == 1
    assert scheduled.reboot_scheduled_at == _T1
    marker = RebootCoordinator.marker_path(bundle_root)
    assert marker == bundle_root / "Apply" / ".resume_marker.json"
    assert RebootContext.from_dict(json.loads(marker.read_text(encoding="utf-8"))) == scheduled
    assert coordinator.has_pending_resume(bundle_root)


@pytest.mark.unit
def test_resume_consumes_checkpoint_exactly_once(bundle_root: Path) -> None:
    coordinator = _coordinator()
    coordinator.schedule_reboot(_context(bundle_root))

    resumed = coordinator.resume_after_reboot(bundle_root, _PLAN)
    assert resumed is not None
    assert resumed.current_step_index == 2
    assert resumed.completed_steps == (StepName.POLICY_COMPILE, StepName.SCRIPT)
    assert not coordinator.has_pending_resume(bundle_root)
    assert coordinator.resume_after_reboot(bundle_root, _PLAN) is None


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overrides", "plan", "reason"),
    [
        ({"bundle_root": "/elsewhere"}, _PLAN, "does not match"),
        ({}, (), "no steps are planned"),
        ({"current_step_index": 3}, _PLAN, "outside the 3 planned step"),
        (
            {"completed_steps": (StepName.TEMPLATE_IMPORT,), "current_step_index": 1},
            _PLAN,
            "not part of the current plan",
        ),
    ],
)
def test_invalid_checkpoints_block_and_stay_on_disk(
    bundle_root: Path, overrides: dict[str, object], plan: tuple[StepName, ...], reason: str
) -> None:
    coordinator = _coordinator()
    marker = RebootCoordinator.marker_path(bundle_root)
    marker.parent.mkdir(parents=True)
    marker.write_text(json.dumps(_context(bundle_root, **overrides).to_dict()), encoding="utf-8")

    with capture_logs() as logs:
        with pytest.raises(ResumeContextError, match="operator decision") as excinfo:
            coordinator.resume_after_reboot(bundle_root, plan)

    assert reason in str(excinfo.value)
    assert str(excinfo.value).startswith("Resume context invalid:")
    assert marker.exists()
    assert any(entry["event"] == "apply_resume_rejected" for entry in logs)


@pytest.mark.unit
def test_unreadable_checkpoint_is_rejected(bundle_root: Path) -> None:
    marker = RebootCoordinator.marker_path(bundle_root)
    marker.parent.mkdir(parents=True)
    marker.write_text("{not json", encoding="utf-8")

    with pytest.raises(ResumeContextError, match="unreadable"):
        _coordinator().read_context(bundle_root)
    assert marker.exists()


@pytest.mark.unit
def test_probes_short_circuit_and_failures_count_as_no_reboot(tmp_path: Path) -> None:
    calls: list[str] = []

    def broken() -> bool:
        calls.append("broken")
        raise OSError("probe exploded")

    def yes() -> bool:
        calls.append("yes")
        return True

    def never() -> bool:
        calls.append("never")
        return False

    with capture_logs() as logs:
        assert RebootCoordinator(probes=(broken, yes, never)).detect_reboot_required() is True
    assert calls == ["broken", "yes"]
    assert any(entry["event"] == "apply_reboot_probe_failed" for entry in logs)

    assert RebootCoordinator(probes=(broken,)).detect_reboot_required() is False
    assert RebootCoordinator(probes=()).detect_reboot_required() is False


@pytest.mark.unit
def test_default_probes_follow_settings(tmp_path: Path) -> None:
    flag = tmp_path / "reboot-required"
    coordinator = RebootCoordinator(RebootSettings(marker_paths=(flag,)))
    assert coordinator.detect_reboot_required() is False
    flag.write_text("", encoding="utf-8")
    assert coordinator.detect_reboot_required() is True

    assert marker_file_probe(flag)() is True
    needs_restart = status_command_probe(
        [sys.executable, "-c", "raise SystemExit(1)"], reboot_exit_code=1
    )
    up_to_date = status_command_probe([sys.executable, "-c", "raise SystemExit(0)"])
    assert needs_restart() is True
    assert up_to_date() is False


@pytest.mark.unit
def test_schedule_command_failure_is_logged_not_raised(bundle_root: Path) -> None:
    settings = RebootSettings(
        marker_paths=(),
        schedule_command=(sys.executable, "-c", "raise SystemExit(4)"),
    )
    coordinator = RebootCoordinator(settings, probes=(), max_reboots=1)

    with capture_logs() as logs:
        first = coordinator.schedule_reboot(_context(bundle_root))
        second = coordinator.schedule_reboot(first)

    assert second.reboot_count == 2
    events = [entry["event"] for entry in logs]
    assert events.count("apply_reboot_schedule_failed") == 2
    assert "apply_reboot_limit_exceeded" in events
