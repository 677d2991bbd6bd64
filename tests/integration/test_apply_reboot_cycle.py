"""
applyforge: apply lifecycle integration tests

File: tests/integration/test_apply_reboot_cycle.py

Purpose
- Run a full five-step plan through ``create_orchestrator`` with the
  reference collaborators, pausing twice for a reboot and resuming from the
  checkpoint each time.
- Compare artifacts across runs and check the retained/superseded markers.
"""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from applyforge.apply_plane import create_orchestrator
from applyforge.collaborators.audit import JsonlAuditTrail
from applyforge.domain.models import (
    ApplyRequest,
    ContinuityMarker,
    ConvergenceStatus,
    LocalPolicyScope,
    StepName,
)

_COMPILE = """
import pathlib, sys
out = next(arg.split("=", 1)[1] for arg in sys.argv[1:] if arg.startswith("--output="))
pathlib.Path(out).mkdir(parents=True, exist_ok=True)
(pathlib.Path(out) / "localhost.mof").write_text("instance of Setting {}", encoding="utf-8")
print("compiled")
"""
_REBOOTING_SCRIPT = """
import pathlib, sys
print("hardened")
if len(sys.argv) > 1:
    pathlib.Path(sys.argv[1]).write_text("pending", encoding="utf-8")
"""
_REBOOTING_DECLARATIVE = """
import pathlib, sys
print("declarative", sys.argv[1:])
pathlib.Path({marker!r}).write_text("pending", encoding="utf-8")
"""
_DECLARATIVE = "import sys\nprint('declarative', sys.argv[1:])\n"
_LGPO = "import sys\nprint('lgpo', sys.argv[1:])\n"


@pytest.mark.integration
def test_full_plan_survives_two_reboots(
    tmp_path: Path, bundle_root: Path, make_settings, write_file
) -> None:
    marker = tmp_path / "reboot-required"
    settings = make_settings()

    compile_module = write_file(bundle_root / "Policy" / "compile.py", _COMPILE)
    script = write_file(bundle_root / "Scripts" / "harden.py", _REBOOTING_SCRIPT)
    manifest = write_file(
        bundle_root / "Manifest" / "apply.py",
        _REBOOTING_DECLARATIVE.format(marker=marker.as_posix()),
    )
    templates = tmp_path / "Templates"
    write_file(templates / "baseline.admx", "<policyDefinitions/>")
    write_file(templates / "en-US" / "baseline.adml", "<policyDefinitionResources/>")
    policy_file = write_file(bundle_root / "Policy" / "machine.pol", "PReg")
    lgpo = write_file(tmp_path / "tools" / "lgpo.py", _LGPO)

    request = ApplyRequest(
        bundle_root=bundle_root,
        policy_module_path=compile_module,
        script_path=script,
        script_args=marker.as_posix(),
        declarative_manifest_path=manifest,
        template_root_path=templates,
        local_policy_file=policy_file,
        local_policy_scope=LocalPolicyScope.MACHINE,
        local_policy_tool_path=lgpo,
    )

    first = create_orchestrator(bundle_root, settings).run(request)
    assert not first.is_mission_complete
    assert first.reboot_count == 1
    assert first.convergence_status is ConvergenceStatus.DIVERGED
    assert [step.step_name for step in first.steps] == [StepName.POLICY_COMPILE, StepName.SCRIPT]
    assert (bundle_root / "Apply" / "Dsc" / "localhost.mof").is_file()

    marker.unlink()
    second = create_orchestrator(bundle_root, settings).run(request)
    assert second.run_id == first.run_id
    assert second.snapshot_id == first.snapshot_id
    assert second.reboot_count == 2
    assert second.steps[-1].step_name is StepName.DECLARATIVE_APPLY

    marker.unlink()
    final = create_orchestrator(bundle_root, settings).run(request)

    assert final.is_mission_complete
    assert final.integrity_verified
    assert final.run_id == first.run_id
    assert final.reboot_count == 2
    assert final.convergence_status is ConvergenceStatus.CONVERGED
    assert [step.step_name for step in final.steps] == [
        StepName.POLICY_COMPILE,
        StepName.SCRIPT,
        StepName.DECLARATIVE_APPLY,
        StepName.TEMPLATE_IMPORT,
        StepName.LOCAL_POLICY_APPLY,
    ]
    assert all(step.succeeded for step in final.steps)

    definitions = bundle_root / "Apply" / "PolicyDefinitions"
    assert (definitions / "baseline.admx").is_file()
    assert (definitions / "en-US" / "baseline.adml").is_file()

    (local_policy,) = [s for s in final.steps if s.step_name is StepName.LOCAL_POLICY_APPLY]
    assert "/m" in Path(local_policy.stdout_path).read_text(encoding="utf-8")

    assert not (bundle_root / "Apply" / ".resume_marker.json").exists()
    summary = json.loads((bundle_root / "Apply" / "apply_run.json").read_text(encoding="utf-8"))
    assert summary["status"] == "completed"
    assert len(summary["steps"]) == 5

    trail = JsonlAuditTrail(bundle_root / "Apply" / "audit_trail.jsonl")
    assert [entry.result for entry in trail.read_entries()] == ["paused", "paused", "success"]
    assert trail.verify_integrity()


@pytest.mark.integration
def test_prior_run_comparison_marks_retained_and_superseded(
    bundle_root: Path, make_settings, write_file
) -> None:
    settings = make_settings()
    script = write_file(bundle_root / "Scripts" / "harden.py", "print('baseline v1')\n")
    manifest = write_file(bundle_root / "Manifest" / "apply.py", _DECLARATIVE)
    request = ApplyRequest(
        bundle_root=bundle_root,
        script_path=script,
        declarative_manifest_path=manifest,
        skip_snapshot=True,
    )

    baseline = create_orchestrator(bundle_root, settings).run(request)
    assert all(step.continuity_marker is None for step in baseline.steps)

    again = create_orchestrator(bundle_root, settings).run(
        dataclasses.replace(request, prior_run_id=baseline.run_id)
    )
    assert [step.continuity_marker for step in again.steps] == [
        ContinuityMarker.RETAINED,
        ContinuityMarker.RETAINED,
    ]

    script.write_text("print('baseline v2')\n", encoding="utf-8")
    changed = create_orchestrator(bundle_root, settings).run(
        dataclasses.replace(request, prior_run_id=again.run_id)
    )
    markers = {step.step_name: step.continuity_marker for step in changed.steps}
    assert markers == {
        StepName.SCRIPT: ContinuityMarker.SUPERSEDED,
        StepName.DECLARATIVE_APPLY: ContinuityMarker.RETAINED,
    }

    for run in (baseline, again, changed):
        assert (bundle_root / "Apply" / "Runs" / f"{run.run_id}.json").is_file()
        evidence = list((bundle_root / "Evidence" / run.run_id / "script").glob("*/metadata.json"))
        assert len(evidence) == 1
