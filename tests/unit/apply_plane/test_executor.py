"""
applyforge: unit tests for the step executor

File: tests/unit/apply_plane/test_executor.py

Purpose
- Validate argv rendering, environment injection, captured-output persistence,
  and the synthetic exit codes the executor reports instead of raising.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from applyforge.apply_plane.executor import (
    CommandTemplateError,
    StepContext,
    StepExecutor,
    render_command,
)
from applyforge.apply_plane.plan import (
    DeclarativeApplyStep,
    LocalPolicyApplyStep,
    PolicyCompileStep,
    ScriptStep,
    TemplateImportStep,
)
from applyforge.constants import EXIT_CODE_NOT_FOUND, EXIT_CODE_SPAWN_FAILURE, EXIT_CODE_TIMEOUT
from applyforge.domain.ids import generate_trace_id
from applyforge.domain.models import HardeningMode, LocalPolicyScope, StepName

_ECHO = """
import json, os, sys
keys = [k for k in os.environ if k.startswith("APPLYFORGE_") or k == "TRACEPARENT"]
print(json.dumps({"argv": sys.argv[1:], "env": {k: os.environ[k] for k in keys}}))
"""


def _context(bundle_root: Path, mode: HardeningMode = HardeningMode.SAFE) -> StepContext:
    return StepContext(
        bundle_root=bundle_root,
        logs_dir=bundle_root / "Apply" / "Logs",
        snapshots_dir=bundle_root / "Apply" / "Snapshots",
        mode=mode,
        run_id="run-test",
        trace_id=generate_trace_id(),
    )


def _stdout_json(path: str) -> dict[str, object]:
    return json.loads(Path(path).read_text(encoding="utf-8"))


@pytest.mark.unit
def test_render_command_drops_empty_tokens_and_splits_script_args() -> None:
    argv = render_command(
        ["run", "{script_path}", "{script_args}", "--flag={extra}", "{extra}"],
        {"script_path": "/b/s.py", "script_args": "--level 2 'two words'", "extra": ""},
    )
    assert argv == ("run", "/b/s.py", "--level", "2", "two words")

    with pytest.raises(CommandTemplateError, match="unknown placeholder"):
        render_command(["{missing}"], {})


@pytest.mark.unit
def test_script_step_runs_with_injected_environment(make_settings, bundle_root, write_file) -> None:
    script = write_file(bundle_root / "Scripts" / "echo.py", _ECHO)
    executor = StepExecutor(make_settings())
    context = _context(bundle_root)

    outcome = executor.execute(ScriptStep(script_path=script, script_args="-x 1"), context)

    assert outcome.succeeded, Path(outcome.stderr_path).read_text(encoding="utf-8")
    assert outcome.step_name is StepName.SCRIPT
    assert outcome.command == (sys.executable, str(script), "-x", "1")
    payload = _stdout_json(outcome.stdout_path)
    assert payload["argv"] == ["-x", "1"]
    env = payload["env"]
    assert env["APPLYFORGE_BUNDLE_ROOT"] == str(bundle_root)
    assert env["APPLYFORGE_HARDENING_MODE"] == "safe"
    assert env["APPLYFORGE_RUN_ID"] == "run-test"
    assert env["APPLYFORGE_STEP_NAME"] == "script"
    assert env["TRACEPARENT"].startswith(f"00-{context.trace_id}-")

    stdout_name = Path(outcome.stdout_path).name
    assert stdout_name.startswith("script_") and stdout_name.endswith(".out.log")
    assert Path(outcome.stdout_path).parent == context.logs_dir
    assert Path(outcome.stderr_path).is_file()


@pytest.mark.unit
def test_missing_primary_artifact_reports_not_found(make_settings, bundle_root) -> None:
    executor = StepExecutor(make_settings())
    outcome = executor.execute(
        ScriptStep(script_path=bundle_root / "absent.py"), _context(bundle_root)
    )
    assert outcome.exit_code == EXIT_CODE_NOT_FOUND
    assert outcome.command == ()
    assert "script artifact not found" in Path(outcome.stderr_path).read_text(encoding="utf-8")


@pytest.mark.unit
def test_nonzero_exit_is_an_outcome_not_an_exception(make_settings, bundle_root, write_file) -> None:
    script = write_file(bundle_root / "fail.py", "import sys\nsys.stderr.write('boom')\nsys.exit(7)\n")
    outcome = StepExecutor(make_settings()).execute(
        ScriptStep(script_path=script), _context(bundle_root)
    )
    assert outcome.exit_code == 7
    assert not outcome.succeeded
    assert Path(outcome.stderr_path).read_text(encoding="utf-8") == "boom"


@pytest.mark.unit
def test_timeout_reports_synthetic_exit_code(make_settings, bundle_root, write_file) -> None:
    script = write_file(bundle_root / "slow.py", "import time\ntime.sleep(30)\n")
    settings = make_settings(timeouts={"script_seconds": 0.5})

    outcome = StepExecutor(settings).execute(ScriptStep(script_path=script), _context(bundle_root))

    assert outcome.exit_code == EXIT_CODE_TIMEOUT
    assert outcome.timed_out
    assert "timed out after 0.5 seconds" in Path(outcome.stderr_path).read_text(encoding="utf-8")


@pytest.mark.unit
def test_template_error_and_spawn_failure_report_spawn_code(
    make_settings, bundle_root, write_file
) -> None:
    script = write_file(bundle_root / "ok.py", "print('ok')\n")

    bad_template = make_settings(commands={"script": ["{interpreter}", "{script_path}"]})
    outcome = StepExecutor(bad_template).execute(ScriptStep(script_path=script), _context(bundle_root))
    assert outcome.exit_code == EXIT_CODE_SPAWN_FAILURE
    assert "unknown placeholder" in Path(outcome.stderr_path).read_text(encoding="utf-8")

    missing_binary = make_settings(
        commands={"script": [str(bundle_root / "no-such-interpreter"), "{script_path}"]}
    )
    outcome = StepExecutor(missing_binary).execute(
        ScriptStep(script_path=script), _context(bundle_root)
    )
    assert outcome.exit_code == EXIT_CODE_SPAWN_FAILURE
    assert "failed to start" in Path(outcome.stderr_path).read_text(encoding="utf-8")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("mode", "expected_argv"),
    [
        (HardeningMode.AUDIT_ONLY, ["--what-if"]),
        (HardeningMode.SAFE, []),
        (HardeningMode.FULL, []),
    ],
)
def test_declarative_apply_passes_what_if_only_in_audit_mode(
    make_settings, bundle_root, write_file, mode: HardeningMode, expected_argv: list[str]
) -> None:
    manifest = write_file(bundle_root / "Manifest" / "apply.py", _ECHO)
    outcome = StepExecutor(make_settings()).execute(
        DeclarativeApplyStep(manifest_path=manifest), _context(bundle_root, mode)
    )
    assert outcome.succeeded
    assert _stdout_json(outcome.stdout_path)["argv"] == expected_argv


@pytest.mark.unit
def test_policy_compile_creates_output_directory(make_settings, bundle_root, write_file) -> None:
    module = write_file(bundle_root / "Policy" / "compile.py", _ECHO)
    output = bundle_root / "Apply" / "Dsc"

    outcome = StepExecutor(make_settings()).execute(
        PolicyCompileStep(module_path=module, output_path=output), _context(bundle_root)
    )

    assert outcome.succeeded
    assert output.is_dir()
    assert _stdout_json(outcome.stdout_path)["argv"] == [f"--output={output}"]


@pytest.mark.unit
def test_local_policy_apply_renders_scope_flag(make_settings, bundle_root, write_file) -> None:
    tool = write_file(bundle_root / "Tools" / "lgpo.py", _ECHO)
    policy = write_file(bundle_root / "Policy" / "user.pol", "")

    outcome = StepExecutor(make_settings()).execute(
        LocalPolicyApplyStep(policy_file=policy, scope=LocalPolicyScope.USER, tool_path=tool),
        _context(bundle_root),
    )

    assert outcome.succeeded
    assert _stdout_json(outcome.stdout_path)["argv"] == ["/u", str(policy)]


@pytest.mark.unit
def test_template_import_outcomes(make_settings, bundle_root, write_file) -> None:
    executor = StepExecutor(make_settings())
    context = _context(bundle_root)
    destination = bundle_root / "Apply" / "PolicyDefinitions"

    missing = executor.execute(
        TemplateImportStep(template_root=bundle_root / "absent", destination=destination), context
    )
    assert missing.exit_code == EXIT_CODE_NOT_FOUND

    empty_root = bundle_root / "Empty"
    write_file(empty_root / "notes.txt", "nothing here")
    empty = executor.execute(
        TemplateImportStep(template_root=empty_root, destination=destination), context
    )
    assert empty.exit_code == 1
    assert "No applicable template files" in Path(empty.stderr_path).read_text(encoding="utf-8")

    full_root = bundle_root / "Templates"
    write_file(full_root / "Base.admx", "<admx/>")
    imported = executor.execute(
        TemplateImportStep(template_root=full_root, destination=destination), context
    )
    assert imported.succeeded
    assert (destination / "Base.admx").is_file()
    assert "admx=1 adml=0" in Path(imported.stdout_path).read_text(encoding="utf-8")
