"""
applyforge: unit tests for preflight

File: tests/unit/apply_plane/test_preflight.py

Purpose
- Validate preflight output interpretation and the runner's failure modes.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from applyforge.apply_plane.preflight import PreflightRunner, parse_preflight_output
from applyforge.constants import EXIT_CODE_NOT_FOUND, EXIT_CODE_SPAWN_FAILURE, EXIT_CODE_TIMEOUT
from applyforge.domain.models import PreflightRequest

_PREFLIGHT = Path("Apply") / "Preflight" / "preflight"


@pytest.mark.unit
def test_json_output_is_case_insensitive_and_keeps_process_exit_code() -> None:
    result = parse_preflight_output(
        json.dumps({"Ok": False, "ExitCode": 0, "Issues": ["module missing"], "Timestamp": "t0"}),
        3,
    )
    assert result.ok is False
    assert result.exit_code == 3
    assert result.issues == ("module missing",)
    assert result.timestamp == "t0"

    single = parse_preflight_output('{"ok": true, "issues": "one issue"}', 0)
    assert single.ok is True
    assert single.issues == ("one issue",)


@pytest.mark.unit
def test_truthy_non_boolean_ok_is_not_ok() -> None:
    assert parse_preflight_output('{"ok": "yes"}', 0).ok is False


@pytest.mark.unit
def test_empty_and_unparseable_output() -> None:
    assert parse_preflight_output("", 0).ok is True
    assert parse_preflight_output("  \n", 0).issues == ()

    failed_silent = parse_preflight_output("", 2)
    assert failed_silent.ok is False
    assert failed_silent.issues == ("Preflight produced no output",)

    prose = parse_preflight_output("all good\n", 0)
    assert prose.ok is True
    assert prose.issues == ("Preflight output (exit 0): all good",)

    array = parse_preflight_output("[1, 2]", 1)
    assert array.ok is False
    assert array.issues == ("Preflight output (exit 1): [1, 2]",)


@pytest.mark.unit
def test_missing_script_is_not_found(make_settings, bundle_root) -> None:
    result = PreflightRunner(make_settings()).run_preflight(PreflightRequest(bundle_root=bundle_root))
    assert result.ok is False
    assert result.exit_code == EXIT_CODE_NOT_FOUND
    assert "Preflight script not found" in result.issues[0]


@pytest.mark.unit
def test_runner_passes_flags_and_parses_json(make_settings, bundle_root, write_file) -> None:
    write_file(
        bundle_root / _PREFLIGHT,
        "import json, sys\n"
        "print(json.dumps({'ok': True, 'issues': sys.argv[1:]}))\n",
    )
    runner = PreflightRunner(make_settings())

    result = runner.run_preflight(
        PreflightRequest(bundle_root=bundle_root, check_local_policy_conflict=True)
    )

    assert result.ok is True
    assert result.exit_code == 0
    assert result.issues == (f"--bundle-root={bundle_root}", "--check-local-policy-conflict")


@pytest.mark.unit
def test_runner_reports_timeout_and_template_errors(make_settings, bundle_root, write_file) -> None:
    write_file(bundle_root / _PREFLIGHT, "import time\ntime.sleep(30)\n")

    slow = PreflightRunner(make_settings(timeouts={"preflight_seconds": 0.5}))
    timed_out = slow.run_preflight(PreflightRequest(bundle_root=bundle_root))
    assert timed_out.exit_code == EXIT_CODE_TIMEOUT
    assert timed_out.issues == ("Preflight script timed out after 0.5 seconds",)

    broken = PreflightRunner(make_settings(commands={"preflight": ["{interpreter}"]}))
    failed = broken.run_preflight(PreflightRequest(bundle_root=bundle_root))
    assert failed.exit_code == EXIT_CODE_SPAWN_FAILURE
    assert failed.issues[0].startswith("Failed to execute preflight:")


@pytest.mark.unit
def test_absolute_configured_script_path_is_used_verbatim(make_settings, tmp_path: Path) -> None:
    absolute = tmp_path / "tools" / "ready"
    runner = PreflightRunner(make_settings(preflight={"script": str(absolute)}))
    assert runner.script_path(tmp_path / "bundle") == absolute
    assert PreflightRunner(make_settings()).script_path(tmp_path) == tmp_path / _PREFLIGHT
