"""
applyforge: unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict config schema behavior, structured errors, profile overlays, and redaction.

What this test file should cover
- Built-in defaults validate and project onto typed settings.
- Rejects unknown keys and invalid types with actionable paths.
- Rejects embedded secrets in config files.
- Ensures redaction is recursive and non-destructive.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from applyforge.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)
from applyforge.config.settings import ApplySettings
from applyforge.constants import MAX_REBOOTS
from applyforge.domain.models import HardeningMode, StepName


def _issue_paths(overlay: dict[str, object]) -> dict[str, str]:
    result = validate_config(merge_config(default_config(), overlay))
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


@pytest.mark.unit
def test_defaults_validate_and_project_onto_settings() -> None:
    result = validate_config(default_config())
    assert result.is_valid, result.issues

    settings = ApplySettings.defaults()
    assert settings.default_mode is HardeningMode.SAFE
    assert settings.max_reboots == MAX_REBOOTS
    assert settings.lock_enabled is True
    assert settings.template_destination is None
    assert settings.audit_log_path is None
    assert settings.reboot.marker_paths == (Path("/var/run/reboot-required"),)
    assert settings.reboot.schedule_command == ()
    assert settings.commands.local_policy_tool == "LGPO.exe"


@pytest.mark.unit
def test_step_timeouts_cover_subprocess_steps_only() -> None:
    timeouts = ApplySettings.defaults().timeouts
    assert timeouts.for_step(StepName.SCRIPT) == timeouts.script_seconds
    assert timeouts.for_step(StepName.DECLARATIVE_APPLY) == timeouts.declarative_apply_seconds
    assert timeouts.for_step(StepName.POLICY_COMPILE) == timeouts.policy_compile_seconds
    assert timeouts.for_step(StepName.LOCAL_POLICY_APPLY) == timeouts.local_policy_apply_seconds
    assert timeouts.for_step(StepName.TEMPLATE_IMPORT) is None


@pytest.mark.unit
def test_unknown_keys_and_bad_types_report_paths() -> None:
    issues = _issue_paths(
        {
            "apply": {"max_reboots": "three", "lock_enabled": "yes"},
            "timeouts": {"script_seconds": 0},
            "commands": {"script": []},
            "observability": {"log_level": "TRACE"},
            "extras": {},
        }
    )
    assert issues["apply.max_reboots"] == "expected integer, got str"
    assert issues["apply.lock_enabled"] == "expected boolean, got str"
    assert issues["timeouts.script_seconds"] == "must be > 0.0"
    assert issues["commands.script"] == "must not be empty"
    assert "expected one of" in issues["observability.log_level"]
    assert issues["extras"] == "unknown field"


@pytest.mark.unit
def test_embedded_secrets_are_rejected() -> None:
    issues = _issue_paths({"reboot": {"apiToken": "abc123"}})
    assert issues["reboot.apiToken"] == "embedded secret values are forbidden in config files"


@pytest.mark.unit
def test_schema_version_mismatch_carries_migration_guidance() -> None:
    newer = ConfigSchemaVersion + 1
    issues = _issue_paths({"meta": {"schema_version": newer}})
    assert issues["meta.schema_version"] == migration_guidance(newer)
    assert "upgrade the applyforge runtime" in migration_guidance(newer)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


@pytest.mark.unit
def test_hardening_mode_spellings_are_normalized() -> None:
    result = validate_config(merge_config(default_config(), {"apply": {"default_mode": "AuditOnly"}}))
    assert result.config is not None
    assert result.config["apply"]["default_mode"] == HardeningMode.AUDIT_ONLY.value


@pytest.mark.unit
def test_profile_overlay_merges_and_revalidates() -> None:
    config = default_config()
    config["profiles"]["lab"] = {"apply": {"max_reboots": 1}, "snapshot": {"paths": ["/etc/hosts"]}}

    overlaid = apply_profile_overlay(config, "lab")
    assert overlaid["apply"]["max_reboots"] == 1
    assert overlaid["snapshot"]["paths"] == ["/etc/hosts"]
    assert overlaid["apply"]["default_mode"] == HardeningMode.SAFE.value

    assert apply_profile_overlay(config, None) == config
    with pytest.raises(ConfigValidationError, match="profile 'missing' is not defined"):
        apply_profile_overlay(config, "missing")


@pytest.mark.unit
def test_profiles_may_not_redefine_meta() -> None:
    config = default_config()
    config["profiles"]["bad"] = {"meta": {"schema_version": 1}}
    result = validate_config(config)
    paths = {issue.path for issue in result.issues}
    assert "profiles.bad" in paths


@pytest.mark.unit
def test_redaction_is_recursive_and_non_destructive() -> None:
    payload = {
        "reboot": {"schedule_command": ["shutdown", "-r"]},
        "nested": {"db_password": "hunter2", "inner": [{"clientSecret": "x", "keep": 1}]},
    }
    redacted = redact_config(payload)

    assert redacted["nested"]["db_password"] == "<redacted>"
    assert redacted["nested"]["inner"][0]["clientSecret"] == "<redacted>"
    assert redacted["nested"]["inner"][0]["keep"] == 1
    assert redacted["reboot"]["schedule_command"] == ["shutdown", "-r"]
    assert payload["nested"]["db_password"] == "hunter2"
    assert redact_config(["not", "a", "mapping"]) == {}
