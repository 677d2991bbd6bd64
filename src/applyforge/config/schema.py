"""
applyforge: configuration schema and validation.

The schema is a table of sections, each mapping a key to a rule. A rule takes
the raw value plus its dotted path and either returns the normalized value or
records a ``ConfigValidationIssue`` and returns ``_INVALID``. Validation never
stops at the first problem; callers get every issue with its path.

Profiles (``[profiles.<name>]``) are partial overlays validated with the same
rules; ``audit`` and ``enforce`` ship built in and select a hardening mode.
Keys that look like credentials are refused outright: secrets belong in the
environment, not in ``applyforge.toml``.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from applyforge.constants import (
    CONFIG_SCHEMA_VERSION,
    DECLARATIVE_APPLY_TIMEOUT_SECONDS,
    LOCAL_POLICY_APPLY_TIMEOUT_SECONDS,
    MAX_REBOOTS,
    POLICY_COMPILE_TIMEOUT_SECONDS,
    PREFLIGHT_SCRIPT,
    PREFLIGHT_TIMEOUT_SECONDS,
    SCRIPT_TIMEOUT_SECONDS,
)
from applyforge.domain.models import HardeningMode

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("audit", "enforce")

# Resolved against the config file's directory; "" means "derive from the bundle root".
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("apply", "template_destination"),
    ("apply", "lcm_state_path"),
    ("apply", "audit_log_path"),
    ("apply", "evidence_root"),
    ("observability", "log_dir"),
)

REDACTED_VALUE: Final[str] = "<redacted>"

_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")
_CAMEL_HUMP = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class ApplySection(TypedDict):
    default_mode: str
    max_reboots: int
    lock_enabled: bool
    template_destination: str
    lcm_state_path: str
    audit_log_path: str
    evidence_root: str


class TimeoutsConfig(TypedDict):
    script_seconds: float
    declarative_apply_seconds: float
    policy_compile_seconds: float
    local_policy_apply_seconds: float
    preflight_seconds: float


class CommandsConfig(TypedDict):
    script: list[str]
    policy_compile: list[str]
    declarative_apply: list[str]
    local_policy_apply: list[str]
    local_policy_tool: str
    preflight: list[str]


class RebootConfig(TypedDict):
    marker_paths: list[str]
    status_command: list[str]
    status_reboot_exit_code: int
    schedule_command: list[str]


class SnapshotConfig(TypedDict):
    paths: list[str]


class PreflightConfig(TypedDict):
    script: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class ApplyforgeConfig(TypedDict):
    meta: MetaConfig
    apply: ApplySection
    timeouts: TimeoutsConfig
    commands: CommandsConfig
    reboot: RebootConfig
    snapshot: SnapshotConfig
    preflight: PreflightConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, object]]


DEFAULT_CONFIG: Final[ApplyforgeConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "apply": {
        "default_mode": HardeningMode.SAFE.value,
        "max_reboots": MAX_REBOOTS,
        "lock_enabled": True,
        "template_destination": "",
        "lcm_state_path": "",
        "audit_log_path": "",
        "evidence_root": "",
    },
    "timeouts": {
        "script_seconds": SCRIPT_TIMEOUT_SECONDS,
        "declarative_apply_seconds": DECLARATIVE_APPLY_TIMEOUT_SECONDS,
        "policy_compile_seconds": POLICY_COMPILE_TIMEOUT_SECONDS,
        "local_policy_apply_seconds": LOCAL_POLICY_APPLY_TIMEOUT_SECONDS,
        "preflight_seconds": PREFLIGHT_TIMEOUT_SECONDS,
    },
    "commands": {
        "script": ["{script_path}", "{script_args}"],
        "policy_compile": [
            "{module_path}",
            "--output={output_path}",
            "--data-file={data_file}",
            "{verbose_flag}",
        ],
        "declarative_apply": [
            "dsc",
            "config",
            "set",
            "{what_if_flag}",
            "{verbose_flag}",
            "--file={manifest_path}",
        ],
        "local_policy_apply": ["{tool_path}", "{scope_flag}", "{policy_file}"],
        "local_policy_tool": "LGPO.exe",
        "preflight": [
            "{script_path}",
            "--bundle-root={bundle_root}",
            "--modules-path={modules_path}",
            "--policy-module-path={policy_module_path}",
            "--manifest-path={manifest_path}",
            "{check_conflict_flag}",
        ],
    },
    "reboot": {
        "marker_paths": ["/var/run/reboot-required"],
        "status_command": [],
        "status_reboot_exit_code": 1,
        "schedule_command": [],
    },
    "snapshot": {
        "paths": [],
    },
    "preflight": {
        "script": PREFLIGHT_SCRIPT.as_posix(),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "redact_secrets": True,
        "log_to_stdout": False,
    },
    "profiles": {
        "audit": {
            "apply": {"default_mode": HardeningMode.AUDIT_ONLY.value},
        },
        "enforce": {
            "apply": {"default_mode": HardeningMode.FULL.value},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized payload, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


def default_config() -> ApplyforgeConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    relation, remedy = (
        ("older", "upgrade applyforge.toml to the current schema")
        if found_version < ConfigSchemaVersion
        else ("newer", "upgrade the applyforge runtime")
    )
    return (
        f"schema version {found_version} is {relation} than supported "
        f"{ConfigSchemaVersion}; {remedy}"
    )


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; mappings merge, everything else replaces."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping):
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile onto ``config`` and re-validate; ``None`` or blank is a no-op."""

    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)

    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues: list[ConfigValidationIssue] = []
    normalized = _check_root(config, "", issues, partial=False)
    if issues or not isinstance(normalized, dict):
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with credential-like keys masked; non-mappings yield ``{}``."""

    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

_INVALID: Final = object()
_Issues = list[ConfigValidationIssue]
_Rule = Callable[[object, str, _Issues], object]


def _reject(issues: _Issues, path: str, message: str) -> object:
    issues.append(ConfigValidationIssue(path=path, message=message))
    return _INVALID


def _type_name(value: object) -> str:
    return type(value).__name__


def _text(value: object, path: str, issues: _Issues) -> object:
    if not isinstance(value, str):
        return _reject(issues, path, f"expected string, got {_type_name(value)}")
    stripped = value.strip()
    return stripped or _reject(issues, path, "must not be empty")


def _path_text(value: object, path: str, issues: _Issues) -> object:
    parsed = _text(value, path, issues)
    if isinstance(parsed, str) and "\x00" in parsed:
        return _reject(issues, path, "must not contain NUL bytes")
    return parsed


def _optional_path(value: object, path: str, issues: _Issues) -> object:
    if isinstance(value, str) and not value.strip():
        return ""
    return _path_text(value, path, issues)


def _boolean(value: object, path: str, issues: _Issues) -> object:
    if isinstance(value, bool):
        return value
    return _reject(issues, path, f"expected boolean, got {_type_name(value)}")


def _integer(*, minimum: int | None = None) -> _Rule:
    def rule(value: object, path: str, issues: _Issues) -> object:
        if isinstance(value, bool) or not isinstance(value, int):
            return _reject(issues, path, f"expected integer, got {_type_name(value)}")
        if minimum is not None and value < minimum:
            return _reject(issues, path, f"must be >= {minimum}")
        return value

    return rule


def _positive_seconds(value: object, path: str, issues: _Issues) -> object:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return _reject(issues, path, f"expected number, got {_type_name(value)}")
    seconds = float(value)
    if not math.isfinite(seconds):
        return _reject(issues, path, "must be finite")
    if seconds <= 0.0:
        return _reject(issues, path, "must be > 0.0")
    return seconds


def _words(*, allow_empty: bool) -> _Rule:
    def rule(value: object, path: str, issues: _Issues) -> object:
        if not isinstance(value, (list, tuple)):
            return _reject(issues, path, f"expected array of strings, got {_type_name(value)}")
        for index, item in enumerate(value):
            if not isinstance(item, str) or not item.strip():
                return _reject(issues, f"{path}[{index}]", "expected non-empty string")
        if not value and not allow_empty:
            return _reject(issues, path, "must not be empty")
        return list(value)

    return rule


def _one_of(choices: tuple[str, ...]) -> _Rule:
    def rule(value: object, path: str, issues: _Issues) -> object:
        parsed = _text(value, path, issues)
        if parsed is _INVALID or parsed in choices:
            return parsed
        return _reject(
            issues, path, f"invalid value {parsed!r}; expected one of: {', '.join(sorted(choices))}"
        )

    return rule


def _hardening_mode(value: object, path: str, issues: _Issues) -> object:
    parsed = _text(value, path, issues)
    if not isinstance(parsed, str):
        return parsed
    try:
        return HardeningMode.parse(parsed).value
    except ValueError as exc:
        return _reject(issues, path, str(exc))


def _schema_version(value: object, path: str, issues: _Issues) -> object:
    parsed = _integer(minimum=1)(value, path, issues)
    if isinstance(parsed, int) and parsed != ConfigSchemaVersion:
        _reject(issues, path, migration_guidance(parsed))
    return parsed


_SECTIONS: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _schema_version},
    "apply": {
        "default_mode": _hardening_mode,
        "max_reboots": _integer(minimum=1),
        "lock_enabled": _boolean,
        "template_destination": _optional_path,
        "lcm_state_path": _optional_path,
        "audit_log_path": _optional_path,
        "evidence_root": _optional_path,
    },
    "timeouts": {
        "script_seconds": _positive_seconds,
        "declarative_apply_seconds": _positive_seconds,
        "policy_compile_seconds": _positive_seconds,
        "local_policy_apply_seconds": _positive_seconds,
        "preflight_seconds": _positive_seconds,
    },
    "commands": {
        "script": _words(allow_empty=False),
        "policy_compile": _words(allow_empty=False),
        "declarative_apply": _words(allow_empty=False),
        "local_policy_apply": _words(allow_empty=False),
        "local_policy_tool": _text,
        "preflight": _words(allow_empty=False),
    },
    "reboot": {
        "marker_paths": _words(allow_empty=True),
        "status_command": _words(allow_empty=True),
        "status_reboot_exit_code": _integer(),
        "schedule_command": _words(allow_empty=True),
    },
    "snapshot": {"paths": _words(allow_empty=True)},
    "preflight": {"script": _path_text},
    "observability": {
        "log_level": _one_of(_LOG_LEVELS),
        "log_dir": _path_text,
        "redact_secrets": _boolean,
        "log_to_stdout": _boolean,
    },
}


# ---------------------------------------------------------------------------
# Tree walk
# ---------------------------------------------------------------------------


def _check_root(
    payload: object, path: str, issues: _Issues, *, partial: bool
) -> dict[str, Any] | None:
    root = _as_object(payload, path or "<root>", issues)
    if root is None:
        return None
    _flag_unknown(root, (*_SECTIONS, "profiles"), path, issues)

    out: dict[str, Any] = {}
    for name in sorted(_SECTIONS):
        section_path = _join(path, name)
        if name not in root:
            if not partial:
                _reject(issues, section_path, "missing required field")
            continue
        section = _as_object(root[name], section_path, issues)
        if section is not None:
            out[name] = _check_section(section, _SECTIONS[name], section_path, issues, partial)

    if not partial and "profiles" in root:
        profiles = _as_object(root["profiles"], _join(path, "profiles"), issues)
        if profiles is not None:
            out["profiles"] = _check_profiles(profiles, _join(path, "profiles"), issues)
    return out


def _check_section(
    section: Mapping[str, object],
    rules: Mapping[str, _Rule],
    path: str,
    issues: _Issues,
    partial: bool,
) -> dict[str, Any]:
    _flag_unknown(section, rules, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(rules):
        key_path = _join(path, key)
        if key not in section:
            if not partial:
                _reject(issues, key_path, "missing required field")
            continue
        value = rules[key](section[key], key_path, issues)
        if value is not _INVALID:
            out[key] = value
    return out


def _check_profiles(
    profiles: Mapping[str, object], path: str, issues: _Issues
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        profile_path = _join(path, name)
        if not _PROFILE_NAME.fullmatch(name):
            _reject(issues, profile_path, "profile names must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(profiles[name], profile_path, issues)
        if overlay is None:
            continue
        if "meta" in overlay or "profiles" in overlay:
            _reject(issues, profile_path, "profile overlays must not redefine meta or profiles")
            continue
        out[name] = _check_root(overlay, profile_path, issues, partial=True)
    return out


def _as_object(value: object, path: str, issues: _Issues) -> Mapping[str, object] | None:
    if isinstance(value, Mapping):
        return value
    _reject(issues, path, f"expected object, got {_type_name(value)}")
    return None


def _flag_unknown(
    payload: Mapping[str, object], allowed: Iterable[str], path: str, issues: _Issues
) -> None:
    known = set(allowed)
    for key in sorted(set(payload) - known):
        message = (
            "embedded secret values are forbidden in config files"
            if _is_secret_key(key)
            else "unknown field"
        )
        _reject(issues, _join(path, key), message)


def _is_secret_key(key: str) -> bool:
    words = _WORD_SPLIT.split(_CAMEL_HUMP.sub("_", key.strip()).lower())
    return not _SECRET_WORDS.isdisjoint(words)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED_VALUE if _is_secret_key(key) else _redact(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ApplyforgeConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "REDACTED_VALUE",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
