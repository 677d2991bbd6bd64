"""
applyforge: runtime config loader

Purpose
- Build the effective config from four layers: built-in defaults, the TOML
  file, ``APPLYFORGE_*`` environment variables, and CLI overrides. Later
  layers win.

Functional requirements
- Environment variable names derive from the config path
  (``apply.max_reboots`` -> ``APPLYFORGE_APPLY_MAX_REBOOTS``) and the raw text
  is coerced to the type of the value it replaces. List values take
  shell-style words.
- Relative path fields resolve against the config file's directory.
- The merged result is validated against the schema after every layer.
"""

from __future__ import annotations

import json
import os
import shlex
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from applyforge.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from applyforge.constants import ENV_PREFIX

DEFAULT_CONFIG_FILE: Final[str] = "applyforge.toml"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

_ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config (CLI > env > file > defaults).

    Without ``config_path`` the loader looks for ``./applyforge.toml`` and
    silently uses defaults when it is absent; an explicit path must exist.
    """

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    source = _config_file(config_path)

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    selected = _selected_profile(profile, overrides, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)

    config = merge_config(config, _env_layer(config, env))
    config = merge_config(config, _cli_layer(overrides))
    config = assert_valid_config(config)
    return assert_valid_config(normalize_paths(config, base_dir=source.parent))


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields against ``base_dir``, including inside profiles.

    Empty path fields keep their meaning of "derive from the bundle root".
    """

    resolved = merge_config({}, config)
    targets: list[_ConfigPath] = list(PATH_FIELDS)
    profiles = resolved.get("profiles")
    if isinstance(profiles, Mapping):
        targets.extend(
            ("profiles", name, *field) for name in sorted(profiles) for field in PATH_FIELDS
        )

    for path in targets:
        raw = _lookup(resolved, path)
        if isinstance(raw, str) and raw.strip():
            _assign(resolved, path, _absolute(raw, base_dir))
    return resolved


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` for display and logs."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(effective_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def env_name_for_path(path: _ConfigPath) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(
    explicit: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = cli_overrides.get("profile")
    if candidate is None:
        candidate = environ.get(PROFILE_ENV_VAR)
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError(f"profile must be a string, got {type(candidate).__name__}")
    return candidate.strip() or None


def _env_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _leaves(config):
        if path[0] == "profiles":
            continue
        name = env_name_for_path(path)
        raw = environ.get(name)
        coerce = _coercer_for(current)
        if raw is None or coerce is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)}: {exc}") from exc
        _assign(layer, path, value)
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, overrides[key])
    return layer


def _leaves(
    payload: Mapping[str, object], prefix: _ConfigPath = ()
) -> Iterator[tuple[_ConfigPath, object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _coercer_for(current: object) -> Callable[[str], object] | None:
    # bool before int: True is an int.
    if isinstance(current, bool):
        return _parse_bool
    if isinstance(current, int):
        return _parse_int
    if isinstance(current, float):
        return _parse_float
    if isinstance(current, str):
        return str
    if isinstance(current, list):
        return shlex.split
    return None


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise ValueError("expected a boolean (true/false/1/0/yes/no/on/off)")


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"expected an integer, got {text!r}") from None


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"expected a number, got {text!r}") from None


def _lookup(payload: Mapping[str, object], path: _ConfigPath) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _assign(target: dict[str, Any], path: _ConfigPath, value: object) -> None:
    *parents, leaf = path
    node = target
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "PROFILE_ENV_VAR",
    "dump_effective_config",
    "effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
