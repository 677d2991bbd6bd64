"""Shared fixtures: settings whose command templates run local Python scripts."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from applyforge.config.schema import default_config, merge_config
from applyforge.config.settings import ApplySettings

SettingsFactory = Callable[..., ApplySettings]


def python_commands() -> dict[str, object]:
    """Command templates that run every external step through this interpreter."""

    return {
        "script": [sys.executable, "{script_path}", "{script_args}"],
        "policy_compile": [sys.executable, "{module_path}", "--output={output_path}"],
        "declarative_apply": [sys.executable, "{manifest_path}", "{what_if_flag}"],
        "local_policy_apply": [sys.executable, "{tool_path}", "{scope_flag}", "{policy_file}"],
        "preflight": [
            sys.executable,
            "{script_path}",
            "--bundle-root={bundle_root}",
            "{check_conflict_flag}",
        ],
    }


@pytest.fixture
def make_settings(tmp_path: Path) -> SettingsFactory:
    """Build validated settings with Python command templates and a tmp reboot marker."""

    def _factory(**overlay: Any) -> ApplySettings:
        base: dict[str, Any] = {
            "commands": python_commands(),
            "reboot": {"marker_paths": [str(tmp_path / "reboot-required")]},
        }
        return ApplySettings.from_config(merge_config(merge_config(default_config(), base), overlay))

    return _factory


@pytest.fixture
def bundle_root(tmp_path: Path) -> Path:
    root = tmp_path / "bundle"
    root.mkdir()
    return root


@pytest.fixture
def write_file() -> Callable[[Path, str], Path]:
    def _write(path: Path, body: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")
        return path

    return _write
