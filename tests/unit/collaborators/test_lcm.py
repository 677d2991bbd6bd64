"""Unit tests for the JSON-file configuration manager."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from applyforge.collaborators.contracts import ConfigurationManagerError, LcmConfig, LcmState
from applyforge.collaborators.lcm import JsonFileConfigurationManager


@pytest.mark.unit
def test_absent_state_reads_as_idle(tmp_path: Path) -> None:
    manager = JsonFileConfigurationManager(tmp_path / "lcm_state.json")
    assert manager.get_state() == LcmState(lcm_state="Idle")


@pytest.mark.unit
def test_configure_then_reset_restores_captured_state(tmp_path: Path) -> None:
    manager = JsonFileConfigurationManager(tmp_path / "Apply" / "lcm_state.json")
    captured = manager.get_state()

    manager.configure(LcmConfig(configuration_mode="ApplyOnly", configuration_mode_frequency_mins=15))
    configured = manager.get_state()
    assert configured.configuration_mode == "ApplyOnly"
    assert configured.configuration_mode_frequency_mins == 15
    assert configured.reboot_node_if_needed is True

    manager.reset(captured)
    assert manager.get_state() == captured
    assert json.loads(manager.state_path.read_text(encoding="utf-8"))["lcm_state"] == "Idle"


@pytest.mark.unit
@pytest.mark.parametrize(
    "content",
    ["{not json", "[1, 2]", '{"configuration_mode_frequency_mins": "often"}'],
)
def test_unreadable_state_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "lcm_state.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationManagerError):
        JsonFileConfigurationManager(path).get_state()
