"""Configuration-manager (LCM) settings persisted as a JSON state file."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import structlog

from applyforge.collaborators.contracts import ConfigurationManagerError, LcmConfig, LcmState
from applyforge.utils.fs import atomic_write_json


class JsonFileConfigurationManager:
    """Reference LCM backend: the "host" configuration manager is a JSON document."""

    def __init__(self, state_path: Path, *, logger: Any | None = None) -> None:
        self._state_path = Path(state_path)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def state_path(self) -> Path:
        return self._state_path

    def get_state(self) -> LcmState:
        if not self._state_path.exists():
            return LcmState(lcm_state="Idle")
        try:
            payload = json.loads(self._state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationManagerError(
                f"unable to read LCM state {self._state_path}: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise ConfigurationManagerError(f"LCM state {self._state_path} must be an object")
        try:
            return LcmState(
                configuration_mode=str(payload.get("configuration_mode", "")),
                reboot_node_if_needed=bool(payload.get("reboot_node_if_needed", False)),
                configuration_mode_frequency_mins=int(
                    payload.get("configuration_mode_frequency_mins", 0)
                ),
                allow_module_overwrite=bool(payload.get("allow_module_overwrite", False)),
                lcm_state=str(payload.get("lcm_state", "Idle")),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationManagerError(
                f"LCM state {self._state_path} has invalid values: {exc}"
            ) from exc

    def configure(self, config: LcmConfig) -> None:
        self._write({**asdict(config), "lcm_state": "Idle"})
        self._logger.info(
            "lcm_configured",
            configuration_mode=config.configuration_mode,
            reboot_node_if_needed=config.reboot_node_if_needed,
            frequency_mins=config.configuration_mode_frequency_mins,
        )

    def reset(self, state: LcmState) -> None:
        self._write(asdict(state))
        self._logger.info("lcm_reset", configuration_mode=state.configuration_mode)

    def _write(self, payload: dict[str, object]) -> None:
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self._state_path, payload)
        except OSError as exc:
            raise ConfigurationManagerError(
                f"unable to write LCM state {self._state_path}: {exc}"
            ) from exc


__all__ = ["JsonFileConfigurationManager"]
