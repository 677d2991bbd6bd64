"""
applyforge: child-process execution for external hardening tools.

Every subprocess the apply plane launches (bundle scripts, the declarative
apply tool, policy compilers, reboot probes, preflight) goes through
``ProcessRunner.execute``. Output is captured in full, the wall-clock limit is
hard, and a launch failure is a distinct exception so callers can map it to
their own synthetic exit code.
"""

from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


class ProcessRunnerError(RuntimeError):
    pass


class ProcessLaunchError(ProcessRunnerError):
    """The executable could not be started (missing, not executable, bad cwd)."""


@dataclass(frozen=True, slots=True)
class ProcessResult:
    command: tuple[str, ...]
    cwd: Path
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: float

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ProcessRunner:
    """Run a command to completion or kill it at the deadline.

    The child's environment is layered: host environment (or only ``PATH``
    when ``inherit_host_env`` is false), then runner-wide ``env_overrides``,
    then the per-call ``env``.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = 300.0,
        env_overrides: Mapping[str, str] | None = None,
        inherit_host_env: bool = True,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError(f"default_timeout_seconds must be > 0, got {default_timeout_seconds}")
        self._default_timeout = float(default_timeout_seconds)
        self._env_overrides = dict(env_overrides or {})
        self._inherit_host_env = inherit_host_env

    def execute(
        self,
        command: Sequence[str],
        *,
        cwd: Path | str,
        timeout_seconds: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        argv = _argv(command)
        workdir = Path(cwd).resolve(strict=True)
        if not workdir.is_dir():
            raise NotADirectoryError(f"{workdir} is not a directory")
        deadline = self._default_timeout if timeout_seconds is None else float(timeout_seconds)
        if deadline <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")

        started = time.perf_counter()
        try:
            child = subprocess.Popen(
                argv,
                cwd=workdir,
                env=self._child_environment(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise ProcessLaunchError(f"failed to start {argv[0]!r}: {exc}") from exc

        timed_out = False
        with child:
            try:
                stdout, stderr = child.communicate(timeout=deadline)
            except subprocess.TimeoutExpired:
                timed_out = True
                child.kill()
                stdout, stderr = child.communicate()

        return ProcessResult(
            command=tuple(argv),
            cwd=workdir,
            returncode=None if timed_out else child.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=timed_out,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def _child_environment(self, env: Mapping[str, str] | None) -> dict[str, str]:
        if self._inherit_host_env:
            layered = dict(os.environ)
        else:
            layered = {"PATH": os.environ["PATH"]} if os.environ.get("PATH") else {}
        layered.update(self._env_overrides)
        layered.update(env or {})
        return layered


def _argv(command: Sequence[str]) -> list[str]:
    if not isinstance(command, (list, tuple)):
        raise ValueError("command must be a sequence of strings")
    argv = [token for token in command if token.strip()]
    if not argv:
        raise ValueError("command must not be empty")
    return argv


__all__ = [
    "ProcessLaunchError",
    "ProcessResult",
    "ProcessRunner",
    "ProcessRunnerError",
]
