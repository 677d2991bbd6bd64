"""Child-process execution for apply steps and host probes."""

from applyforge.sandbox.process_runner import (
    ProcessLaunchError,
    ProcessResult,
    ProcessRunner,
    ProcessRunnerError,
)

__all__ = [
    "ProcessLaunchError",
    "ProcessResult",
    "ProcessRunner",
    "ProcessRunnerError",
]
