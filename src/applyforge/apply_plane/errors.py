"""Error taxonomy raised by the apply engine.

Step failures are data (``ApplyStepOutcome``); only the conditions below raise.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from applyforge.domain.models import ApplyResult


class ApplyError(RuntimeError):
    """Base class for apply-engine failures."""


class ApplyPreconditionError(ApplyError):
    """Raised before any step runs: bad bundle root, missing collaborator, lock held,
    snapshot failure, or configuration-manager setup failure."""


class ResumeContextError(ApplyError):
    """Raised when a reboot checkpoint cannot be trusted; requires an operator decision."""


class RunCancelledError(ApplyError):
    """Raised when the run's cancellation token fires between steps."""


class BlockingFailureError(ApplyError):
    """Aggregated end-of-run failure that forbids reporting mission completion."""

    def __init__(
        self,
        message: str,
        *,
        failures: Sequence[str],
        recovery_artifacts: Sequence[str],
        result: ApplyResult,
    ) -> None:
        super().__init__(message)
        self.failures = tuple(failures)
        self.recovery_artifacts = tuple(recovery_artifacts)
        self.result = result


__all__ = [
    "ApplyError",
    "ApplyPreconditionError",
    "BlockingFailureError",
    "ResumeContextError",
    "RunCancelledError",
]
