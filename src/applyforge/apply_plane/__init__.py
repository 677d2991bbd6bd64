"""Apply plane: plan, execute, checkpoint, and gate hardening runs against a bundle."""

from applyforge.apply_plane.continuity import ContinuityTracker
from applyforge.apply_plane.convergence import (
    classify_convergence,
    collect_blocking_failures,
    format_blocking_failure_message,
)
from applyforge.apply_plane.errors import (
    ApplyError,
    ApplyPreconditionError,
    BlockingFailureError,
    ResumeContextError,
    RunCancelledError,
)
from applyforge.apply_plane.executor import StepContext, StepExecutor, render_command
from applyforge.apply_plane.fallback import (
    FallbackAttempt,
    FallbackHandler,
    FallbackResult,
    is_retryable,
)
from applyforge.apply_plane.idempotency import CompletedOperation, IdempotencyTracker
from applyforge.apply_plane.lock import BundleLock
from applyforge.apply_plane.orchestrator import ApplyOrchestrator, create_orchestrator
from applyforge.apply_plane.plan import build_plan
from applyforge.apply_plane.preflight import PreflightRunner, parse_preflight_output
from applyforge.apply_plane.reboot import RebootCoordinator

__all__ = [
    "ApplyError",
    "ApplyOrchestrator",
    "ApplyPreconditionError",
    "BlockingFailureError",
    "BundleLock",
    "CompletedOperation",
    "ContinuityTracker",
    "FallbackAttempt",
    "FallbackHandler",
    "FallbackResult",
    "IdempotencyTracker",
    "PreflightRunner",
    "RebootCoordinator",
    "ResumeContextError",
    "RunCancelledError",
    "StepContext",
    "StepExecutor",
    "build_plan",
    "classify_convergence",
    "collect_blocking_failures",
    "create_orchestrator",
    "format_blocking_failure_message",
    "is_retryable",
    "parse_preflight_output",
    "render_command",
]
