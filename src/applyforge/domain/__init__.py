"""Domain models and identifiers for apply runs."""

from applyforge.domain.ids import generate_run_id, generate_span_id, generate_trace_id
from applyforge.domain.models import (
    STEP_ORDER,
    ApplyRequest,
    ApplyResult,
    ApplyStepOutcome,
    ContinuityMarker,
    ConvergenceStatus,
    HardeningMode,
    LocalPolicyScope,
    PreflightRequest,
    PreflightResult,
    RebootContext,
    RunStatus,
    StepName,
)

__all__ = [
    "STEP_ORDER",
    "ApplyRequest",
    "ApplyResult",
    "ApplyStepOutcome",
    "ContinuityMarker",
    "ConvergenceStatus",
    "HardeningMode",
    "LocalPolicyScope",
    "PreflightRequest",
    "PreflightResult",
    "RebootContext",
    "RunStatus",
    "StepName",
    "generate_run_id",
    "generate_span_id",
    "generate_trace_id",
]
