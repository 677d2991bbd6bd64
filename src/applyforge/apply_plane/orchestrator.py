"""
applyforge: apply orchestrator.

Purpose
- Drive one apply attempt against a bundle: resolve the hardening mode, plan
  the steps, prepare the host (configuration manager, snapshot), execute the
  steps in order, and decide whether the mission may be reported complete.

States
- Fresh: no checkpoint; every planned step runs.
- Resumed: a validated checkpoint marks steps already done by the paused
  attempt; their outcomes are carried forward from that attempt's summary.
- Paused: a step left the host needing a reboot while steps remain; a
  checkpoint is written and the attempt returns early.

Functional requirements
- Step failures are data; only preconditions, resume integrity, cancellation,
  and the aggregated blocking failure raise.
- A failed policy compile skips the declarative apply step.
- The bundle lock is held for the whole attempt and released on every path.
- Rollback is never automatic; recovery artifacts are reported to the operator.
"""

from __future__ import annotations

import contextlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from applyforge.apply_plane.continuity import ContinuityTracker, summary_path
from applyforge.apply_plane.convergence import (
    classify_convergence,
    collect_blocking_failures,
    format_blocking_failure_message,
)
from applyforge.apply_plane.errors import (
    ApplyPreconditionError,
    BlockingFailureError,
    RunCancelledError,
)
from applyforge.apply_plane.executor import StepContext, StepExecutor
from applyforge.apply_plane.lock import BundleLock
from applyforge.apply_plane.plan import (
    DeclarativeApplyStep,
    PlannedStep,
    build_plan,
    step_names,
)
from applyforge.apply_plane.reboot import RebootCoordinator
from applyforge.collaborators.audit import JsonlAuditTrail
from applyforge.collaborators.contracts import (
    AuditEntry,
    AuditTrail,
    AuditTrailError,
    ConfigurationManager,
    ConfigurationManagerError,
    EvidenceCollector,
    LcmConfig,
    LcmState,
    SnapshotError,
    SnapshotResult,
    SnapshotService,
)
from applyforge.collaborators.evidence import FileEvidenceCollector
from applyforge.collaborators.lcm import JsonFileConfigurationManager
from applyforge.collaborators.snapshot import FileSnapshotService
from applyforge.config.settings import ApplySettings
from applyforge.constants import (
    APPLY_DIR,
    AUDIT_LOG_FILE,
    LCM_STATE_FILE,
    LOGS_DIR,
    MANIFEST_CANDIDATES,
    SNAPSHOTS_DIR,
)
from applyforge.domain.ids import generate_run_id, generate_trace_id
from applyforge.domain.models import (
    ApplyRequest,
    ApplyResult,
    ApplyStepOutcome,
    HardeningMode,
    RebootContext,
    RunStatus,
    StepName,
    utc_now,
)
from applyforge.observability.logging import correlation_scope
from applyforge.utils.concurrency import CancellationToken, OperationCancelledError

AUDIT_ACTION = "apply"
LCM_APPLY_ONLY = "ApplyOnly"
LCM_APPLY_AND_MONITOR = "ApplyAndMonitor"
LCM_FREQUENCY_MINS = 15


@dataclass(slots=True)
class _RunState:
    """Mutable bookkeeping for one attempt; never escapes ``run``."""

    root: Path
    mode: HardeningMode
    run_id: str
    prior_run_id: str | None
    trace_id: str
    plan: tuple[PlannedStep, ...]
    outcomes: list[ApplyStepOutcome]
    completed: list[StepName]
    reboot_count: int = 0
    resumed: bool = False
    snapshot_id: str = ""
    snapshot_dir: str = ""
    rollback_script_path: str = ""
    lcm_state: LcmState | None = None


def lcm_config_for(mode: HardeningMode) -> LcmConfig:
    return LcmConfig(
        configuration_mode=LCM_APPLY_ONLY if mode is HardeningMode.AUDIT_ONLY else LCM_APPLY_AND_MONITOR,
        reboot_node_if_needed=True,
        configuration_mode_frequency_mins=LCM_FREQUENCY_MINS,
        allow_module_overwrite=True,
    )


class ApplyOrchestrator:
    """Sequential apply engine for a single bundle per attempt."""

    def __init__(
        self,
        settings: ApplySettings | None = None,
        *,
        snapshot_service: SnapshotService | None = None,
        configuration_manager: ConfigurationManager | None = None,
        evidence_collector: EvidenceCollector | None = None,
        audit_trail: AuditTrail | None = None,
        reboot_coordinator: RebootCoordinator | None = None,
        executor: StepExecutor | None = None,
        cancellation: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings if settings is not None else ApplySettings.defaults()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._snapshots = snapshot_service
        self._lcm = configuration_manager
        self._audit = audit_trail
        self._reboot = (
            reboot_coordinator
            if reboot_coordinator is not None
            else RebootCoordinator(self._settings.reboot, max_reboots=self._settings.max_reboots)
        )
        self._executor = executor if executor is not None else StepExecutor(self._settings)
        self._continuity = ContinuityTracker(evidence_collector, logger=self._logger)
        self._cancellation = cancellation if cancellation is not None else CancellationToken()

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    def run(self, request: ApplyRequest) -> ApplyResult:
        root = Path(request.bundle_root).expanduser().resolve()
        if not root.is_dir():
            raise ApplyPreconditionError(f"Bundle root not found: {root}")
        for relative in (APPLY_DIR, LOGS_DIR, SNAPSHOTS_DIR):
            (root / relative).mkdir(parents=True, exist_ok=True)

        lock: contextlib.AbstractContextManager[Any] = (
            BundleLock(root, run_id=request.run_id, logger=self._logger)
            if self._settings.lock_enabled
            else contextlib.nullcontext()
        )
        with lock:
            return self._run_locked(request, root)

    def resolve_mode(self, request: ApplyRequest, root: Path) -> HardeningMode:
        """Request override, then the bundle manifest profile, then the configured default."""

        if request.mode_override is not None:
            return request.mode_override
        manifest_mode = self._read_manifest_mode(root)
        if manifest_mode is not None:
            return manifest_mode
        return self._settings.default_mode

    def _run_locked(self, request: ApplyRequest, root: Path) -> ApplyResult:
        mode = self.resolve_mode(request, root)
        paused = self._reboot.read_context(root)
        run_id = request.run_id or (paused.run_id if paused is not None else None) or generate_run_id()
        state = _RunState(
            root=root,
            mode=mode,
            run_id=run_id,
            prior_run_id=request.prior_run_id,
            trace_id=generate_trace_id(),
            plan=build_plan(
                request,
                bundle_root=root,
                template_destination=self._settings.template_destination,
            ),
            outcomes=[],
            completed=[],
        )

        with correlation_scope(run_id=run_id, trace_id=state.trace_id, bundle_root=str(root)):
            self._logger.info(
                "apply_run_started",
                mode=mode.value,
                prior_run_id=state.prior_run_id,
                planned_steps=[step.value for step in step_names(state.plan)],
            )
            prior_hashes = self._continuity.load_prior_hashes(root, state.prior_run_id)

            carried: tuple[ApplyStepOutcome, ...] = ()
            if paused is not None:
                carried = self._carried_outcomes(request, state, paused)
            context = self._reboot.resume_after_reboot(root, step_names(state.plan))
            if context is not None:
                self._restore_progress(state, context, carried)

            self._prepare_configuration_manager(state)
            self._prepare_snapshot(request, state)

            paused_result = self._execute_steps(request, state, prior_hashes)
            if paused_result is not None:
                return paused_result
            return self._finish(state)

    def _carried_outcomes(
        self, request: ApplyRequest, state: _RunState, paused: RebootContext
    ) -> tuple[ApplyStepOutcome, ...]:
        """Outcomes of the paused attempt's completed steps; the checkpoint is refused
        when any of them cannot be recovered."""

        if request.run_id and paused.run_id and request.run_id != paused.run_id:
            self._reboot.reject_context(
                state.root,
                f"checkpoint run id {paused.run_id!r} does not match requested run id "
                f"{request.run_id!r}",
            )
        done = set(paused.completed_steps)
        carried = tuple(
            outcome
            for outcome in self._continuity.load_run_outcomes(state.root, state.run_id)
            if outcome.step_name in done
        )
        recorded = {outcome.step_name for outcome in carried}
        missing = [step.value for step in paused.completed_steps if step not in recorded]
        if missing:
            self._reboot.reject_context(
                state.root,
                f"no recorded outcome for completed step(s) {missing} of run {state.run_id!r}",
            )
        return carried

    def _restore_progress(
        self,
        state: _RunState,
        context: RebootContext,
        carried: tuple[ApplyStepOutcome, ...],
    ) -> None:
        state.resumed = True
        state.reboot_count = context.reboot_count
        state.completed = list(context.completed_steps)
        state.outcomes = list(carried)
        previous = self._continuity.load_run_summary(state.root, state.run_id) or {}
        state.snapshot_id = str(previous.get("snapshot_id") or "")
        state.rollback_script_path = str(previous.get("rollback_script_path") or "")
        if state.snapshot_id:
            state.snapshot_dir = str(state.root / SNAPSHOTS_DIR / state.snapshot_id)
        self._logger.info(
            "apply_run_resumed",
            completed_steps=[step.value for step in context.completed_steps],
            carried_outcomes=len(state.outcomes),
            reboot_count=context.reboot_count,
        )

    def _prepare_configuration_manager(self, state: _RunState) -> None:
        pending = [
            step
            for step in state.plan
            if isinstance(step, DeclarativeApplyStep) and step.name not in state.completed
        ]
        if not pending:
            return
        if self._lcm is None:
            raise ApplyPreconditionError(
                "Configuration manager unavailable; declarative apply cannot be prepared."
            )
        config = lcm_config_for(state.mode)
        try:
            state.lcm_state = self._lcm.get_state()
            self._lcm.configure(config)
        except ConfigurationManagerError as exc:
            self._logger.error("apply_lcm_configure_failed", error=str(exc))
            raise ApplyPreconditionError("LCM configuration failed, apply aborted.") from exc
        self._logger.info("apply_lcm_configured", configuration_mode=config.configuration_mode)

    def _prepare_snapshot(self, request: ApplyRequest, state: _RunState) -> None:
        if request.skip_snapshot:
            self._logger.info("apply_snapshot_skipped")
            return
        if state.resumed:
            # The pre-apply snapshot belongs to the attempt that started this run.
            self._logger.info("apply_snapshot_reused", snapshot_id=state.snapshot_id)
            return
        if self._snapshots is None:
            raise ApplyPreconditionError(
                "Snapshot service unavailable; set skip_snapshot to apply without a snapshot."
            )
        try:
            snapshot = self._snapshots.create_snapshot(state.root / SNAPSHOTS_DIR)
            rollback = self._snapshots.generate_rollback_script(snapshot)
        except (SnapshotError, OSError) as exc:
            self._logger.error("apply_snapshot_failed", error=str(exc))
            raise ApplyPreconditionError("Snapshot failed, apply aborted.") from exc
        self._record_snapshot(state, snapshot, rollback)

    def _record_snapshot(self, state: _RunState, snapshot: SnapshotResult, rollback: Path) -> None:
        state.snapshot_id = snapshot.snapshot_id
        state.snapshot_dir = str(snapshot.snapshot_dir)
        state.rollback_script_path = str(rollback)
        self._logger.info(
            "apply_snapshot_created",
            snapshot_id=snapshot.snapshot_id,
            rollback_script=str(rollback),
        )

    def _execute_steps(
        self,
        request: ApplyRequest,
        state: _RunState,
        prior_hashes: dict[str, str],
    ) -> ApplyResult | None:
        step_context = StepContext(
            bundle_root=state.root,
            logs_dir=state.root / LOGS_DIR,
            snapshots_dir=state.root / SNAPSHOTS_DIR,
            mode=state.mode,
            run_id=state.run_id,
            trace_id=state.trace_id,
            cancellation=self._cancellation,
        )
        compile_failed = any(
            outcome.step_name is StepName.POLICY_COMPILE and not outcome.succeeded
            for outcome in state.outcomes
        )
        for index, step in enumerate(state.plan):
            if step.name in state.completed:
                continue
            if isinstance(step, DeclarativeApplyStep) and compile_failed:
                self._logger.warning(
                    "apply_step_skipped", step=step.name.value, reason="policy compile failed"
                )
                continue

            if self._cancellation.is_cancelled:
                raise RunCancelledError(f"Apply run cancelled before step {step.name.value}")
            try:
                outcome = self._executor.execute(step, step_context)
            except OperationCancelledError as exc:
                raise RunCancelledError(f"Apply run cancelled during step {step.name.value}") from exc

            outcome = self._continuity.record_step(
                outcome,
                bundle_root=state.root,
                run_id=state.run_id,
                mode=state.mode,
                prior_hashes=prior_hashes,
            )
            state.outcomes.append(outcome)
            state.completed.append(step.name)
            if step.name is StepName.POLICY_COMPILE and not outcome.succeeded:
                compile_failed = True
            if isinstance(step, DeclarativeApplyStep) and request.reset_lcm_after_apply:
                self._reset_configuration_manager(state)

            if not self._reboot.detect_reboot_required():
                continue
            if _has_runnable_step(state, start=index + 1, compile_failed=compile_failed):
                return self._pause_for_reboot(state, next_index=index + 1)
            self._logger.warning(
                "apply_reboot_pending",
                step=step.name.value,
                detail="no runnable step remains to resume after the reboot",
            )
            return self._finish(state, reboot_pending=True)
        return None

    def _reset_configuration_manager(self, state: _RunState) -> None:
        if self._lcm is None or state.lcm_state is None:
            return
        try:
            self._lcm.reset(state.lcm_state)
        except ConfigurationManagerError as exc:
            self._logger.warning("apply_lcm_reset_failed", error=str(exc))
            return
        self._logger.info("apply_lcm_reset")

    def _pause_for_reboot(self, state: _RunState, *, next_index: int) -> ApplyResult:
        scheduled = self._reboot.schedule_reboot(
            RebootContext(
                bundle_root=str(state.root),
                current_step_index=next_index,
                completed_steps=tuple(state.completed),
                reboot_scheduled_at=utc_now(),
                reboot_count=state.reboot_count,
                run_id=state.run_id,
            )
        )
        any_failed = any(not outcome.succeeded for outcome in state.outcomes)
        result = self._build_result(
            state,
            reboot_count=scheduled.reboot_count,
            convergence_status=classify_convergence(
                len(state.outcomes),
                any_failed,
                True,
                scheduled.reboot_count,
                self._settings.max_reboots,
            ),
            is_mission_complete=False,
        )
        self._record_audit(state, result="paused", detail=self._audit_detail(state, result))
        self._continuity.write_summary(state.root, result, status=RunStatus.PAUSED_FOR_REBOOT)
        self._logger.info(
            "apply_run_paused_for_reboot",
            next_step_index=next_index,
            reboot_count=scheduled.reboot_count,
        )
        return result

    def _finish(self, state: _RunState, *, reboot_pending: bool = False) -> ApplyResult:
        any_failed = any(not outcome.succeeded for outcome in state.outcomes)
        convergence = classify_convergence(
            len(state.outcomes),
            any_failed,
            reboot_pending,
            state.reboot_count,
            self._settings.max_reboots,
        )
        draft = self._build_result(state, convergence_status=convergence)
        audit_available, audit_integrity = self._record_audit(
            state,
            result="failure" if any_failed else "success",
            detail=self._audit_detail(state, draft),
            verify=True,
        )
        failures = collect_blocking_failures(state.outcomes, audit_available, audit_integrity)
        recovery = self._recovery_artifacts(state)
        result = self._build_result(
            state,
            convergence_status=convergence,
            is_mission_complete=not failures,
            integrity_verified=audit_integrity is True,
            blocking_failures=failures,
            recovery_artifact_paths=recovery,
        )
        self._continuity.write_summary(
            state.root,
            result,
            status=RunStatus.BLOCKED if failures else RunStatus.COMPLETED,
        )
        self._logger.info(
            "apply_run_finished",
            convergence=convergence.value,
            step_count=len(state.outcomes),
            blocking_failures=len(failures),
        )
        if failures:
            raise BlockingFailureError(
                format_blocking_failure_message(failures, recovery),
                failures=failures,
                recovery_artifacts=recovery,
                result=result,
            )
        return result

    def _build_result(self, state: _RunState, **overrides: Any) -> ApplyResult:
        fields: dict[str, Any] = {
            "bundle_root": str(state.root),
            "mode": state.mode,
            "log_path": str(summary_path(state.root)),
            "run_id": state.run_id,
            "prior_run_id": state.prior_run_id,
            "steps": tuple(state.outcomes),
            "snapshot_id": state.snapshot_id,
            "rollback_script_path": state.rollback_script_path,
            "reboot_count": state.reboot_count,
        }
        fields.update(overrides)
        return ApplyResult(**fields)

    def _recovery_artifacts(self, state: _RunState) -> tuple[str, ...]:
        artifacts = [state.rollback_script_path, state.snapshot_dir, str(summary_path(state.root))]
        return tuple(artifact for artifact in artifacts if artifact)

    def _audit_detail(self, state: _RunState, result: ApplyResult) -> str:
        failed = sum(1 for outcome in state.outcomes if not outcome.succeeded)
        return (
            f"run_id={state.run_id} mode={state.mode.value} steps={len(state.outcomes)} "
            f"failed={failed} convergence={result.convergence_status.value}"
        )

    def _record_audit(
        self,
        state: _RunState,
        *,
        result: str,
        detail: str,
        verify: bool = False,
    ) -> tuple[bool, bool | None]:
        """Return ``(recorded, integrity)``; integrity is ``None`` when not verified."""

        if self._audit is None:
            self._logger.warning("apply_audit_unavailable")
            return False, None
        entry = AuditEntry(
            timestamp=utc_now(),
            user="",
            machine="",
            action=AUDIT_ACTION,
            target=str(state.root),
            result=result,
            detail=detail,
        )
        try:
            self._audit.record_entry(entry)
        except (AuditTrailError, OSError) as exc:
            self._logger.error("apply_audit_record_failed", error=str(exc))
            return False, None
        if not verify:
            return True, None
        try:
            integrity = self._audit.verify_integrity()
        except (AuditTrailError, OSError) as exc:
            self._logger.error("apply_audit_verify_failed", error=str(exc))
            return True, False
        if not integrity:
            self._logger.error("apply_audit_integrity_failed")
        return True, integrity

    def _read_manifest_mode(self, root: Path) -> HardeningMode | None:
        for candidate in MANIFEST_CANDIDATES:
            path = root / candidate
            if not path.is_file():
                continue
            try:
                text = path.read_text(encoding="utf-8")
                document = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
            except (OSError, ValueError, yaml.YAMLError) as exc:
                self._logger.warning("apply_manifest_unreadable", path=str(path), error=str(exc))
                return None
            return _manifest_mode(document)
        return None


def _has_runnable_step(state: _RunState, *, start: int, compile_failed: bool) -> bool:
    for step in state.plan[start:]:
        if step.name in state.completed:
            continue
        if isinstance(step, DeclarativeApplyStep) and compile_failed:
            continue
        return True
    return False


def _manifest_mode(document: object) -> HardeningMode | None:
    if not isinstance(document, dict):
        return None
    profile = document.get("Profile")
    if not isinstance(profile, dict):
        return None
    raw = profile.get("HardeningMode")
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        return HardeningMode.parse(raw)
    except ValueError:
        return None


def create_orchestrator(
    bundle_root: Path,
    settings: ApplySettings | None = None,
    *,
    cancellation: CancellationToken | None = None,
    logger: Any | None = None,
) -> ApplyOrchestrator:
    """Wire the reference collaborators for ``bundle_root`` from ``settings``."""

    resolved = settings if settings is not None else ApplySettings.defaults()
    root = Path(bundle_root).expanduser().resolve()
    return ApplyOrchestrator(
        resolved,
        snapshot_service=FileSnapshotService(resolved.snapshot_paths),
        configuration_manager=JsonFileConfigurationManager(
            resolved.lcm_state_path or root / LCM_STATE_FILE
        ),
        evidence_collector=FileEvidenceCollector(resolved.evidence_root),
        audit_trail=JsonlAuditTrail(resolved.audit_log_path or root / AUDIT_LOG_FILE),
        reboot_coordinator=RebootCoordinator(resolved.reboot, max_reboots=resolved.max_reboots),
        executor=StepExecutor(resolved),
        cancellation=cancellation,
        logger=logger,
    )


__all__ = [
    "ApplyOrchestrator",
    "LCM_APPLY_AND_MONITOR",
    "LCM_APPLY_ONLY",
    "create_orchestrator",
    "lcm_config_for",
]
