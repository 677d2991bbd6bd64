"""
applyforge: step evidence and run continuity.

Purpose
- Hash each step's primary artifact and compare it with a named prior run.
- Hand step evidence to the evidence collector without letting it fail the run.
- Own the run-summary codec: ``Apply/apply_run.json`` plus ``Apply/Runs/<run_id>.json``.

Functional requirements
- Hash and continuity marker are computed even when the collector fails.
- Prior hashes are read only from a summary whose recorded run id matches exactly.
- Prior summaries are read, never mutated.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from applyforge.collaborators.contracts import (
    EvidenceCollector,
    EvidenceType,
    EvidenceWriteRequest,
)
from applyforge.constants import RUN_SUMMARY_FILE, RUN_SUMMARY_SCHEMA_VERSION, RUNS_DIR
from applyforge.domain.models import (
    ApplyResult,
    ApplyStepOutcome,
    ContinuityMarker,
    HardeningMode,
    RunStatus,
    StepName,
    isoformat_z,
    utc_now,
)
from applyforge.utils.fs import atomic_write_json
from applyforge.utils.hashing import sha256_file, sha256_text


def summary_path(bundle_root: Path) -> Path:
    return Path(bundle_root) / RUN_SUMMARY_FILE


def archived_summary_path(bundle_root: Path, run_id: str) -> Path:
    return Path(bundle_root) / RUNS_DIR / f"{run_id}.json"


def synthetic_artifact_description(outcome: ApplyStepOutcome) -> str:
    timed_out = "true" if outcome.timed_out else "false"
    return f"{outcome.step_name.value}|exit={outcome.exit_code}|timed_out={timed_out}"


def compute_artifact_hash(outcome: ApplyStepOutcome) -> str:
    """SHA-256 of the captured stdout file, else of a synthetic outcome description."""

    if outcome.stdout_path:
        stdout = Path(outcome.stdout_path)
        if stdout.is_file():
            return sha256_file(stdout)
    return sha256_text(synthetic_artifact_description(outcome))


def continuity_marker_for(
    current_hash: str, prior_hash: str | None
) -> ContinuityMarker | None:
    if prior_hash is None:
        return None
    if prior_hash == current_hash:
        return ContinuityMarker.RETAINED
    return ContinuityMarker.SUPERSEDED


class ContinuityTracker:
    def __init__(
        self,
        evidence_collector: EvidenceCollector | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._evidence = evidence_collector
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def record_step(
        self,
        outcome: ApplyStepOutcome,
        *,
        bundle_root: Path,
        run_id: str,
        mode: HardeningMode,
        prior_hashes: Mapping[str, str],
    ) -> ApplyStepOutcome:
        """Return ``outcome`` enriched with its artifact hash, marker, and evidence path."""

        artifact_hash = compute_artifact_hash(outcome)
        marker = continuity_marker_for(artifact_hash, prior_hashes.get(outcome.step_name.value))
        enriched = dataclasses.replace(
            outcome, artifact_sha256=artifact_hash, continuity_marker=marker
        )
        if self._evidence is None:
            return enriched

        stdout = Path(outcome.stdout_path) if outcome.stdout_path else None
        has_stdout = stdout is not None and stdout.is_file()
        request = EvidenceWriteRequest(
            bundle_root=bundle_root,
            title=f"Apply step {outcome.step_name.value}",
            evidence_type=(
                EvidenceType.FILE
                if outcome.step_name is StepName.TEMPLATE_IMPORT
                else EvidenceType.COMMAND
            ),
            source=f"apply/{outcome.step_name.value}",
            content_text=None if has_stdout else synthetic_artifact_description(outcome),
            source_file_path=stdout if has_stdout else None,
            tags={
                "mode": mode.value,
                "exit_code": str(outcome.exit_code),
                "continuity": "none" if marker is None else marker.value,
            },
            run_id=run_id,
            step_name=outcome.step_name.value,
        )
        try:
            written = self._evidence.write_evidence(request)
        except Exception:
            self._logger.exception(
                "apply_evidence_write_failed", step=outcome.step_name.value
            )
            return enriched

        return dataclasses.replace(enriched, evidence_metadata_path=str(written.metadata_path))

    def write_summary(
        self,
        bundle_root: Path,
        result: ApplyResult,
        *,
        status: RunStatus,
    ) -> Path:
        """Write the latest summary and its per-run archive copy, both atomically."""

        now = utc_now()
        payload: dict[str, object] = {
            "schema_version": RUN_SUMMARY_SCHEMA_VERSION,
            "status": status.value,
            "started_at": isoformat_z(
                min((step.started_at for step in result.steps), default=now)
            ),
            "finished_at": isoformat_z(
                max((step.finished_at for step in result.steps), default=now)
            ),
            **result.to_dict(),
        }
        archive = archived_summary_path(bundle_root, result.run_id)
        archive.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_json(archive, payload)
        latest = summary_path(bundle_root)
        atomic_write_json(latest, payload)
        self._logger.info("apply_summary_written", path=str(latest), status=status.value)
        return latest

    def load_summary(self, path: Path) -> dict[str, Any] | None:
        """Read a summary document; ``None`` when absent or unreadable."""

        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("apply_summary_unreadable", path=str(path), error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    def load_run_summary(self, bundle_root: Path, run_id: str) -> dict[str, Any] | None:
        """Locate the summary recorded for ``run_id`` (archive first, then latest)."""

        for candidate in (archived_summary_path(bundle_root, run_id), summary_path(bundle_root)):
            payload = self.load_summary(candidate)
            if payload is not None and payload.get("run_id") == run_id:
                return payload
        return None

    def load_prior_hashes(self, bundle_root: Path, prior_run_id: str | None) -> dict[str, str]:
        if not prior_run_id:
            return {}
        payload = self.load_run_summary(bundle_root, prior_run_id)
        if payload is None:
            self._logger.info("apply_prior_run_not_found", prior_run_id=prior_run_id)
            return {}

        hashes: dict[str, str] = {}
        for step in payload.get("steps", []):
            if not isinstance(step, dict):
                continue
            name = step.get("step_name")
            digest = step.get("artifact_sha256")
            if isinstance(name, str) and isinstance(digest, str) and digest:
                hashes[name] = digest
        return hashes

    def load_run_outcomes(self, bundle_root: Path, run_id: str) -> tuple[ApplyStepOutcome, ...]:
        """Outcomes recorded so far for ``run_id``; used to carry results across a reboot."""

        payload = self.load_run_summary(bundle_root, run_id)
        if payload is None:
            return ()
        outcomes: list[ApplyStepOutcome] = []
        for step in payload.get("steps", []):
            try:
                outcomes.append(ApplyStepOutcome.from_dict(step))
            except ValueError as exc:
                self._logger.warning(
                    "apply_summary_step_invalid", run_id=run_id, error=str(exc)
                )
        return tuple(outcomes)


__all__ = [
    "ContinuityTracker",
    "archived_summary_path",
    "compute_artifact_hash",
    "continuity_marker_for",
    "summary_path",
    "synthetic_artifact_description",
]
