"""Closed, tagged-variant step plan built once per apply attempt."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from applyforge.constants import POLICY_COMPILE_OUTPUT_DIR, TEMPLATE_DESTINATION_DIR
from applyforge.domain.models import ApplyRequest, LocalPolicyScope, StepName


@dataclass(frozen=True, slots=True)
class PolicyCompileStep:
    name: ClassVar[StepName] = StepName.POLICY_COMPILE

    module_path: Path
    output_path: Path
    data_file: Path | None = None
    verbose: bool = False


@dataclass(frozen=True, slots=True)
class ScriptStep:
    name: ClassVar[StepName] = StepName.SCRIPT

    script_path: Path
    script_args: str | None = None


@dataclass(frozen=True, slots=True)
class DeclarativeApplyStep:
    name: ClassVar[StepName] = StepName.DECLARATIVE_APPLY

    manifest_path: Path
    verbose: bool = False


@dataclass(frozen=True, slots=True)
class TemplateImportStep:
    name: ClassVar[StepName] = StepName.TEMPLATE_IMPORT

    template_root: Path
    destination: Path


@dataclass(frozen=True, slots=True)
class LocalPolicyApplyStep:
    name: ClassVar[StepName] = StepName.LOCAL_POLICY_APPLY

    policy_file: Path
    scope: LocalPolicyScope = LocalPolicyScope.MACHINE
    tool_path: Path | None = None


PlannedStep = (
    PolicyCompileStep | ScriptStep | DeclarativeApplyStep | TemplateImportStep | LocalPolicyApplyStep
)


def build_plan(
    request: ApplyRequest,
    *,
    bundle_root: Path,
    template_destination: Path | None = None,
) -> tuple[PlannedStep, ...]:
    """Plan a step only when its tool path was supplied, in fixed execution order.

    ``template_destination`` is the configured default, used when the request
    names none; the bundle-relative ``Apply/PolicyDefinitions`` applies otherwise.
    """

    plan: list[PlannedStep] = []
    if request.policy_module_path is not None:
        plan.append(
            PolicyCompileStep(
                module_path=request.policy_module_path,
                output_path=(
                    request.policy_output_path
                    if request.policy_output_path is not None
                    else bundle_root / POLICY_COMPILE_OUTPUT_DIR
                ),
                data_file=request.policy_data_file,
                verbose=request.policy_verbose,
            )
        )
    if request.script_path is not None:
        plan.append(ScriptStep(script_path=request.script_path, script_args=request.script_args))
    if request.declarative_manifest_path is not None:
        plan.append(
            DeclarativeApplyStep(
                manifest_path=request.declarative_manifest_path,
                verbose=request.declarative_verbose,
            )
        )
    if request.template_root_path is not None:
        destination = request.template_destination_path or template_destination
        plan.append(
            TemplateImportStep(
                template_root=request.template_root_path,
                destination=(
                    destination
                    if destination is not None
                    else bundle_root / TEMPLATE_DESTINATION_DIR
                ),
            )
        )
    if request.local_policy_file is not None:
        plan.append(
            LocalPolicyApplyStep(
                policy_file=request.local_policy_file,
                scope=request.local_policy_scope,
                tool_path=request.local_policy_tool_path,
            )
        )
    return tuple(plan)


def step_names(plan: tuple[PlannedStep, ...]) -> tuple[StepName, ...]:
    return tuple(step.name for step in plan)


__all__ = [
    "DeclarativeApplyStep",
    "LocalPolicyApplyStep",
    "PlannedStep",
    "PolicyCompileStep",
    "ScriptStep",
    "TemplateImportStep",
    "build_plan",
    "step_names",
]
