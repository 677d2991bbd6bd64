"""Command-line interface router for applyforge."""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml

from applyforge.apply_plane import (
    BlockingFailureError,
    PreflightRunner,
    RebootCoordinator,
    ResumeContextError,
    create_orchestrator,
)
from applyforge.apply_plane.continuity import ContinuityTracker, summary_path
from applyforge.apply_plane.lock import lock_path, read_lock_holder
from applyforge.collaborators import AuditTrailError, JsonlAuditTrail
from applyforge.config import (
    ApplySettings,
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from applyforge.constants import AUDIT_LOG_FILE
from applyforge.domain.ids import generate_run_id
from applyforge.domain.models import (
    ApplyRequest,
    ApplyResult,
    HardeningMode,
    PreflightRequest,
)
from applyforge.observability import configure_structlog, setup_logging
from applyforge.ui.render import CLIRenderer, create_renderer

EXIT_OK: Final[int] = 0
EXIT_BLOCKED: Final[int] = 1
EXIT_CONFIG: Final[int] = 2
EXIT_RESUME_BLOCKED: Final[int] = 3
EXIT_PAUSED: Final[int] = 5


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="applyforge",
        description=(
            "applyforge: resumable hardening apply orchestrator.\n\n"
            "Common workflows:\n"
            "  applyforge preflight BUNDLE     Check host readiness for a bundle\n"
            "  applyforge apply request.yaml   Apply a bundle described by a request file\n"
            "  applyforge status BUNDLE        Show checkpoint, last run, and lock state\n"
            "  applyforge verify-audit BUNDLE  Verify the audit hash chain\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to applyforge TOML config (default: ./applyforge.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (built-in: audit, enforce).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # apply ---------------------------------------------------------------
    apply_parser = subparsers.add_parser(
        "apply",
        parents=[common],
        help="Run or resume an apply from a request file",
        description=(
            "Apply a hardening bundle. The request file is YAML or JSON; relative\n"
            "paths in it resolve against the file's directory.\n\n"
            "Examples:\n"
            "  applyforge apply request.yaml\n"
            "  applyforge apply request.yaml --mode audit-only --skip-snapshot\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    apply_parser.add_argument("request_path", help="Path to the apply request file")
    apply_parser.add_argument("--run-id", default=None, help="Explicit run identifier")
    apply_parser.add_argument(
        "--prior-run-id", default=None, help="Prior run to compare step artifacts against"
    )
    apply_parser.add_argument(
        "--skip-snapshot",
        action="store_true",
        default=False,
        help="Apply without taking a pre-apply snapshot",
    )
    apply_parser.add_argument(
        "--mode",
        default=None,
        help="Hardening mode override: audit-only, safe, or full",
    )
    apply_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    apply_parser.set_defaults(handler=_cmd_apply)

    # preflight -----------------------------------------------------------
    preflight_parser = subparsers.add_parser(
        "preflight",
        parents=[common],
        help="Run the bundle's readiness check",
    )
    preflight_parser.add_argument("bundle_root", help="Bundle root directory")
    preflight_parser.add_argument("--modules-path", default=None, help="Modules directory")
    preflight_parser.add_argument(
        "--policy-module-path", default=None, help="Policy compiler module path"
    )
    preflight_parser.add_argument(
        "--manifest-path", default=None, help="Bundle manifest path"
    )
    preflight_parser.add_argument(
        "--check-local-policy-conflict",
        action="store_true",
        default=False,
        help="Ask the readiness check to look for local-policy conflicts",
    )
    preflight_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    preflight_parser.set_defaults(handler=_cmd_preflight)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show reboot checkpoint, latest run summary, and lock state",
    )
    status_parser.add_argument("bundle_root", help="Bundle root directory")
    status_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    status_parser.set_defaults(handler=_cmd_status)

    # verify-audit --------------------------------------------------------
    verify_parser = subparsers.add_parser(
        "verify-audit",
        parents=[common],
        help="Verify the audit trail hash chain",
    )
    verify_parser.add_argument("bundle_root", help="Bundle root directory")
    verify_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    verify_parser.set_defaults(handler=_cmd_verify_audit)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the redacted effective configuration",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_CONFIG

    configure_structlog()
    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Console entrypoint that routes failures through the exit-code contract."""

    from applyforge.main import cli_entrypoint

    return cli_entrypoint(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_apply(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = ApplySettings.from_config(config)
    request = _load_request(Path(_require_str(args.request_path, "request_path")))
    request = _apply_overrides(request, args)

    bundle_root = Path(request.bundle_root).expanduser().resolve()
    paused = (
        RebootCoordinator(settings.reboot).read_context(bundle_root)
        if bundle_root.is_dir()
        else None
    )
    run_id = request.run_id or (paused.run_id if paused is not None else None) or generate_run_id()
    request = dataclasses.replace(request, run_id=run_id)

    handle = setup_logging(config.get("observability"), run_id=run_id)
    try:
        orchestrator = create_orchestrator(request.bundle_root, settings)
        try:
            result = orchestrator.run(request)
        except BlockingFailureError as exc:
            _report_apply(args, exc.result, status="blocked")
            print(str(exc), file=sys.stderr)
            return EXIT_BLOCKED
    finally:
        handle.shutdown()

    if not result.is_mission_complete:
        _report_apply(args, result, status="paused-for-reboot")
        return EXIT_PAUSED
    _report_apply(args, result, status="completed")
    return EXIT_OK


def _cmd_preflight(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = ApplySettings.from_config(config)
    bundle_root = _bundle_root(args)

    request = PreflightRequest(
        bundle_root=bundle_root,
        modules_path=_optional_path(getattr(args, "modules_path", None)),
        policy_module_path=_optional_path(getattr(args, "policy_module_path", None)),
        check_local_policy_conflict=_flag(args, "check_local_policy_conflict"),
        bundle_manifest_path=_optional_path(getattr(args, "manifest_path", None)),
    )
    result = PreflightRunner(settings).run_preflight(request)
    exit_code = EXIT_OK if result.ok else EXIT_BLOCKED

    if _flag(args, "json"):
        _emit_json({"command": "preflight", "bundle_root": str(bundle_root), **result.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Bundle", bundle_root)
    renderer.kv("Exit code", result.exit_code)
    if result.ok:
        renderer.ok("Preflight passed")
    else:
        renderer.fail("Preflight failed")
    if result.issues:
        renderer.section("Issues:")
        renderer.items(list(result.issues))
    if result.ok:
        renderer.next_steps(["applyforge apply request.yaml"])
    return exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = ApplySettings.from_config(config)
    bundle_root = _bundle_root(args)

    checkpoint: dict[str, object] | None = None
    checkpoint_error: str | None = None
    try:
        context = RebootCoordinator(settings.reboot).read_context(bundle_root)
    except ResumeContextError as exc:
        checkpoint_error = str(exc)
    else:
        checkpoint = None if context is None else dict(context.to_dict())

    summary = ContinuityTracker().load_summary(summary_path(bundle_root))
    holder = read_lock_holder(bundle_root)
    exit_code = EXIT_RESUME_BLOCKED if checkpoint_error is not None else EXIT_OK

    payload: dict[str, object] = {
        "command": "status",
        "bundle_root": str(bundle_root),
        "checkpoint": checkpoint,
        "checkpoint_error": checkpoint_error,
        "last_run": _summarize_run(summary),
        "lock": None if holder is None else {"path": str(lock_path(bundle_root)), **holder},
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Bundle", bundle_root)
    if checkpoint_error is not None:
        renderer.fail("Reboot checkpoint is invalid")
        renderer.text(checkpoint_error)
    elif checkpoint is None:
        renderer.kv("Reboot checkpoint", "none")
    else:
        renderer.kv(
            "Reboot checkpoint",
            f"pending resume at step {checkpoint['current_step_index']} "
            f"(reboots so far: {checkpoint['reboot_count']})",
        )
    renderer.kv("Lock", "free" if holder is None else f"held {_describe_holder(holder)}")

    last_run = payload["last_run"]
    if not isinstance(last_run, dict):
        renderer.text("No apply runs recorded for this bundle.")
        return exit_code
    renderer.section("Latest run:")
    for key in ("run_id", "status", "mode", "convergence_status", "is_mission_complete"):
        renderer.kv(key, last_run.get(key))
    steps = last_run.get("steps")
    if isinstance(steps, list) and steps:
        renderer.table(
            ["step", "exit", "timed out", "continuity"],
            [
                [
                    str(step.get("step_name")),
                    str(step.get("exit_code")),
                    str(step.get("timed_out")),
                    str(step.get("continuity_marker") or "-"),
                ]
                for step in steps
                if isinstance(step, dict)
            ],
            title="Steps:",
        )
    failures = last_run.get("blocking_failures")
    if isinstance(failures, list) and failures:
        renderer.section("Blocking failures:")
        renderer.items([str(item) for item in failures])
    return exit_code


def _cmd_verify_audit(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    settings = ApplySettings.from_config(config)
    bundle_root = _bundle_root(args)

    trail = JsonlAuditTrail(settings.audit_log_path or bundle_root / AUDIT_LOG_FILE)
    try:
        entry_count = len(trail.read_entries())
    except AuditTrailError:
        entry_count = 0
    verified = trail.verify_integrity()
    exit_code = EXIT_OK if verified else EXIT_BLOCKED

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "verify-audit",
                "path": str(trail.path),
                "entries": entry_count,
                "verified": verified,
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Audit trail", trail.path)
    renderer.kv("Entries", entry_count)
    if verified:
        renderer.ok("Hash chain verified")
    else:
        renderer.fail("Hash chain verification failed")
    return exit_code


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return EXIT_OK

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_OK


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _report_apply(args: argparse.Namespace, result: ApplyResult, *, status: str) -> None:
    if _flag(args, "json"):
        _emit_json({"command": "apply", "status": status, **result.to_dict()})
        return

    renderer = _get_renderer(args)
    renderer.kv("Run ID", result.run_id)
    renderer.kv("Status", status)
    renderer.kv("Mode", result.mode.value)
    renderer.kv("Convergence", result.convergence_status.value)
    renderer.kv("Summary", result.log_path)
    if result.rollback_script_path:
        renderer.kv("Rollback script", result.rollback_script_path)
    renderer.table(
        ["step", "exit", "timed out", "continuity"],
        [
            [
                step.step_name.value,
                str(step.exit_code),
                str(step.timed_out).lower(),
                step.continuity_marker.value if step.continuity_marker is not None else "-",
            ]
            for step in result.steps
        ],
        title="Steps:",
    )
    if renderer.verbose:
        renderer.section("Step output:")
        renderer.items([f"{step.step_name.value}: {step.stdout_path}" for step in result.steps])
    if status == "paused-for-reboot":
        renderer.warning(
            "The host needs a reboot. Re-run the same command after restart to resume."
        )
    renderer.next_steps([f"applyforge status {result.bundle_root}"])


def _summarize_run(summary: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if summary is None:
        return None
    keys = (
        "run_id",
        "prior_run_id",
        "status",
        "mode",
        "started_at",
        "finished_at",
        "convergence_status",
        "is_mission_complete",
        "reboot_count",
        "blocking_failures",
        "steps",
    )
    return {key: summary.get(key) for key in keys}


def _describe_holder(holder: Mapping[str, object]) -> str:
    if not holder:
        return "(holder unknown)"
    return "(" + ", ".join(f"{key}={value}" for key, value in sorted(holder.items())) + ")"


# ---------------------------------------------------------------------------
# Helpers: config, paths, requests
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        return load_config(config_path, profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG) from exc


def _load_request(path: Path) -> ApplyRequest:
    resolved = path.expanduser().resolve()
    if not resolved.is_file():
        raise CLIError(f"request file not found: {resolved}", exit_code=EXIT_CONFIG)
    try:
        payload = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise CLIError(f"unable to read request file {resolved}: {exc}", exit_code=EXIT_CONFIG) from exc
    if not isinstance(payload, Mapping):
        raise CLIError(f"request file {resolved} must contain a mapping", exit_code=EXIT_CONFIG)
    try:
        return ApplyRequest.from_dict(payload, base_dir=resolved.parent)
    except ValueError as exc:
        raise CLIError(f"invalid request file {resolved}: {exc}", exit_code=EXIT_CONFIG) from exc


def _apply_overrides(request: ApplyRequest, args: argparse.Namespace) -> ApplyRequest:
    changes: dict[str, object] = {}
    run_id = _optional_str(getattr(args, "run_id", None))
    if run_id is not None:
        changes["run_id"] = run_id
    prior_run_id = _optional_str(getattr(args, "prior_run_id", None))
    if prior_run_id is not None:
        changes["prior_run_id"] = prior_run_id
    if _flag(args, "skip_snapshot"):
        changes["skip_snapshot"] = True
    mode_raw = _optional_str(getattr(args, "mode", None))
    if mode_raw is not None:
        try:
            changes["mode_override"] = HardeningMode.parse(mode_raw)
        except ValueError as exc:
            raise CLIError(str(exc), exit_code=EXIT_CONFIG) from exc
    return dataclasses.replace(request, **changes) if changes else request


def _bundle_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "bundle_root", None), "bundle_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"bundle root is not a directory: {candidate}", exit_code=EXIT_CONFIG)
    return candidate


def _optional_path(value: object) -> Path | None:
    text = _optional_str(value)
    return None if text is None else Path(text).expanduser()


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"{name} is required", exit_code=EXIT_CONFIG)
    return value.strip()


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
