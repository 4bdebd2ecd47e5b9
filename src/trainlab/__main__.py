from __future__ import annotations

import argparse
import difflib
import sys
from pathlib import Path

from trainlab.config import load_experiment_config
from trainlab.constants import DEFAULT_TAIL_LINES, DEFAULT_TERMINATE_TIMEOUT_SECONDS
from trainlab.dependencies import detect_manifest
from trainlab.instrumentation import discard_backup, instrument_file, revert_file
from trainlab.launch_runtime import NvidiaSmiDeviceQuery
from trainlab.models import (
    Diagnosis,
    InstrumentationPlan,
    NoAnchorsFound,
    RunReport,
    TrainlabError,
)
from trainlab.orchestrator import (
    Orchestrator,
    diagnose_run,
    list_run_ids,
    run_status,
    stop_run,
    tail_run,
)


def _resolve_project(raw: str) -> Path:
    return Path(raw).expanduser().resolve()


def _resolve_run_id(project_root: Path, raw: str | None) -> str:
    if raw:
        return raw
    run_ids = list_run_ids(project_root)
    if not run_ids:
        raise TrainlabError(f"no runs recorded under {project_root}")
    return run_ids[-1]


def _print_plan(plan: InstrumentationPlan) -> None:
    if plan.is_shortcut:
        print(f"framework: {plan.framework}")
    print(f"distributed: {plan.distributed}")
    for entry in plan.entries:
        location = f"line {entry.anchor_line}" if entry.anchor_line else "-"
        note = f" ({entry.note})" if entry.note else ""
        print(f"  {entry.intent}: {entry.mode} at {location}{note}")
    if plan.advice:
        print(f"advice: {plan.advice}")


def _print_diagnosis(diagnosis: Diagnosis) -> None:
    print(f"diagnosis: {diagnosis.category}")
    for index, remediation in enumerate(diagnosis.remediations, start=1):
        print(f"  {index}. {remediation}")
    if diagnosis.evidence:
        print("evidence:")
        for line in diagnosis.evidence:
            print(f"  | {line}")


def _print_report(report: RunReport) -> None:
    print("trainlab run")
    print(f"run_id: {report.run_id}")
    print(f"outcome: {report.outcome}")
    print(f"phase: {report.phase}")
    if report.job_state:
        print(f"job_state: {report.job_state}")
    if report.handle is not None:
        print(f"pid: {report.handle.pid}")
        print(f"log: {report.handle.log_path}")
    print(f"message: {report.message}")
    for warning in report.details.get("warnings", []):
        print(f"warning: {warning}")
    if report.diagnosis is not None:
        _print_diagnosis(report.diagnosis)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _refuse_skip(plan: InstrumentationPlan) -> bool:
    return False


def _cmd_run(args: argparse.Namespace) -> int:
    config_path = Path(args.config).expanduser().resolve()
    try:
        config = load_experiment_config(config_path)
    except TrainlabError as exc:
        print(f"trainlab run: ERROR {exc}", file=sys.stderr)
        return 2

    confirm = _refuse_skip if args.require_instrumentation else None
    orchestrator = Orchestrator(
        config,
        device_query=NvidiaSmiDeviceQuery(),
        confirm_skip_instrumentation=confirm,
    )
    report = orchestrator.run(wait=not args.no_wait)
    _print_report(report)
    return report.exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    project_root = _resolve_project(args.project)
    try:
        run_id = _resolve_run_id(project_root, args.run_id)
        state = run_status(project_root, run_id)
    except TrainlabError as exc:
        print(f"trainlab status: ERROR {exc}", file=sys.stderr)
        return 1
    print("trainlab status")
    print(f"run_id: {run_id}")
    print(f"job_state: {state}")
    return 0


def _cmd_tail(args: argparse.Namespace) -> int:
    project_root = _resolve_project(args.project)
    try:
        run_id = _resolve_run_id(project_root, args.run_id)
        lines = tail_run(project_root, run_id, args.lines)
    except TrainlabError as exc:
        print(f"trainlab tail: ERROR {exc}", file=sys.stderr)
        return 1
    for line in lines:
        print(line)
    return 0


def _cmd_stop(args: argparse.Namespace) -> int:
    project_root = _resolve_project(args.project)
    try:
        run_id = _resolve_run_id(project_root, args.run_id)
        state = stop_run(project_root, run_id, timeout=args.timeout)
    except TrainlabError as exc:
        print(f"trainlab stop: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"trainlab stop: run {run_id} job_state={state}")
    return 0


def _cmd_diagnose(args: argparse.Namespace) -> int:
    project_root = _resolve_project(args.project)
    try:
        run_id = _resolve_run_id(project_root, args.run_id)
        diagnosis = diagnose_run(project_root, run_id, count=args.lines)
    except TrainlabError as exc:
        print(f"trainlab diagnose: ERROR {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"trainlab diagnose: {exc}", file=sys.stderr)
        return 1
    print("trainlab diagnose")
    print(f"run_id: {run_id}")
    print(f"job_state: {diagnosis.job_state}")
    _print_diagnosis(diagnosis)
    return 0


def _cmd_detect_deps(args: argparse.Namespace) -> int:
    try:
        manifest = detect_manifest(_resolve_project(args.path))
    except TrainlabError as exc:
        print(f"trainlab detect-deps: ERROR {exc}", file=sys.stderr)
        return 1
    if manifest is None:
        print("manifest: none (no managed dependencies)")
        return 0
    print(f"manifest: {manifest.kind}")
    print(f"path: {manifest.path}")
    return 0


def _cmd_instrument(args: argparse.Namespace) -> int:
    path = Path(args.file).expanduser().resolve()
    try:
        result = instrument_file(path, args.project_name, dry_run=args.dry_run)
    except NoAnchorsFound as exc:
        print(f"trainlab instrument: {exc}", file=sys.stderr)
        if exc.plan is not None:
            _print_plan(exc.plan)
        return 1
    except TrainlabError as exc:
        print(f"trainlab instrument: ERROR {exc}", file=sys.stderr)
        return 2

    _print_plan(result.plan)
    if result.plan.is_partial:
        print(
            "trainlab instrument: partial; unresolved "
            + ", ".join(result.plan.unresolved_intents),
            file=sys.stderr,
        )
    if args.dry_run and result.patch is not None:
        diff = difflib.unified_diff(
            result.patch.backup.splitlines(keepends=True),
            result.patch.patched_text.splitlines(keepends=True),
            fromfile=str(path),
            tofile=f"{path} (instrumented)",
        )
        sys.stdout.writelines(diff)
        return 0
    print(f"backup: {result.backup_path}")
    return 0


def _cmd_revert(args: argparse.Namespace) -> int:
    path = Path(args.file).expanduser().resolve()
    if args.discard:
        if discard_backup(path):
            print(f"trainlab revert: discarded backup for {path}")
            return 0
        print(f"trainlab revert: no backup for {path}", file=sys.stderr)
        return 1
    try:
        restored = revert_file(path)
    except OSError as exc:
        print(f"trainlab revert: ERROR {exc}", file=sys.stderr)
        return 1
    if not restored:
        print(f"trainlab revert: no backup for {path}", file=sys.stderr)
        return 1
    print(f"trainlab revert: restored {path}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_run_selector(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project",
        default=".",
        help="Project directory holding .trainlab/ (default: current directory)",
    )
    parser.add_argument(
        "--run-id",
        default=None,
        help="Run id to inspect (default: the most recent run)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="trainlab command line interface")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Provision, instrument, launch and supervise a job")
    run.add_argument("--config", required=True, help="Path to the experiment YAML file")
    run.add_argument(
        "--no-wait",
        action="store_true",
        help="Return after launching; the job keeps running in the background.",
    )
    run.add_argument(
        "--require-instrumentation",
        action="store_true",
        help="Stop instead of continuing when a source file has no instrumentation anchors.",
    )
    run.set_defaults(handler=_cmd_run)

    status = subparsers.add_parser("status", help="Show the job state of a recorded run")
    _add_run_selector(status)
    status.set_defaults(handler=_cmd_status)

    tail = subparsers.add_parser("tail", help="Print the last lines of a run's job log")
    _add_run_selector(tail)
    tail.add_argument(
        "-n",
        "--lines",
        type=int,
        default=DEFAULT_TAIL_LINES,
        help=f"Number of lines (default: {DEFAULT_TAIL_LINES})",
    )
    tail.set_defaults(handler=_cmd_tail)

    stop = subparsers.add_parser("stop", help="Terminate a running job")
    _add_run_selector(stop)
    stop.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TERMINATE_TIMEOUT_SECONDS,
        help="Seconds to wait before escalating to SIGKILL",
    )
    stop.set_defaults(handler=_cmd_stop)

    diagnose = subparsers.add_parser("diagnose", help="Classify why a run failed")
    _add_run_selector(diagnose)
    diagnose.add_argument(
        "-n",
        "--lines",
        type=int,
        default=DEFAULT_TAIL_LINES,
        help=f"Log lines to inspect (default: {DEFAULT_TAIL_LINES})",
    )
    diagnose.set_defaults(handler=_cmd_diagnose)

    detect = subparsers.add_parser("detect-deps", help="Print the dependency manifest that would be installed")
    detect.add_argument("path", nargs="?", default=".", help="Project directory")
    detect.set_defaults(handler=_cmd_detect_deps)

    instrument = subparsers.add_parser("instrument", help="Add telemetry calls to one source file")
    instrument.add_argument("file", help="Python source file")
    instrument.add_argument("--project-name", required=True, help="Telemetry project name")
    instrument.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the plan and diff without writing anything.",
    )
    instrument.set_defaults(handler=_cmd_instrument)

    revert = subparsers.add_parser("revert", help="Restore a file from its instrumentation backup")
    revert.add_argument("file", help="Instrumented source file")
    revert.add_argument(
        "--discard",
        action="store_true",
        help="Delete the backup instead of restoring it.",
    )
    revert.set_defaults(handler=_cmd_revert)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
