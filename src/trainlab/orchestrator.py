"""Experiment lifecycle orchestration.

The orchestrator walks one run through provisioning, instrumentation,
launch, supervision and diagnosis, strictly in that order. Every error is
mapped to a terminal ``RunReport``; nothing here is allowed to take the
orchestrator process down. Progress is persisted after each phase to
``<project>/.trainlab/runs/<run_id>/run.json`` so a detached job can be
re-attached later by run id.
"""

from __future__ import annotations

import signal
import time
from pathlib import Path
from typing import Any, Callable

from trainlab.config import load_orchestrator_policy
from trainlab.constants import (
    CAPABILITY_DEVICES,
    DEFAULT_TAIL_LINES,
    DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    DIAGNOSABLE_JOB_STATES,
    JOB_FAILED,
    JOB_KILLED,
    JOB_LOG_FILENAME,
    JOB_SUCCEEDED,
    JOB_UNKNOWN,
    OUTCOME_FAILED,
    OUTCOME_INSTRUMENTATION_DECLINED,
    OUTCOME_INSTRUMENTATION_FAILED,
    OUTCOME_KILLED,
    OUTCOME_LAUNCH_FAILED,
    OUTCOME_LAUNCHED,
    OUTCOME_SETUP_FAILED,
    OUTCOME_SUCCEEDED,
    OUTCOME_UNKNOWN,
    PHASE_CONFIGURING,
    PHASE_DIAGNOSING,
    PHASE_DONE,
    PHASE_INSTRUMENTING,
    PHASE_LAUNCHING,
    PHASE_PROVISIONING,
    PHASE_SUPERVISING,
    RUN_ID_PATTERN,
    RUN_RECORD_FILENAME,
    TELEMETRY_DISABLED,
    TELEMETRY_ENABLED,
    TERMINAL_JOB_STATES,
)
from trainlab.dependencies import detect_manifest
from trainlab.diagnosis import diagnose
from trainlab.environments import EnvironmentProvisioner
from trainlab.instrumentation import (
    has_existing_telemetry,
    instrument_file,
    read_source_file,
    revert_file,
)
from trainlab.launch_runtime import (
    NvidiaSmiDeviceQuery,
    ProcessTable,
    job_environment,
    launch,
)
from trainlab.models import (
    Diagnosis,
    EnvironmentHandle,
    ExperimentConfig,
    InstallReport,
    InstrumentationError,
    InstrumentationPlan,
    JobHandle,
    NoAnchorsFound,
    OrchestratorPolicy,
    RunNotFound,
    RunReport,
    SpawnError,
    TrainlabError,
)
from trainlab.supervisor import JobSupervisor
from trainlab.utils import (
    _append_log,
    _compact_text,
    _generate_run_id,
    _read_json,
    _trainlab_dir,
    _utc_now,
    _write_json,
)

SkipConfirmation = Callable[[InstrumentationPlan], bool]

_JOB_OUTCOMES = {
    JOB_SUCCEEDED: OUTCOME_SUCCEEDED,
    JOB_FAILED: OUTCOME_FAILED,
    JOB_KILLED: OUTCOME_KILLED,
    JOB_UNKNOWN: OUTCOME_UNKNOWN,
}


def _continue_without_instrumentation(plan: InstrumentationPlan) -> bool:
    return True


# ---------------------------------------------------------------------------
# Run records
# ---------------------------------------------------------------------------


def run_dir_for(project_root: Path, run_id: str) -> Path:
    return _trainlab_dir(project_root) / "runs" / run_id


def run_record_path(project_root: Path, run_id: str) -> Path:
    return run_dir_for(project_root, run_id) / RUN_RECORD_FILENAME


def load_run_record(project_root: Path, run_id: str) -> dict[str, Any]:
    if not RUN_ID_PATTERN.match(str(run_id)):
        raise RunNotFound(f"'{run_id}' is not a valid run id")
    path = run_record_path(project_root, run_id)
    if not path.exists():
        raise RunNotFound(f"no run record for {run_id} under {project_root}")
    try:
        return _read_json(path)
    except (OSError, ValueError) as exc:
        raise RunNotFound(f"run record {path} is unreadable: {exc}") from exc


def list_run_ids(project_root: Path) -> list[str]:
    runs_dir = _trainlab_dir(project_root) / "runs"
    if not runs_dir.is_dir():
        return []
    return sorted(
        child.name
        for child in runs_dir.iterdir()
        if child.is_dir() and RUN_ID_PATTERN.match(child.name)
    )


def _append_phase_history(
    record: dict[str, Any],
    *,
    phase: str,
    status: str,
    summary: str,
) -> None:
    history = record.setdefault("history", [])
    history.append(
        {
            "timestamp_utc": _utc_now(),
            "phase": phase,
            "status": status,
            "summary": summary,
        }
    )
    record["phase"] = phase


def _save_record(project_root: Path, record: dict[str, Any]) -> None:
    record["updated_at"] = _utc_now()
    _write_json(run_record_path(project_root, str(record["run_id"])), record)


def _config_payload(config: ExperimentConfig) -> dict[str, Any]:
    return {
        "project_path": str(config.project_path),
        "command": list(config.command),
        "environment": {
            "name": config.environment.name,
            "python": config.environment.python,
            "policy": config.environment.policy,
            "reuse_if_exists": config.environment.reuse_if_exists,
        },
        "telemetry": {
            "mode": config.telemetry.mode,
            "project": config.telemetry.project,
        },
        "devices": list(config.devices) if config.devices is not None else "all",
        "source_files": [str(path) for path in config.source_files],
        "max_duration_seconds": config.max_duration_seconds,
        "extra_env": dict(config.extra_env),
    }


def _install_payload(report: InstallReport) -> dict[str, Any]:
    return {
        "manifest_kind": report.manifest_kind,
        "command": list(report.command),
        "exit_code": report.exit_code,
        "skipped": report.skipped,
        "skipped_reason": report.skipped_reason,
        "not_installed": list(report.not_installed),
        "warnings": list(report.warnings),
        "output_excerpt": _compact_text(report.output, limit=600),
    }


def _environment_payload(handle: EnvironmentHandle) -> dict[str, Any]:
    return {
        "name": handle.name,
        "kind": handle.kind,
        "python": handle.python,
        "prefix": str(handle.prefix) if handle.prefix else "",
        "created": handle.created,
    }


def _plan_payload(plan: InstrumentationPlan) -> dict[str, Any]:
    return {
        "framework": plan.framework,
        "distributed": plan.distributed,
        "advice": plan.advice,
        "resolved": [entry.intent for entry in plan.entries if entry.resolved],
        "unresolved": list(plan.unresolved_intents),
        "edits": [
            {"intent": entry.intent, "mode": entry.mode, "anchor_line": entry.anchor_line}
            for entry in plan.edits
        ],
    }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Runs one experiment through every lifecycle phase.

    Collaborators are injectable so the state machine can be exercised
    without conda, GPUs or long-running jobs.
    """

    def __init__(
        self,
        config: ExperimentConfig,
        *,
        policy: OrchestratorPolicy | None = None,
        provisioner: EnvironmentProvisioner | None = None,
        process_table: ProcessTable | None = None,
        device_query: NvidiaSmiDeviceQuery | None = None,
        confirm_skip_instrumentation: SkipConfirmation | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        run_id: str | None = None,
    ) -> None:
        self.config = config
        self.project_root = config.project_path
        self.policy = policy or load_orchestrator_policy(self.project_root)
        self.provisioner = provisioner or EnvironmentProvisioner(self.policy.provisioning)
        self.process_table = process_table or ProcessTable()
        self.device_query = device_query
        self._confirm_skip = confirm_skip_instrumentation or _continue_without_instrumentation
        self._clock = clock
        self._sleep = sleep
        self.run_id = run_id or _generate_run_id()
        self.phase = PHASE_CONFIGURING
        self.environment: EnvironmentHandle | None = None
        self.handle: JobHandle | None = None
        self.supervisor: JobSupervisor | None = None
        self._instrumented: list[Path] = []
        self._warnings: list[str] = []
        self.record: dict[str, Any] = {
            "run_id": self.run_id,
            "project_path": str(self.project_root),
            "created_at": _utc_now(),
            "config": _config_payload(config),
            "history": [],
            "job_state": "",
        }

    # -- bookkeeping ---------------------------------------------------------

    def _log(self, message: str) -> None:
        _append_log(self.project_root, f"run {self.run_id} {message}")

    def _enter(self, phase: str, summary: str) -> None:
        self.phase = phase
        _append_phase_history(self.record, phase=phase, status="started", summary=summary)
        _save_record(self.project_root, self.record)
        self._log(f"phase={phase} {summary}")

    def _complete(self, summary: str) -> None:
        _append_phase_history(
            self.record, phase=self.phase, status="completed", summary=summary
        )
        _save_record(self.project_root, self.record)

    def _finish(
        self,
        outcome: str,
        message: str,
        *,
        job_state: str = "",
        diagnosis: Diagnosis | None = None,
    ) -> RunReport:
        failed_phase = self.phase
        details: dict[str, Any] = {}
        for key in ("environment", "install", "capability", "instrumentation"):
            if key in self.record:
                details[key] = self.record[key]
        if self._warnings:
            details["warnings"] = list(self._warnings)
        if self.supervisor is not None and self.supervisor.exit_code is not None:
            details["exit_code"] = self.supervisor.exit_code
        report = RunReport(
            run_id=self.run_id,
            outcome=outcome,
            phase=failed_phase,
            message=message,
            job_state=job_state,
            diagnosis=diagnosis,
            handle=self.handle,
            details=details,
        )
        if outcome != OUTCOME_LAUNCHED:
            self.phase = PHASE_DONE
        self.record["job_state"] = job_state
        self.record["report"] = report.to_payload()
        _append_phase_history(
            self.record, phase=self.phase, status=outcome, summary=message
        )
        _save_record(self.project_root, self.record)
        self._log(f"outcome={outcome} {message}")
        return report

    # -- phases --------------------------------------------------------------

    def _provision(self) -> None:
        spec = self.config.environment
        self._enter(
            PHASE_PROVISIONING,
            f"environment policy={spec.policy} name={spec.name or '-'}",
        )
        handle = self.provisioner.ensure(spec)
        self.environment = handle
        self.record["environment"] = _environment_payload(handle)
        manifest = detect_manifest(self.project_root)
        report = self.provisioner.install(handle, manifest)
        self.record["install"] = _install_payload(report)
        if report.not_installed:
            self._warnings.append(
                "conda-only packages not installed: " + ", ".join(report.not_installed)
            )
        self._warnings.extend(report.warnings)
        if self.config.devices is not None:
            capability = self.provisioner.verify(
                handle,
                CAPABILITY_DEVICES,
                min_devices=len(self.config.devices),
            )
            self.record["capability"] = {
                "capability": capability.capability,
                "available": capability.available,
                "device_count": capability.device_count,
                "version": capability.version,
            }
            if not capability.available:
                self._warnings.append(
                    f"requested {len(self.config.devices)} device(s) but the probe saw "
                    f"{capability.device_count}"
                )
        if report.skipped:
            summary = f"install skipped: {report.skipped_reason}"
        else:
            summary = f"installed from {report.manifest_kind}"
        self._complete(f"environment={handle.name} kind={handle.kind}; {summary}")

    def _instrument(self) -> RunReport | None:
        """Instrument each source file; return a report only when the run must stop."""
        telemetry = self.config.telemetry
        if telemetry.mode != TELEMETRY_ENABLED:
            self.record["instrumentation"] = {"skipped": f"telemetry {telemetry.mode}"}
            _save_record(self.project_root, self.record)
            self._log(f"instrumentation skipped (telemetry {telemetry.mode})")
            return None

        self._enter(PHASE_INSTRUMENTING, f"project={telemetry.project}")
        files: list[dict[str, Any]] = []
        self.record["instrumentation"] = {"files": files}
        if not self.config.source_files:
            self._warnings.append("no source files to instrument")
        for path in self.config.source_files:
            entry: dict[str, Any] = {"path": str(path)}
            files.append(entry)
            try:
                _, text, _ = read_source_file(path)
                if has_existing_telemetry(text):
                    entry["status"] = "already_present"
                    continue
                result = instrument_file(path, telemetry.project)
            except NoAnchorsFound as exc:
                entry["status"] = "no_anchors"
                if exc.plan is not None:
                    entry["plan"] = _plan_payload(exc.plan)
                plan = exc.plan or InstrumentationPlan(
                    source_digest="", project=telemetry.project, entries=(), path=str(path)
                )
                if self._confirm_skip(plan):
                    self._warnings.append(f"instrumentation skipped for {path}: no anchors found")
                    continue
                self._rollback_instrumentation()
                return self._finish(
                    OUTCOME_INSTRUMENTATION_DECLINED,
                    f"no instrumentation anchors in {path} and skipping was declined",
                )
            except (InstrumentationError, OSError) as exc:
                entry["status"] = "failed"
                entry["error"] = str(exc)
                self._rollback_instrumentation()
                return self._finish(
                    OUTCOME_INSTRUMENTATION_FAILED,
                    f"could not instrument {path}: {exc}",
                )
            self._instrumented.append(path)
            entry["plan"] = _plan_payload(result.plan)
            entry["backup"] = str(result.backup_path) if result.backup_path else ""
            if result.plan.is_partial:
                entry["status"] = "partial"
                self._warnings.append(
                    f"partial instrumentation of {path.name}: unresolved "
                    + ", ".join(result.plan.unresolved_intents)
                )
            else:
                entry["status"] = "instrumented"
            if result.plan.advice:
                self._warnings.append(f"{path.name}: {result.plan.advice}")
            self._log(f"instrumented {path} status={entry['status']}")

        statuses = ", ".join(f"{Path(item['path']).name}={item['status']}" for item in files)
        self._complete(statuses or "nothing to instrument")
        return None

    def _rollback_instrumentation(self) -> None:
        for path in reversed(self._instrumented):
            revert_file(path)
            self._log(f"reverted instrumentation of {path}")
        self._instrumented.clear()

    def _launch(self) -> JobHandle:
        telemetry_project = ""
        if self.config.telemetry.mode != TELEMETRY_DISABLED:
            telemetry_project = self.config.telemetry.project
        env = job_environment(
            devices=self.config.devices,
            telemetry_project=telemetry_project,
            bin_dir=self.environment.bin_dir if self.environment else None,
            extra_env=self.config.extra_env,
        )
        log_path = run_dir_for(self.project_root, self.run_id) / "logs" / JOB_LOG_FILENAME
        self._enter(PHASE_LAUNCHING, " ".join(self.config.command))
        self.handle = launch(
            self.config.command,
            env,
            self.project_root,
            log_path,
            process_table=self.process_table,
        )
        self.record["handle"] = self.handle.to_payload()
        self._complete(f"pid={self.handle.pid} log={log_path}")
        return self.handle

    def _enforce_max_duration(self, supervisor: JobSupervisor) -> None:
        limit = self.config.max_duration_seconds
        if limit is None:
            return
        elapsed = self._clock() - supervisor.handle.start_time
        if elapsed < limit:
            return
        self._warnings.append(f"max_duration_seconds={limit:g} exceeded; job terminated")
        self._log(f"max duration {limit:g}s exceeded after {elapsed:.0f}s; terminating")
        supervisor.terminate()

    def _supervise(self, handle: JobHandle) -> JobSupervisor:
        self._enter(PHASE_SUPERVISING, f"pid={handle.pid}")
        supervisor = JobSupervisor(
            handle,
            self.process_table,
            policy=self.policy.supervision,
            device_query=self.device_query,
            clock=self._clock,
            sleep=self._sleep,
        )
        self.supervisor = supervisor
        last_state = ""

        def on_tick(current: JobSupervisor) -> None:
            nonlocal last_state
            state = current.status()
            if state != last_state:
                last_state = state
                self.record["job_state"] = state
                _save_record(self.project_root, self.record)
            self._enforce_max_duration(current)

        state = supervisor.wait(on_tick=on_tick)
        self.record["job_state"] = state
        self._complete(f"job_state={state} exit_code={supervisor.exit_code}")
        return supervisor

    # -- entry point ---------------------------------------------------------

    def run(self, *, wait: bool = True) -> RunReport:
        _append_phase_history(
            self.record,
            phase=PHASE_CONFIGURING,
            status="completed",
            summary=" ".join(self.config.command),
        )
        _save_record(self.project_root, self.record)

        try:
            self._provision()
        except TrainlabError as exc:
            return self._finish(OUTCOME_SETUP_FAILED, _setup_failure_message(exc))
        except OSError as exc:
            return self._finish(OUTCOME_SETUP_FAILED, f"provisioning failed: {exc}")

        stopped = self._instrument()
        if stopped is not None:
            return stopped

        try:
            handle = self._launch()
        except SpawnError as exc:
            return self._finish(OUTCOME_LAUNCH_FAILED, str(exc))
        if not wait:
            return self._finish(OUTCOME_LAUNCHED, f"job launched with pid {handle.pid}")

        supervisor = self._supervise(handle)
        state = supervisor.status()
        if state in DIAGNOSABLE_JOB_STATES:
            self._enter(PHASE_DIAGNOSING, f"job_state={state}")
            result = diagnose(supervisor.tail(DEFAULT_TAIL_LINES), state, supervisor.signals())
            self._complete(f"category={result.category}")
            return self._finish(
                _JOB_OUTCOMES[state],
                _job_message(state, supervisor.exit_code, result),
                job_state=state,
                diagnosis=result,
            )
        return self._finish(
            _JOB_OUTCOMES.get(state, OUTCOME_UNKNOWN),
            _job_message(state, supervisor.exit_code, None),
            job_state=state,
        )


def _setup_failure_message(exc: TrainlabError) -> str:
    message = f"{type(exc).__name__}: {exc}"
    output = str(getattr(exc, "output", "") or "").strip()
    if output:
        message = f"{message}\n{output}"
    return message


def _job_message(state: str, exit_code: int | None, result: Diagnosis | None) -> str:
    if state == JOB_SUCCEEDED:
        return "job succeeded"
    if state == JOB_KILLED:
        return "job was terminated"
    parts = [f"job {state}"]
    if exit_code is not None:
        parts.append(f"exit code {exit_code}")
    if result is not None:
        parts.append(f"diagnosis {result.category}")
    return ", ".join(parts)


def run_experiment(config: ExperimentConfig, *, wait: bool = True, **kwargs: Any) -> RunReport:
    return Orchestrator(config, **kwargs).run(wait=wait)


# ---------------------------------------------------------------------------
# Re-attaching to a recorded run
# ---------------------------------------------------------------------------


def _record_handle(record: dict[str, Any]) -> JobHandle:
    payload = record.get("handle")
    if not isinstance(payload, dict):
        raise RunNotFound(f"run {record.get('run_id', '?')} never launched a job")
    return JobHandle.from_payload(payload)


def attach_supervisor(
    project_root: Path,
    run_id: str,
    *,
    process_table: ProcessTable | None = None,
    policy: OrchestratorPolicy | None = None,
) -> tuple[JobSupervisor, dict[str, Any]]:
    record = load_run_record(project_root, run_id)
    handle = _record_handle(record)
    effective = policy or load_orchestrator_policy(project_root)
    supervisor = JobSupervisor(
        handle,
        process_table or ProcessTable(),
        policy=effective.supervision,
    )
    return supervisor, record


def _persist_job_state(project_root: Path, record: dict[str, Any], state: str) -> None:
    if record.get("job_state") == state:
        return
    record["job_state"] = state
    _append_phase_history(
        record, phase=PHASE_DONE, status=state, summary=f"observed job_state={state}"
    )
    _save_record(project_root, record)
    _append_log(project_root, f"run {record.get('run_id')} job_state={state} (re-attached)")


def run_status(
    project_root: Path, run_id: str, *, process_table: ProcessTable | None = None
) -> str:
    """Return the job state, polling the process table unless it is already terminal."""
    record = load_run_record(project_root, run_id)
    recorded = str(record.get("job_state", "") or "")
    if recorded in TERMINAL_JOB_STATES:
        return recorded
    supervisor, record = attach_supervisor(project_root, run_id, process_table=process_table)
    state = supervisor.poll()
    if state in TERMINAL_JOB_STATES:
        _persist_job_state(project_root, record, state)
    return state


def tail_run(project_root: Path, run_id: str, count: int = DEFAULT_TAIL_LINES) -> list[str]:
    supervisor, _ = attach_supervisor(project_root, run_id)
    return supervisor.tail(count)


def stop_run(
    project_root: Path,
    run_id: str,
    *,
    sig: int = signal.SIGTERM,
    timeout: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    process_table: ProcessTable | None = None,
) -> str:
    record = load_run_record(project_root, run_id)
    recorded = str(record.get("job_state", "") or "")
    if recorded in TERMINAL_JOB_STATES:
        return recorded
    supervisor, record = attach_supervisor(project_root, run_id, process_table=process_table)
    state = supervisor.terminate(sig, timeout=timeout)
    if state in TERMINAL_JOB_STATES:
        _persist_job_state(project_root, record, state)
    return state


def diagnose_run(
    project_root: Path,
    run_id: str,
    *,
    count: int = DEFAULT_TAIL_LINES,
    process_table: ProcessTable | None = None,
) -> Diagnosis:
    """Diagnose a recorded run from its current log tail.

    Always recomputed since the log may have grown. Raises ``ValueError``
    when the job is not Failed or Unknown.
    """
    state = run_status(project_root, run_id, process_table=process_table)
    supervisor, _ = attach_supervisor(project_root, run_id, process_table=process_table)
    supervisor.poll()
    return diagnose(supervisor.tail(count), state, supervisor.signals())
