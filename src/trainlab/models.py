"""Trainlab data models — exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from trainlab.constants import (
    DIAGNOSIS_UNKNOWN,
    MODE_UNRESOLVED,
    OUTCOME_EXIT_CODES,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_float(value: Any, *, default: float) -> float:
    parsed = _coerce_float(value, default=default)
    return parsed if parsed > 0 else default


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TrainlabError(RuntimeError):
    """Base class for every error the orchestrator maps to a report."""


class ConfigError(TrainlabError):
    """Raised when an experiment config or policy file is invalid."""


class PathNotFound(TrainlabError):
    """Raised when a project root does not exist or is not a directory."""


class EnvironmentCreationError(TrainlabError):
    """Raised when an isolated environment cannot be created."""


class EnvironmentNotFound(TrainlabError):
    """Raised when a ``use_existing`` environment cannot be resolved."""


class DependencyInstallError(TrainlabError):
    """Raised when the install tool exits nonzero.

    Carries the tool's exit code and captured output verbatim so the
    setup-failed report can surface them.
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        command: tuple[str, ...] = (),
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.command = tuple(command)
        self.output = output


class InstrumentationError(TrainlabError):
    """Raised when a source file cannot be instrumented."""


class UnparsableSource(InstrumentationError):
    """Raised when a source file cannot be tokenized or parsed at all."""


class NoAnchorsFound(InstrumentationError):
    """Raised when a plan resolves no anchor; not fatal to the run."""

    def __init__(self, message: str, *, plan: "InstrumentationPlan | None" = None) -> None:
        super().__init__(message)
        self.plan = plan


class RunNotFound(TrainlabError):
    """Raised when no run record exists for a run id."""


class SpawnError(TrainlabError):
    """Raised when the job process cannot be spawned at all."""

    def __init__(self, message: str, *, command: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.command = tuple(command)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnvironmentSpec:
    name: str
    python: str
    policy: str
    reuse_if_exists: bool = False


@dataclass(frozen=True)
class TelemetryConfig:
    mode: str
    project: str = ""


@dataclass(frozen=True)
class ExperimentConfig:
    project_path: Path
    command: tuple[str, ...]
    environment: EnvironmentSpec
    telemetry: TelemetryConfig
    devices: tuple[int, ...] | None  # None selects every visible device
    source_files: tuple[Path, ...] = ()
    max_duration_seconds: float | None = None
    extra_env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SupervisionPolicy:
    poll_interval_seconds: float
    grace_seconds: float
    stall_seconds: float
    idle_utilization_percent: float


@dataclass(frozen=True)
class ProvisioningPolicy:
    envs_root: Path
    backend: str
    install_timeout_seconds: float


@dataclass(frozen=True)
class OrchestratorPolicy:
    supervision: SupervisionPolicy
    provisioning: ProvisioningPolicy


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnvironmentHandle:
    name: str
    kind: str  # "conda" | "venv" | "current"
    python: str
    prefix: Path | None = None
    created: bool = False

    @property
    def bin_dir(self) -> Path | None:
        if self.kind == "current":
            return None
        return Path(self.python).parent


@dataclass(frozen=True)
class DependencyManifest:
    kind: str
    path: Path


@dataclass(frozen=True)
class InstallReport:
    manifest_kind: str
    command: tuple[str, ...]
    exit_code: int
    output: str
    skipped: bool = False
    skipped_reason: str = ""
    not_installed: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class CapabilityReport:
    capability: str
    available: bool
    device_count: int
    version: str
    facts: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Instrumentation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanEntry:
    """One insertion intent and where (if anywhere) it lands.

    ``anchor_line`` is the 1-based line of the anchor statement and
    ``insert_at`` the 0-based line index the text is inserted before.
    Entries with an empty ``text`` produce no edit.
    """

    intent: str
    mode: str
    anchor_line: int = 0
    insert_at: int = -1
    text: str = ""
    note: str = ""

    @property
    def resolved(self) -> bool:
        return self.mode != MODE_UNRESOLVED

    @property
    def has_edit(self) -> bool:
        return self.resolved and bool(self.text) and self.insert_at >= 0


@dataclass(frozen=True)
class InstrumentationPlan:
    source_digest: str
    project: str
    entries: tuple[PlanEntry, ...]
    framework: str = ""
    distributed: bool = False
    advice: str = ""
    path: str = ""

    @property
    def is_shortcut(self) -> bool:
        return bool(self.framework)

    @property
    def edits(self) -> tuple[PlanEntry, ...]:
        return tuple(entry for entry in self.entries if entry.has_edit)

    @property
    def unresolved_intents(self) -> tuple[str, ...]:
        return tuple(entry.intent for entry in self.entries if not entry.resolved)

    @property
    def is_empty(self) -> bool:
        return not any(entry.resolved for entry in self.entries)

    @property
    def is_partial(self) -> bool:
        return bool(self.unresolved_intents) and not self.is_empty

    def entry(self, intent: str) -> PlanEntry | None:
        for candidate in self.entries:
            if candidate.intent == intent:
                return candidate
        return None


@dataclass(frozen=True)
class SourcePatch:
    backup: str
    patched_text: str
    edits: tuple[PlanEntry, ...]


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobHandle:
    pid: int
    log_path: Path
    started_at: str
    start_time: float
    command: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    working_dir: Path | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "log_path": str(self.log_path),
            "started_at": self.started_at,
            "start_time": self.start_time,
            "command": list(self.command),
            "env": dict(self.env),
            "working_dir": str(self.working_dir) if self.working_dir else "",
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "JobHandle":
        working_dir = str(payload.get("working_dir", "") or "").strip()
        env = payload.get("env")
        return cls(
            pid=int(payload["pid"]),
            log_path=Path(str(payload["log_path"])),
            started_at=str(payload.get("started_at", "")),
            start_time=_coerce_float(payload.get("start_time"), default=0.0),
            command=tuple(str(part) for part in payload.get("command", []) or []),
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
            working_dir=Path(working_dir) if working_dir else None,
        )


@dataclass(frozen=True)
class DeviceRecord:
    index: int
    name: str
    memory_total_mb: float
    memory_used_mb: float
    utilization_percent: float


@dataclass(frozen=True)
class JobSignals:
    """Observations the supervisor gathered, used only for diagnosis."""

    seconds_since_output: float | None = None
    utilization_percent: float | None = None
    stall_seconds: float | None = None
    idle_utilization_percent: float | None = None


@dataclass(frozen=True)
class Diagnosis:
    category: str
    remediations: tuple[str, ...]
    evidence: tuple[str, ...]
    job_state: str

    @property
    def is_unknown(self) -> bool:
        return self.category == DIAGNOSIS_UNKNOWN

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "remediations": list(self.remediations),
            "evidence": list(self.evidence),
            "job_state": self.job_state,
        }


@dataclass(frozen=True)
class RunReport:
    run_id: str
    outcome: str
    phase: str
    message: str
    job_state: str = ""
    diagnosis: Diagnosis | None = None
    handle: JobHandle | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return OUTCOME_EXIT_CODES.get(self.outcome, 1)

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "outcome": self.outcome,
            "phase": self.phase,
            "message": self.message,
            "job_state": self.job_state,
            "diagnosis": self.diagnosis.to_payload() if self.diagnosis else None,
            "handle": self.handle.to_payload() if self.handle else None,
            "details": dict(self.details),
        }
