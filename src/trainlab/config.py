from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any

import yaml

from trainlab.constants import (
    DEFAULT_ENVS_ROOT,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_IDLE_UTILIZATION_PERCENT,
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_STALL_SECONDS,
    ENV_BACKENDS,
    ENV_NAME_PATTERN,
    ENV_POLICIES,
    ENV_POLICY_USE_CURRENT,
    POLICY_FILENAME,
    TELEMETRY_DISABLED,
    TELEMETRY_ENABLED,
    TELEMETRY_MODES,
    TRAINLAB_DIRNAME,
)
from trainlab.models import (
    ConfigError,
    EnvironmentSpec,
    ExperimentConfig,
    OrchestratorPolicy,
    ProvisioningPolicy,
    SupervisionPolicy,
    TelemetryConfig,
    _coerce_bool,
    _coerce_float,
    _coerce_positive_float,
)


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"could not read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return loaded


# ---------------------------------------------------------------------------
# Experiment config
# ---------------------------------------------------------------------------


def _parse_command(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        try:
            parts = shlex.split(raw)
        except ValueError as exc:
            raise ConfigError(f"command could not be split: {exc}") from exc
    elif isinstance(raw, list):
        parts = [str(part) for part in raw]
    else:
        raise ConfigError("command must be a list of arguments or a string")
    parts = [part for part in parts if part != ""]
    if not parts:
        raise ConfigError("command must not be empty")
    return tuple(parts)


def _parse_devices(raw: Any) -> tuple[int, ...] | None:
    """Resolve device selection once; ``None`` means every visible device."""
    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text in {"", "all"}:
            return None
        raw = [item for item in text.split(",") if item.strip()]
    if isinstance(raw, int) and not isinstance(raw, bool):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        raise ConfigError("devices must be 'all' or a list of device indices")
    indices: set[int] = set()
    for item in raw:
        try:
            index = int(str(item).strip())
        except ValueError as exc:
            raise ConfigError(f"devices entry '{item}' is not an integer") from exc
        if index < 0:
            raise ConfigError(f"devices entry '{item}' must be >= 0")
        indices.add(index)
    if not indices:
        raise ConfigError("devices list must not be empty; use 'all' to select every device")
    return tuple(sorted(indices))


def _parse_environment(raw: Any) -> EnvironmentSpec:
    if raw is None:
        raw = {"policy": ENV_POLICY_USE_CURRENT}
    if not isinstance(raw, dict):
        raise ConfigError("environment must be a mapping")
    policy = str(raw.get("policy", ENV_POLICY_USE_CURRENT)).strip().lower().replace("-", "_")
    if policy not in ENV_POLICIES:
        raise ConfigError(f"environment.policy must be one of {', '.join(ENV_POLICIES)}")
    name = str(raw.get("name", "") or "").strip()
    if policy != ENV_POLICY_USE_CURRENT:
        if not name:
            raise ConfigError("environment.name is required unless policy is use_current")
        if not ENV_NAME_PATTERN.fullmatch(name):
            raise ConfigError("environment.name may only use [A-Za-z0-9._-]")
    python = str(raw.get("python", "") or "").strip()
    return EnvironmentSpec(
        name=name,
        python=python,
        policy=policy,
        reuse_if_exists=_coerce_bool(raw.get("reuse_if_exists"), default=False),
    )


def _parse_telemetry(raw: Any) -> TelemetryConfig:
    if raw is None or raw is False:
        return TelemetryConfig(mode=TELEMETRY_DISABLED)
    if not isinstance(raw, dict):
        raise ConfigError("telemetry must be a mapping")
    mode = str(raw.get("mode", TELEMETRY_DISABLED)).strip().lower().replace("-", "_")
    if mode not in TELEMETRY_MODES:
        raise ConfigError(f"telemetry.mode must be one of {', '.join(TELEMETRY_MODES)}")
    project = str(raw.get("project", "") or "").strip()
    if mode == TELEMETRY_ENABLED and not project:
        raise ConfigError("telemetry.project is required when telemetry is enabled")
    return TelemetryConfig(mode=mode, project=project)


def _default_source_files(project_path: Path, command: tuple[str, ...]) -> tuple[Path, ...]:
    for part in command:
        if part.endswith(".py"):
            candidate = Path(part)
            if not candidate.is_absolute():
                candidate = project_path / candidate
            return (candidate,)
    return ()


def _parse_source_files(
    raw: Any, *, project_path: Path, command: tuple[str, ...]
) -> tuple[Path, ...]:
    if raw is None:
        return _default_source_files(project_path, command)
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConfigError("source_files must be a list of paths")
    resolved: list[Path] = []
    for entry in raw:
        value = str(entry).strip()
        if not value:
            continue
        candidate = Path(value)
        if not candidate.is_absolute():
            candidate = project_path / candidate
        if candidate not in resolved:
            resolved.append(candidate)
    return tuple(resolved)


def _parse_extra_env(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("extra_env must be a mapping of variable names to values")
    return {str(key): str(value) for key, value in raw.items()}


def experiment_config_from_mapping(payload: dict[str, Any], *, base_dir: Path) -> ExperimentConfig:
    raw_project = str(payload.get("project_path", "") or "").strip()
    if not raw_project:
        raise ConfigError("project_path is required")
    project_path = Path(raw_project).expanduser()
    if not project_path.is_absolute():
        project_path = base_dir / project_path
    project_path = project_path.resolve()

    command = _parse_command(payload.get("command"))

    max_duration = payload.get("max_duration_seconds")
    max_duration_seconds: float | None = None
    if max_duration is not None:
        max_duration_seconds = _coerce_float(max_duration, default=0.0)
        if max_duration_seconds <= 0:
            raise ConfigError("max_duration_seconds must be > 0 when set")

    return ExperimentConfig(
        project_path=project_path,
        command=command,
        environment=_parse_environment(payload.get("environment")),
        telemetry=_parse_telemetry(payload.get("telemetry")),
        devices=_parse_devices(payload.get("devices", "all")),
        source_files=_parse_source_files(
            payload.get("source_files"), project_path=project_path, command=command
        ),
        max_duration_seconds=max_duration_seconds,
        extra_env=_parse_extra_env(payload.get("extra_env")),
    )


def load_experiment_config(path: Path) -> ExperimentConfig:
    if not path.exists():
        raise ConfigError(f"experiment config not found at {path}")
    payload = _load_yaml_mapping(path)
    return experiment_config_from_mapping(payload, base_dir=path.resolve().parent)


# ---------------------------------------------------------------------------
# Orchestrator policy
# ---------------------------------------------------------------------------


def _load_policy_payload(project_root: Path) -> dict[str, Any]:
    policy_path = project_root / TRAINLAB_DIRNAME / POLICY_FILENAME
    if not policy_path.exists():
        return {}
    try:
        return _load_yaml_mapping(policy_path)
    except ConfigError:
        return {}


def _load_supervision_policy(policy: dict[str, Any]) -> SupervisionPolicy:
    supervision = policy.get("supervision")
    if not isinstance(supervision, dict):
        supervision = {}
    idle = _coerce_float(
        supervision.get("idle_utilization_percent"),
        default=DEFAULT_IDLE_UTILIZATION_PERCENT,
    )
    if idle < 0 or idle > 100:
        idle = DEFAULT_IDLE_UTILIZATION_PERCENT
    return SupervisionPolicy(
        poll_interval_seconds=_coerce_positive_float(
            supervision.get("poll_interval_seconds"), default=DEFAULT_POLL_INTERVAL_SECONDS
        ),
        grace_seconds=_coerce_positive_float(
            supervision.get("grace_seconds"), default=DEFAULT_GRACE_SECONDS
        ),
        stall_seconds=_coerce_positive_float(
            supervision.get("stall_seconds"), default=DEFAULT_STALL_SECONDS
        ),
        idle_utilization_percent=idle,
    )


def _load_provisioning_policy(policy: dict[str, Any]) -> ProvisioningPolicy:
    provisioning = policy.get("provisioning")
    if not isinstance(provisioning, dict):
        provisioning = {}
    raw_root = str(provisioning.get("envs_root", "") or "").strip()
    envs_root = Path(raw_root) if raw_root else DEFAULT_ENVS_ROOT
    backend = str(provisioning.get("backend", "auto")).strip().lower()
    if backend not in ENV_BACKENDS:
        backend = "auto"
    return ProvisioningPolicy(
        envs_root=envs_root.expanduser(),
        backend=backend,
        install_timeout_seconds=_coerce_positive_float(
            provisioning.get("install_timeout_seconds"),
            default=DEFAULT_INSTALL_TIMEOUT_SECONDS,
        ),
    )


def load_orchestrator_policy(project_root: Path) -> OrchestratorPolicy:
    policy = _load_policy_payload(project_root)
    return OrchestratorPolicy(
        supervision=_load_supervision_policy(policy),
        provisioning=_load_provisioning_policy(policy),
    )
