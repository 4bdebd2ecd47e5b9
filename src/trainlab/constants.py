"""Trainlab constants — phases, job states, diagnosis categories, and defaults."""

from __future__ import annotations

import re
from pathlib import Path

# ---------------------------------------------------------------------------
# Lifecycle phases
# ---------------------------------------------------------------------------

PHASE_CONFIGURING = "configuring"
PHASE_PROVISIONING = "provisioning"
PHASE_INSTRUMENTING = "instrumenting"
PHASE_LAUNCHING = "launching"
PHASE_SUPERVISING = "supervising"
PHASE_DIAGNOSING = "diagnosing"
PHASE_DONE = "done"

PHASES = (
    PHASE_CONFIGURING,
    PHASE_PROVISIONING,
    PHASE_INSTRUMENTING,
    PHASE_LAUNCHING,
    PHASE_SUPERVISING,
    PHASE_DIAGNOSING,
    PHASE_DONE,
)

# ---------------------------------------------------------------------------
# Job states
# ---------------------------------------------------------------------------

JOB_STARTING = "starting"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"
JOB_KILLED = "killed"
JOB_UNKNOWN = "unknown"

JOB_STATES = (
    JOB_STARTING,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    JOB_FAILED,
    JOB_KILLED,
    JOB_UNKNOWN,
)
TERMINAL_JOB_STATES = frozenset({JOB_SUCCEEDED, JOB_FAILED, JOB_KILLED, JOB_UNKNOWN})
DIAGNOSABLE_JOB_STATES = frozenset({JOB_FAILED, JOB_UNKNOWN})

# ---------------------------------------------------------------------------
# Run outcomes (final report)
# ---------------------------------------------------------------------------

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_KILLED = "killed"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_LAUNCHED = "launched"
OUTCOME_SETUP_FAILED = "setup_failed"
OUTCOME_LAUNCH_FAILED = "launch_failed"
OUTCOME_INSTRUMENTATION_FAILED = "instrumentation_failed"
OUTCOME_INSTRUMENTATION_DECLINED = "instrumentation_declined"

OUTCOME_EXIT_CODES = {
    OUTCOME_SUCCEEDED: 0,
    OUTCOME_LAUNCHED: 0,
    OUTCOME_FAILED: 1,
    OUTCOME_KILLED: 1,
    OUTCOME_UNKNOWN: 1,
    OUTCOME_SETUP_FAILED: 2,
    OUTCOME_LAUNCH_FAILED: 2,
    OUTCOME_INSTRUMENTATION_FAILED: 2,
    OUTCOME_INSTRUMENTATION_DECLINED: 2,
}

# ---------------------------------------------------------------------------
# Diagnosis categories
# ---------------------------------------------------------------------------

DIAGNOSIS_OOM = "oom"
DIAGNOSIS_NAN = "nan_divergence"
DIAGNOSIS_CUDA = "cuda_driver_error"
DIAGNOSIS_IMPORT = "import_dependency_error"
DIAGNOSIS_DATA_STALL = "data_stall"
DIAGNOSIS_UNKNOWN = "unknown"

DIAGNOSIS_CATEGORIES = (
    DIAGNOSIS_OOM,
    DIAGNOSIS_NAN,
    DIAGNOSIS_CUDA,
    DIAGNOSIS_IMPORT,
    DIAGNOSIS_DATA_STALL,
    DIAGNOSIS_UNKNOWN,
)

# ---------------------------------------------------------------------------
# Environments and dependency manifests
# ---------------------------------------------------------------------------

ENV_POLICY_CREATE_NEW = "create_new"
ENV_POLICY_USE_EXISTING = "use_existing"
ENV_POLICY_USE_CURRENT = "use_current"
ENV_POLICIES = (ENV_POLICY_CREATE_NEW, ENV_POLICY_USE_EXISTING, ENV_POLICY_USE_CURRENT)

ENV_BACKENDS = ("auto", "conda", "venv")

MANIFEST_REQUIREMENTS = "requirements_list"
MANIFEST_PROJECT_METADATA = "project_metadata"
MANIFEST_LEGACY_SETUP = "legacy_setup_script"
MANIFEST_ENVIRONMENT_DEFINITION = "environment_definition"

# Priority order; the first existing file wins.
MANIFEST_CANDIDATES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (MANIFEST_REQUIREMENTS, ("requirements.txt",)),
    (MANIFEST_PROJECT_METADATA, ("pyproject.toml",)),
    (MANIFEST_LEGACY_SETUP, ("setup.py",)),
    (MANIFEST_ENVIRONMENT_DEFINITION, ("environment.yml", "environment.yaml")),
)

INSTALL_STAMP_FILENAME = ".trainlab-install.json"

CAPABILITY_ACCELERATOR = "accelerator"
CAPABILITY_DEVICES = "devices"
CAPABILITIES = (CAPABILITY_ACCELERATOR, CAPABILITY_DEVICES)

# ---------------------------------------------------------------------------
# Telemetry and instrumentation
# ---------------------------------------------------------------------------

TELEMETRY_DISABLED = "disabled"
TELEMETRY_ENABLED = "enabled"
TELEMETRY_ALREADY_PRESENT = "already_present"
TELEMETRY_MODES = (TELEMETRY_DISABLED, TELEMETRY_ENABLED, TELEMETRY_ALREADY_PRESENT)

INTENT_IMPORT = "import"
INTENT_INIT = "init"
INTENT_TRAIN_LOG = "train_log"
INTENT_EVAL_LOG = "eval_log"
INTENT_FINISH = "finish"
INSTRUMENTATION_INTENTS = (
    INTENT_IMPORT,
    INTENT_INIT,
    INTENT_TRAIN_LOG,
    INTENT_EVAL_LOG,
    INTENT_FINISH,
)
# Intents whose inserted call must only run on the primary rank.
RANK_GUARDED_INTENTS = frozenset({INTENT_INIT, INTENT_TRAIN_LOG, INTENT_EVAL_LOG, INTENT_FINISH})

MODE_SHORTCUT = "shortcut"
MODE_INSERTION = "insertion"
MODE_UNRESOLVED = "unresolved"

BACKUP_SUFFIX = ".trainlab.bak"
PRIMARY_RANK_GUARD = 'if int(os.environ.get("RANK", "0")) == 0:'

# ---------------------------------------------------------------------------
# Filesystem layout and defaults
# ---------------------------------------------------------------------------

TRAINLAB_DIRNAME = ".trainlab"
POLICY_FILENAME = "policy.yaml"
RUN_RECORD_FILENAME = "run.json"
JOB_LOG_FILENAME = "train.log"
DEFAULT_ENVS_ROOT = Path("~/.trainlab/envs")

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_GRACE_SECONDS = 10.0
DEFAULT_STALL_SECONDS = 600.0
DEFAULT_IDLE_UTILIZATION_PERCENT = 5.0
DEFAULT_INSTALL_TIMEOUT_SECONDS = 3600.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 60.0
DEFAULT_TERMINATE_TIMEOUT_SECONDS = 10.0
DEFAULT_TAIL_LINES = 200

RUN_ID_PATTERN = re.compile(r"^\d{8}T\d{6}Z_[0-9a-f]{6}$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
