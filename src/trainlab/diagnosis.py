"""Failure classification for finished jobs.

``diagnose`` is a pure function of the log tail, the job state, and the
optional supervisor signals. Rules are checked in a fixed priority order and
the first match wins; ``unknown`` is a normal answer meaning the evidence was
insufficient.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from trainlab.constants import (
    DIAGNOSABLE_JOB_STATES,
    DIAGNOSIS_CUDA,
    DIAGNOSIS_DATA_STALL,
    DIAGNOSIS_IMPORT,
    DIAGNOSIS_NAN,
    DIAGNOSIS_OOM,
    DIAGNOSIS_UNKNOWN,
)
from trainlab.models import Diagnosis, JobSignals

_MAX_EVIDENCE_LINES = 20


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pat, flags=re.IGNORECASE) for pat in patterns)


@dataclass(frozen=True)
class _Rule:
    category: str
    patterns: tuple[re.Pattern[str], ...]
    remediations: tuple[str, ...]


_OOM_RULE = _Rule(
    category=DIAGNOSIS_OOM,
    patterns=_compile(
        r"CUDA out of memory",
        r"OutOfMemoryError",
        r"\bout of memory\b",
        r"ResourceExhaustedError",
        r"CUBLAS_STATUS_ALLOC_FAILED",
        r"\bMemoryError\b",
        r"Cannot allocate memory",
    ),
    remediations=(
        "reduce batch size",
        "use gradient accumulation to keep the effective batch size",
        "enable mixed precision (fp16/bf16)",
        "enable gradient checkpointing",
        "select devices with more free memory",
    ),
)

_NAN_RULE = _Rule(
    category=DIAGNOSIS_NAN,
    patterns=_compile(
        r"\bloss\b[^\n]*?[=:\s]\s*-?(?:nan|inf)\b",
        r"\bloss is (?:nan|inf)\b",
        r"non-finite loss",
        r"FloatingPointError",
        r"returned nan values",
        r"Detected (?:NaN|Inf)",
        r"gradient overflow",
    ),
    remediations=(
        "lower the learning rate",
        "enable gradient clipping",
        "check inputs and labels for NaN or Inf values",
        "use bf16 or dynamic loss scaling instead of plain fp16",
        "add learning-rate warmup",
    ),
)

_CUDA_RULE = _Rule(
    category=DIAGNOSIS_CUDA,
    patterns=_compile(
        r"CUDA error",
        r"CUDA driver version is insufficient",
        r"NVIDIA driver on your system is too old",
        r"Found no NVIDIA driver",
        r"no CUDA-capable device",
        r"device-side assert triggered",
        r"illegal memory access",
        r"CUDNN_STATUS_\w+",
        r"cuDNN error",
        r"NCCL error",
        r"ncclInternalError|ncclSystemError|ncclUnhandledCudaError",
        r"Xid \d+",
    ),
    remediations=(
        "check that the driver supports the installed CUDA runtime (nvidia-smi)",
        "install the framework build that matches the CUDA version",
        "verify CUDA_VISIBLE_DEVICES selects devices that exist",
        "rerun with CUDA_LAUNCH_BLOCKING=1 to locate the failing kernel",
    ),
)

_IMPORT_RULE = _Rule(
    category=DIAGNOSIS_IMPORT,
    patterns=_compile(
        r"ModuleNotFoundError: No module named ['\"](?P<module>[\w.]+)['\"]",
        r"ImportError: cannot import name ['\"](?P<name>\w+)['\"](?: from ['\"](?P<module>[\w.]+)['\"])?",
        r"ImportError: ",
        r"No matching distribution found for (?P<module>\S+)",
        r"undefined symbol: \S+",
        r"version `GLIBC\S*' not found",
    ),
    remediations=(
        "install the missing package into the job's environment",
        "add every imported package to the dependency manifest",
        "recreate the environment if package versions conflict",
    ),
)

_DATA_STALL_RULE = _Rule(
    category=DIAGNOSIS_DATA_STALL,
    patterns=_compile(
        r"DataLoader worker \(pid.*?\) (?:is killed|exited unexpectedly)",
        r"DataLoader timed out",
        r"Timed out waiting for .*data",
        r"unable to open shared memory",
        r"No space left on device.*shm|shm.*No space left on device",
        r"Bus error",
    ),
    remediations=(
        "lower DataLoader num_workers, or set it to 0 to surface worker errors",
        "increase shared memory (for example --shm-size for containers)",
        "check the dataset path and storage throughput",
        "set a DataLoader timeout so stalls fail fast",
    ),
)

# Priority order; first match wins.
_RULES = (_OOM_RULE, _NAN_RULE, _CUDA_RULE, _IMPORT_RULE, _DATA_STALL_RULE)

_UNKNOWN_REMEDIATIONS = (
    "inspect the full job log",
    "rerun with more verbose logging",
)


def _normalize_lines(log_tail: str | Iterable[str]) -> list[str]:
    if isinstance(log_tail, str):
        return log_tail.splitlines()
    lines: list[str] = []
    for item in log_tail:
        lines.extend(str(item).splitlines() or [""])
    return lines


def _match_rule(rule: _Rule, lines: list[str]) -> tuple[list[str], re.Match[str] | None]:
    evidence: list[str] = []
    first_match: re.Match[str] | None = None
    for line in lines:
        for pattern in rule.patterns:
            match = pattern.search(line)
            if match is None:
                continue
            evidence.append(line.strip())
            if first_match is None:
                first_match = match
            break
    return evidence[-_MAX_EVIDENCE_LINES:], first_match


def _import_remediations(match: re.Match[str] | None) -> tuple[str, ...]:
    module = ""
    if match is not None:
        module = (match.groupdict().get("module") or "").strip()
    if not module:
        return _IMPORT_RULE.remediations
    package = module.split(".")[0]
    return (
        f"install '{package}' into the job's environment",
    ) + _IMPORT_RULE.remediations[1:]


def _idle_stall_evidence(signals: JobSignals | None) -> str:
    """Describe a no-output, idle-device stall, or return ``""``."""
    if signals is None:
        return ""
    if (
        signals.seconds_since_output is None
        or signals.utilization_percent is None
        or signals.stall_seconds is None
        or signals.idle_utilization_percent is None
    ):
        return ""
    if (
        signals.seconds_since_output < signals.stall_seconds
        or signals.utilization_percent > signals.idle_utilization_percent
    ):
        return ""
    return (
        f"no new log output for {signals.seconds_since_output:.0f}s "
        f"with device utilization at {signals.utilization_percent:.0f}%"
    )


def diagnose(
    log_tail: str | Iterable[str],
    job_state: str,
    signals: JobSignals | None = None,
) -> Diagnosis:
    """Classify a Failed or Unknown job.

    Raises ``ValueError`` for any other job state; diagnoses exist only for
    jobs that did not finish cleanly.
    """
    if job_state not in DIAGNOSABLE_JOB_STATES:
        raise ValueError(
            f"diagnosis requires a failed or unknown job, got '{job_state}'"
        )
    lines = _normalize_lines(log_tail)

    for rule in _RULES:
        evidence, match = _match_rule(rule, lines)
        if not evidence:
            continue
        remediations = rule.remediations
        if rule.category == DIAGNOSIS_IMPORT:
            remediations = _import_remediations(match)
        return Diagnosis(
            category=rule.category,
            remediations=remediations,
            evidence=tuple(evidence),
            job_state=job_state,
        )

    stall = _idle_stall_evidence(signals)
    if stall:
        return Diagnosis(
            category=DIAGNOSIS_DATA_STALL,
            remediations=_DATA_STALL_RULE.remediations,
            evidence=(stall,),
            job_state=job_state,
        )

    nonempty = [line.strip() for line in lines if line.strip()]
    return Diagnosis(
        category=DIAGNOSIS_UNKNOWN,
        remediations=_UNKNOWN_REMEDIATIONS,
        evidence=tuple(nonempty[-5:]),
        job_state=job_state,
    )
