from __future__ import annotations

import pytest

from trainlab.constants import (
    DIAGNOSIS_CUDA,
    DIAGNOSIS_DATA_STALL,
    DIAGNOSIS_IMPORT,
    DIAGNOSIS_NAN,
    DIAGNOSIS_OOM,
    DIAGNOSIS_UNKNOWN,
    JOB_FAILED,
    JOB_KILLED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    JOB_UNKNOWN,
)
from trainlab.diagnosis import diagnose
from trainlab.models import JobSignals

OOM_TAIL = """\
Epoch 3: 41%|####      | 410/1000
Traceback (most recent call last):
  File "train.py", line 88, in <module>
    outputs = model(batch)
torch.OutOfMemoryError: CUDA out of memory. Tried to allocate 2.00 GiB (GPU 0; 15.78 GiB total capacity)
"""


def _stalled(utilization: float) -> JobSignals:
    return JobSignals(
        seconds_since_output=900.0,
        utilization_percent=utilization,
        stall_seconds=600.0,
        idle_utilization_percent=5.0,
    )


def test_out_of_memory_suggests_smaller_batches_first() -> None:
    result = diagnose(OOM_TAIL, JOB_FAILED)

    assert result.category == DIAGNOSIS_OOM
    assert result.remediations[0] == "reduce batch size"
    assert result.evidence == (
        "torch.OutOfMemoryError: CUDA out of memory. Tried to allocate 2.00 GiB "
        "(GPU 0; 15.78 GiB total capacity)",
    )
    assert result.job_state == JOB_FAILED


def test_memory_beats_driver_errors_in_priority() -> None:
    result = diagnose("RuntimeError: CUDA error: out of memory\n", JOB_FAILED)

    assert result.category == DIAGNOSIS_OOM


def test_memory_beats_divergence_in_priority() -> None:
    tail = "step 10 loss = nan\nRuntimeError: CUDA out of memory.\n"

    assert diagnose(tail, JOB_FAILED).category == DIAGNOSIS_OOM


def test_divergence_beats_driver_errors_in_priority() -> None:
    tail = "step 10 loss = nan\nRuntimeError: CUDA error: device-side assert triggered\n"

    result = diagnose(tail, JOB_FAILED)

    assert result.category == DIAGNOSIS_NAN
    assert result.evidence == ("step 10 loss = nan",)


@pytest.mark.parametrize(
    ("tail", "category"),
    [
        ("step 120 | loss: nan | lr 3e-4\n", DIAGNOSIS_NAN),
        ("FloatingPointError: Minimum loss scale reached\n", DIAGNOSIS_NAN),
        ("RuntimeError: CUDA error: device-side assert triggered\n", DIAGNOSIS_CUDA),
        ("RuntimeError: The NVIDIA driver on your system is too old\n", DIAGNOSIS_CUDA),
        ("torch.distributed.DistBackendError: NCCL error in: ProcessGroupNCCL.cpp\n", DIAGNOSIS_CUDA),
        ("ImportError: libcudart.so.11.0: cannot open shared object file\n", DIAGNOSIS_IMPORT),
        (
            "RuntimeError: DataLoader worker (pid 4242) is killed by signal: Bus error.\n",
            DIAGNOSIS_DATA_STALL,
        ),
    ],
)
def test_log_patterns_map_to_categories(tail: str, category: str) -> None:
    assert diagnose(tail, JOB_FAILED).category == category


def test_missing_module_names_the_package_to_install() -> None:
    tail = [
        "Traceback (most recent call last):",
        '  File "train.py", line 3, in <module>',
        "ModuleNotFoundError: No module named 'timm.models'",
    ]

    result = diagnose(tail, JOB_FAILED)

    assert result.category == DIAGNOSIS_IMPORT
    assert result.remediations[0] == "install 'timm' into the job's environment"
    assert result.evidence == ("ModuleNotFoundError: No module named 'timm.models'",)


def test_idle_devices_without_output_is_a_data_stall() -> None:
    result = diagnose("epoch 1 started\n", JOB_UNKNOWN, _stalled(utilization=0.0))

    assert result.category == DIAGNOSIS_DATA_STALL
    assert result.evidence == ("no new log output for 900s with device utilization at 0%",)
    assert result.job_state == JOB_UNKNOWN


def test_busy_devices_are_not_a_stall() -> None:
    result = diagnose("epoch 1 started\n", JOB_UNKNOWN, _stalled(utilization=80.0))

    assert result.category == DIAGNOSIS_UNKNOWN


def test_silence_without_device_samples_is_not_a_stall() -> None:
    signals = JobSignals(seconds_since_output=900.0, stall_seconds=600.0, idle_utilization_percent=5.0)

    assert diagnose("", JOB_UNKNOWN, signals).category == DIAGNOSIS_UNKNOWN


def test_unknown_keeps_the_last_lines_as_evidence() -> None:
    tail = "\n".join(f"line {number}" for number in range(10)) + "\n\n"

    result = diagnose(tail, JOB_FAILED)

    assert result.category == DIAGNOSIS_UNKNOWN
    assert result.is_unknown
    assert result.evidence == ("line 5", "line 6", "line 7", "line 8", "line 9")
    assert result.remediations


def test_evidence_is_capped() -> None:
    tail = "\n".join(f"RuntimeError: CUDA out of memory (attempt {n})" for n in range(30))

    result = diagnose(tail, JOB_FAILED)

    assert len(result.evidence) == 20
    assert result.evidence[-1].endswith("(attempt 29)")


@pytest.mark.parametrize("state", [JOB_SUCCEEDED, JOB_KILLED, JOB_RUNNING])
def test_only_failed_or_unknown_jobs_are_diagnosed(state: str) -> None:
    with pytest.raises(ValueError, match="failed or unknown"):
        diagnose(OOM_TAIL, state)


def test_diagnosis_is_deterministic() -> None:
    signals = _stalled(utilization=1.0)

    first = diagnose(OOM_TAIL, JOB_FAILED, signals)
    second = diagnose(OOM_TAIL, JOB_FAILED, signals)

    assert first == second
    assert first.to_payload() == second.to_payload()
