from __future__ import annotations

import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from trainlab.launch_runtime import (
    NvidiaSmiDeviceQuery,
    ProcessTable,
    job_environment,
    launch,
    parse_device_csv,
)
from trainlab.models import SpawnError


def _wait_for_exit(table: ProcessTable, pid: int, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while table.is_alive(pid):
        if time.monotonic() > deadline:
            raise AssertionError(f"pid {pid} still alive after {timeout}s")
        time.sleep(0.05)


# ---------------------------------------------------------------------------
# job_environment
# ---------------------------------------------------------------------------


def test_job_environment_injects_only_what_it_owns(tmp_path: Path) -> None:
    env = job_environment(
        devices=(2, 0),
        telemetry_project="demo",
        bin_dir=tmp_path / "bin",
        extra_env={"SEED": 7},
        base_env={"PATH": "/usr/bin", "HOME": "/root"},
    )

    assert env == {
        "PYTHONUNBUFFERED": "1",
        "CUDA_VISIBLE_DEVICES": "2,0",
        "WANDB_PROJECT": "demo",
        "PATH": f"{tmp_path / 'bin'}{os.pathsep}/usr/bin",
        "SEED": "7",
    }


def test_job_environment_without_device_selection_leaves_visibility_alone() -> None:
    env = job_environment(devices=None, base_env={})

    assert "CUDA_VISIBLE_DEVICES" not in env
    assert "WANDB_PROJECT" not in env
    assert "PATH" not in env


def test_empty_device_selection_hides_every_device() -> None:
    env = job_environment(devices=(), base_env={})

    assert env["CUDA_VISIBLE_DEVICES"] == ""


# ---------------------------------------------------------------------------
# launch
# ---------------------------------------------------------------------------


def test_launch_captures_stdout_and_stderr_in_one_log(tmp_path: Path) -> None:
    table = ProcessTable()
    log_path = tmp_path / "logs" / "train.log"
    code = (
        "import os, sys\n"
        "print('out', os.environ['TRAINLAB_PROBE'])\n"
        "print('err line', file=sys.stderr)\n"
        "sys.exit(3)\n"
    )

    handle = launch(
        [sys.executable, "-c", code],
        {"TRAINLAB_PROBE": "visible"},
        tmp_path,
        log_path,
        process_table=table,
    )
    _wait_for_exit(table, handle.pid)

    assert table.is_child(handle.pid)
    assert table.exit_code(handle.pid) == 3
    log_text = log_path.read_text(encoding="utf-8")
    assert "out visible" in log_text
    assert "err line" in log_text
    assert handle.env == {"TRAINLAB_PROBE": "visible"}
    assert handle.working_dir == tmp_path
    assert "TRAINLAB_PROBE" not in os.environ


def test_launch_appends_to_an_existing_log(tmp_path: Path) -> None:
    table = ProcessTable()
    log_path = tmp_path / "train.log"
    log_path.write_text("previous attempt\n", encoding="utf-8")

    handle = launch(
        [sys.executable, "-c", "print('second attempt')"],
        {},
        None,
        log_path,
        process_table=table,
    )
    _wait_for_exit(table, handle.pid)

    assert log_path.read_text(encoding="utf-8").splitlines() == [
        "previous attempt",
        "second attempt",
    ]


def test_launch_returns_before_the_job_finishes(tmp_path: Path) -> None:
    table = ProcessTable()

    handle = launch(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        {},
        None,
        tmp_path / "train.log",
        process_table=table,
    )
    try:
        assert table.is_alive(handle.pid)
        assert table.exit_code(handle.pid) is None
    finally:
        assert table.send_signal(handle.pid) is True
        _wait_for_exit(table, handle.pid)

    assert table.send_signal(handle.pid) is False


def test_launch_of_missing_executable_raises_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(SpawnError) as excinfo:
        launch(["trainlab-definitely-missing-binary"], {}, None, tmp_path / "train.log")

    assert excinfo.value.command == ("trainlab-definitely-missing-binary",)


def test_unwritable_log_location_raises_spawn_error(tmp_path: Path) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory\n", encoding="utf-8")

    with pytest.raises(SpawnError, match="could not open job log") as excinfo:
        launch([sys.executable, "-c", "print('never')"], {}, None, blocker / "train.log")

    assert excinfo.value.command == (sys.executable, "-c", "print('never')")
    assert blocker.read_text(encoding="utf-8") == "not a directory\n"


def test_launch_of_empty_command_raises_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(SpawnError, match="empty"):
        launch([], {}, None, tmp_path / "train.log")


def test_foreign_pid_answers_liveness_only() -> None:
    table = ProcessTable()

    assert table.is_alive(os.getpid()) is True
    assert table.exit_code(os.getpid()) is None
    assert table.is_child(os.getpid()) is False


# ---------------------------------------------------------------------------
# Device enumeration
# ---------------------------------------------------------------------------


def test_parse_device_csv_sorts_by_index_and_keeps_comma_names() -> None:
    text = (
        "1, NVIDIA A100-SXM4-80GB, 81920, 1024, 97\n"
        "0, Tesla V100, PCIe, 16384, 0, 3\n"
        "garbage line\n"
        "x, broken, 1, 2, 3\n"
    )

    records = parse_device_csv(text)

    assert [record.index for record in records] == [0, 1]
    assert records[0].name == "Tesla V100,PCIe"
    assert records[0].memory_total_mb == 16384.0
    assert records[0].utilization_percent == 3.0
    assert records[1].memory_used_mb == 1024.0
    assert records[1].utilization_percent == 97.0


def test_nvidia_smi_query_uses_csv_format_and_tolerates_absence() -> None:
    calls: list[list[str]] = []

    def present(argv, *, timeout=None, cwd=None, env=None):
        calls.append(list(argv))
        return subprocess.CompletedProcess(argv, 0, "0, GPU, 100, 50, 12\n", "")

    def absent(argv, *, timeout=None, cwd=None, env=None):
        return subprocess.CompletedProcess(argv, 127, "", "nvidia-smi: not found")

    records = NvidiaSmiDeviceQuery(runner=present).list_devices()

    assert len(records) == 1
    assert records[0].utilization_percent == 12.0
    assert calls[0][0] == "nvidia-smi"
    assert "--format=csv,noheader,nounits" in calls[0]
    assert NvidiaSmiDeviceQuery(runner=absent).list_devices() == ()
