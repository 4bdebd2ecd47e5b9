from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from trainlab.constants import DEFAULT_PROBE_TIMEOUT_SECONDS
from trainlab.models import DeviceRecord, JobHandle, SpawnError
from trainlab.utils import _compact_text, _run_command, _utc_now

_DEVICE_QUERY_FIELDS = "index,name,memory.total,memory.used,utilization.gpu"


# ---------------------------------------------------------------------------
# Process table
# ---------------------------------------------------------------------------


def _pid_running(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    if os.name != "nt":
        proc = _run_command(["ps", "-p", str(pid), "-o", "stat="], timeout=1)
        stat = (proc.stdout or "").strip()
        # Exited-but-unreaped processes show up as zombies; they are not running.
        if proc.returncode == 0 and "Z" in stat:
            return False
    return True


class ProcessTable:
    """Liveness, exit-code, and signal access by pid.

    Processes spawned by :func:`launch` in this interpreter are tracked so
    their exit codes can be reaped. Any other pid (a job re-attached from a
    run record) only answers liveness; its exit code is unknowable.
    """

    def __init__(self) -> None:
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    def track(self, proc: subprocess.Popen[bytes]) -> None:
        self._children[int(proc.pid)] = proc

    def is_child(self, pid: int) -> bool:
        return pid in self._children

    def is_alive(self, pid: int) -> bool:
        proc = self._children.get(pid)
        if proc is not None:
            return proc.poll() is None
        return _pid_running(pid)

    def exit_code(self, pid: int) -> int | None:
        proc = self._children.get(pid)
        if proc is None:
            return None
        return proc.poll()

    def send_signal(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        """Signal the job's process group; return False if it is already gone."""
        try:
            if hasattr(os, "killpg"):
                # Jobs lead their own session, so the group id is the pid.
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            os.kill(pid, sig)
        return True


# ---------------------------------------------------------------------------
# Launcher
# ---------------------------------------------------------------------------


def job_environment(
    *,
    devices: tuple[int, ...] | None,
    telemetry_project: str = "",
    bin_dir: Path | None = None,
    extra_env: Mapping[str, str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the variables injected into the job's environment only."""
    base = os.environ if base_env is None else base_env
    injected: dict[str, str] = {"PYTHONUNBUFFERED": "1"}
    if devices is not None:
        injected["CUDA_VISIBLE_DEVICES"] = ",".join(str(index) for index in devices)
    if telemetry_project:
        injected["WANDB_PROJECT"] = telemetry_project
    if bin_dir is not None:
        current_path = str(base.get("PATH", ""))
        injected["PATH"] = (
            f"{bin_dir}{os.pathsep}{current_path}" if current_path else str(bin_dir)
        )
    if extra_env:
        injected.update({str(key): str(value) for key, value in extra_env.items()})
    return injected


def launch(
    command: tuple[str, ...] | list[str],
    env: Mapping[str, str],
    working_dir: Path | None,
    log_path: Path,
    *,
    process_table: ProcessTable | None = None,
) -> JobHandle:
    """Spawn *command* in its own session and return without waiting.

    stdout and stderr share one append-only log at *log_path*. *env* holds
    the injected variables; they are layered over a copy of the current
    environment so this process's own environment is never touched.
    """
    argv = [str(part) for part in command]
    if not argv:
        raise SpawnError("cannot launch an empty command")
    child_env = os.environ.copy()
    child_env.update({str(key): str(value) for key, value in env.items()})

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = log_path.open("ab")
    except OSError as exc:
        raise SpawnError(
            f"could not open job log {log_path}: {_compact_text(str(exc))}", command=tuple(argv)
        ) from exc
    kwargs: dict[str, Any] = {
        "cwd": str(working_dir) if working_dir else None,
        "stdin": subprocess.DEVNULL,
        "stdout": log_handle,
        "stderr": subprocess.STDOUT,
        "env": child_env,
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    else:
        kwargs["start_new_session"] = True

    started_at = _utc_now()
    start_time = time.time()
    try:
        proc = subprocess.Popen(argv, **kwargs)
    except (OSError, ValueError) as exc:
        raise SpawnError(
            f"could not spawn {argv[0]}: {_compact_text(str(exc))}", command=tuple(argv)
        ) from exc
    finally:
        log_handle.close()

    if process_table is not None:
        process_table.track(proc)
    return JobHandle(
        pid=int(proc.pid),
        log_path=log_path,
        started_at=started_at,
        start_time=start_time,
        command=tuple(argv),
        env=dict(env),
        working_dir=working_dir,
    )


# ---------------------------------------------------------------------------
# Device enumeration
# ---------------------------------------------------------------------------


def _parse_number(value: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        return 0.0


def parse_device_csv(text: str) -> tuple[DeviceRecord, ...]:
    """Parse ``nvidia-smi --format=csv,noheader,nounits`` rows.

    Rows that do not carry all five fields are dropped.
    """
    records: list[DeviceRecord] = []
    for line in str(text or "").splitlines():
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 5:
            continue
        try:
            index = int(parts[0])
        except ValueError:
            continue
        # Names may contain commas; the numeric fields are always last.
        name = ",".join(parts[1:-3]).strip()
        records.append(
            DeviceRecord(
                index=index,
                name=name,
                memory_total_mb=_parse_number(parts[-3]),
                memory_used_mb=_parse_number(parts[-2]),
                utilization_percent=_parse_number(parts[-1]),
            )
        )
    return tuple(sorted(records, key=lambda record: record.index))


class NvidiaSmiDeviceQuery:
    """Device enumeration through ``nvidia-smi``; no devices when it is absent."""

    def __init__(
        self,
        *,
        runner: Callable[..., "subprocess.CompletedProcess[str]"] = _run_command,
        timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._runner = runner
        self._timeout = timeout

    def list_devices(self) -> tuple[DeviceRecord, ...]:
        proc = self._runner(
            [
                "nvidia-smi",
                f"--query-gpu={_DEVICE_QUERY_FIELDS}",
                "--format=csv,noheader,nounits",
            ],
            timeout=self._timeout,
        )
        if proc.returncode != 0:
            return ()
        return parse_device_csv(proc.stdout or "")
