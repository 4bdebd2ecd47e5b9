from __future__ import annotations

import signal
import time
from typing import Callable

from trainlab.constants import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_IDLE_UTILIZATION_PERCENT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_STALL_SECONDS,
    DEFAULT_TAIL_LINES,
    DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    JOB_FAILED,
    JOB_KILLED,
    JOB_RUNNING,
    JOB_STARTING,
    JOB_SUCCEEDED,
    JOB_UNKNOWN,
    TERMINAL_JOB_STATES,
)
from trainlab.launch_runtime import NvidiaSmiDeviceQuery, ProcessTable
from trainlab.models import DeviceRecord, JobHandle, JobSignals, SupervisionPolicy
from trainlab.utils import _tail_lines

_TERMINATE_CHECK_SECONDS = 0.1


def _default_policy() -> SupervisionPolicy:
    return SupervisionPolicy(
        poll_interval_seconds=DEFAULT_POLL_INTERVAL_SECONDS,
        grace_seconds=DEFAULT_GRACE_SECONDS,
        stall_seconds=DEFAULT_STALL_SECONDS,
        idle_utilization_percent=DEFAULT_IDLE_UTILIZATION_PERCENT,
    )


def _visible_indices(handle: JobHandle) -> set[int] | None:
    raw = str(handle.env.get("CUDA_VISIBLE_DEVICES", "")).strip()
    if not raw:
        return None
    indices: set[int] = set()
    for item in raw.split(","):
        try:
            indices.add(int(item.strip()))
        except ValueError:
            continue
    return indices or None


class JobSupervisor:
    """Poll-driven job state machine for one launched process.

    States move Starting -> Running once the process has stayed alive for
    the grace window, and to a terminal state once the pid stops resolving.
    Terminal states never change again; an Unknown job needs a new
    supervisor to be watched again. Device samples are kept for diagnosis
    only and never move the state.
    """

    def __init__(
        self,
        handle: JobHandle,
        process_table: ProcessTable,
        *,
        policy: SupervisionPolicy | None = None,
        device_query: NvidiaSmiDeviceQuery | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.handle = handle
        self.policy = policy or _default_policy()
        self._table = process_table
        self._device_query = device_query
        self._clock = clock
        self._sleep = sleep
        self._state = JOB_STARTING
        self._exit_code: int | None = None
        self._kill_requested = False
        self._log_size = 0
        self._last_output_at = handle.start_time
        self._devices: tuple[DeviceRecord, ...] = ()
        self._utilization: float | None = None

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def devices(self) -> tuple[DeviceRecord, ...]:
        return self._devices

    def status(self) -> str:
        return self._state

    def is_terminal(self) -> bool:
        return self._state in TERMINAL_JOB_STATES

    def tail(self, count: int = DEFAULT_TAIL_LINES) -> list[str]:
        return _tail_lines(self.handle.log_path, count)

    def signals(self) -> JobSignals:
        return JobSignals(
            seconds_since_output=max(0.0, self._clock() - self._last_output_at),
            utilization_percent=self._utilization,
            stall_seconds=self.policy.stall_seconds,
            idle_utilization_percent=self.policy.idle_utilization_percent,
        )

    def _observe_log(self) -> None:
        try:
            stat = self.handle.log_path.stat()
        except OSError:
            return
        if stat.st_size != self._log_size:
            self._log_size = stat.st_size
            self._last_output_at = max(self._last_output_at, stat.st_mtime)

    def _sample_devices(self) -> None:
        if self._device_query is None:
            return
        records = self._device_query.list_devices()
        visible = _visible_indices(self.handle)
        if visible is not None:
            records = tuple(record for record in records if record.index in visible)
        self._devices = records
        if records:
            total = sum(record.utilization_percent for record in records)
            self._utilization = total / len(records)

    def poll(self) -> str:
        """Run one bounded, non-blocking tick and return the resulting state."""
        if self.is_terminal():
            return self._state
        now = self._clock()
        self._observe_log()
        pid = self.handle.pid
        if self._table.is_alive(pid):
            if (
                self._state == JOB_STARTING
                and now - self.handle.start_time >= self.policy.grace_seconds
            ):
                self._state = JOB_RUNNING
            self._sample_devices()
            return self._state

        self._exit_code = self._table.exit_code(pid)
        if self._kill_requested:
            self._state = JOB_KILLED
        elif self._exit_code is None:
            self._state = JOB_UNKNOWN
        elif self._exit_code == 0:
            self._state = JOB_SUCCEEDED
        else:
            self._state = JOB_FAILED
        return self._state

    def terminate(
        self,
        sig: int = signal.SIGTERM,
        *,
        timeout: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    ) -> str:
        """Signal the job and wait for its pid to stop resolving.

        Escalates to SIGKILL when *timeout* passes. The state becomes Killed
        once the process is gone.
        """
        if self.poll() in TERMINAL_JOB_STATES:
            return self._state
        pid = self.handle.pid
        if not self._table.send_signal(pid, sig):
            # Already gone on its own; report how it actually ended.
            return self.poll()
        self._kill_requested = True
        deadline = self._clock() + timeout
        while self._table.is_alive(pid):
            if self._clock() >= deadline:
                kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
                if sig != kill_signal:
                    self._table.send_signal(pid, kill_signal)
                    sig = kill_signal
                    deadline = self._clock() + timeout
                    continue
                break
            self._sleep(_TERMINATE_CHECK_SECONDS)
        return self.poll()

    def wait(self, *, on_tick: Callable[["JobSupervisor"], None] | None = None) -> str:
        """Poll on the policy interval until the job reaches a terminal state.

        *on_tick* runs after every non-terminal poll; callers use it to apply
        their own policies (for example a wall-clock limit via ``terminate``).
        """
        while True:
            state = self.poll()
            if state in TERMINAL_JOB_STATES:
                return state
            if on_tick is not None:
                on_tick(self)
                if self.is_terminal():
                    return self._state
            self._sleep(self.policy.poll_interval_seconds)
