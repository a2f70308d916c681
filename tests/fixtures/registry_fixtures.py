"""
Task registry test fixtures.
"""

import uuid
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import psutil

from tasker.registry.storage import RegistryStorage, TaskRun, TaskStatus


CpuTimes = namedtuple("CpuTimes", "user system")
MemoryInfo = namedtuple("MemoryInfo", "rss vms")
IOCounters = namedtuple("IOCounters", "read_count write_count read_bytes write_bytes")
CtxSwitches = namedtuple("CtxSwitches", "voluntary involuntary")

MB = 1024 * 1024


class FakeClock:
    """Settable wall clock (aware UTC) and monotonic clock that advance together."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.mono = 1000.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        delta = timedelta(seconds=seconds, **kwargs)
        self.now += delta
        self.mono += delta.total_seconds()
        return self.now


class FakeProcess:
    """
    Scriptable stand-in for psutil.Process.

    Any method named in ``failures`` raises the given exception instead of
    returning its value.
    """

    def __init__(
        self,
        pid: int,
        create_time: Optional[float] = None,
        status: str = psutil.STATUS_RUNNING,
        cpu_user: float = 1.0,
        cpu_system: float = 0.5,
        rss: int = 100 * MB,
        vms: int = 400 * MB,
        memory_percent: float = 1.5,
        num_threads: int = 4,
        num_fds: int = 12,
        open_files: int = 3,
        children: Optional[List["FakeProcess"]] = None,
        failures: Optional[Dict[str, BaseException]] = None
    ):
        self.pid = pid
        self._create_time = create_time if create_time is not None else 1_700_000_000.0
        self._status = status
        self.cpu_user = cpu_user
        self.cpu_system = cpu_system
        self.rss = rss
        self.vms = vms
        self._memory_percent = memory_percent
        self._num_threads = num_threads
        self._num_fds = num_fds
        self._open_files = open_files
        self._children = children or []
        self.failures = failures or {}
        self.terminated = False
        self.killed = False
        self.exit_on_terminate = True

    def _check(self, name: str) -> None:
        error = self.failures.get(name)
        if error is not None:
            raise error

    @contextmanager
    def oneshot(self):
        yield

    def create_time(self) -> float:
        self._check("create_time")
        return self._create_time

    def status(self) -> str:
        self._check("status")
        return self._status

    def cpu_times(self):
        self._check("cpu_times")
        return CpuTimes(self.cpu_user, self.cpu_system)

    def memory_info(self):
        self._check("memory_info")
        return MemoryInfo(self.rss, self.vms)

    def memory_percent(self) -> float:
        self._check("memory_percent")
        return self._memory_percent

    def num_threads(self) -> int:
        self._check("num_threads")
        return self._num_threads

    def num_fds(self) -> int:
        self._check("num_fds")
        return self._num_fds

    def io_counters(self):
        self._check("io_counters")
        return IOCounters(10, 20, 4096, 8192)

    def num_ctx_switches(self):
        self._check("num_ctx_switches")
        return CtxSwitches(100, 7)

    def open_files(self) -> list:
        self._check("open_files")
        return [object()] * self._open_files

    def children(self, recursive: bool = False) -> list:
        self._check("children")
        return list(self._children)

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True

    def wait(self, timeout=None) -> None:
        if not self.exit_on_terminate:
            raise psutil.TimeoutExpired(timeout, pid=self.pid)


class FakeProcessTable:
    """process_factory replacement: unknown PIDs raise NoSuchProcess."""

    def __init__(self, *processes: FakeProcess):
        self.processes = {p.pid: p for p in processes}

    def add(self, process: FakeProcess) -> FakeProcess:
        self.processes[process.pid] = process
        return process

    def remove(self, pid: int) -> None:
        self.processes.pop(pid, None)

    def __call__(self, pid: int) -> FakeProcess:
        try:
            return self.processes[pid]
        except KeyError:
            raise psutil.NoSuchProcess(pid) from None


class RegistryFixtures:
    """Seed helpers for registry storage."""

    @staticmethod
    async def create_task(
        storage: RegistryStorage,
        stage_name: str = "ingest",
        task_name: str = "load_files"
    ) -> int:
        stage_id = await storage.register_stage(stage_name, 1)
        return await storage.register_task(stage_id, task_name, 1)

    @staticmethod
    async def create_run(
        storage: RegistryStorage,
        task_id: int,
        hostname: str = "worker-1",
        process_id: Optional[int] = 4242,
        status: TaskStatus = TaskStatus.RUNNING,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        run_id: Optional[str] = None
    ) -> TaskRun:
        run = TaskRun(
            run_id=run_id or str(uuid.uuid4()),
            task_id=task_id,
            status=status,
            hostname=hostname,
            process_id=process_id,
            start_time=start_time or storage.clock(),
            end_time=end_time,
        )
        await storage.create_task_run(run)
        return run

    @staticmethod
    def metric_fields(**overrides: Any) -> Dict[str, Any]:
        fields = {
            "is_alive": True,
            "cpu_percent": 12.5,
            "memory_mb": 100.0,
            "num_threads": 4,
        }
        fields.update(overrides)
        return fields
