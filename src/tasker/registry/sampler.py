"""
Process Sampler.

Takes a point-in-time resource snapshot of one OS process. Expected failures
(process gone, PID recycled, zombie, timeout) come back as ``SampleErr``
values rather than exceptions so every attempt can be persisted.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

import psutil

from ..utils.logging import get_logger
from .storage import ProcessMetricSample

logger = get_logger(__name__)

BYTES_PER_MB = 1024 * 1024

# Start times further apart than this mean the PID now belongs to another process
PID_REUSE_TOLERANCE_SECONDS = 1.0


class SampleErrorType(str, Enum):
    """Why a sample could not be taken."""
    PROCESS_DIED = "PROCESS_DIED"
    PID_REUSED = "PID_REUSED"
    ZOMBIE_PROCESS = "ZOMBIE_PROCESS"
    COLLECTION_TIMEOUT = "COLLECTION_TIMEOUT"
    PS_ERROR = "PS_ERROR"
    UNKNOWN = "UNKNOWN"


class CpuTimeCache:
    """
    Last (wall time, cumulative CPU seconds) observed per PID.

    CPU percent is the CPU-time delta over the wall-time delta. The first
    observation of a PID has no delta; neither do observations further apart
    than ``max_age`` seconds, or ones where CPU time went backwards.
    """

    def __init__(
        self,
        max_age: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_age = max_age
        self.clock = clock
        self._entries: Dict[int, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def cpu_percent(self, pid: int, cpu_seconds: float) -> Optional[float]:
        """Record an observation and return the CPU percent since the previous one."""
        now = self.clock()
        with self._lock:
            previous = self._entries.get(pid)
            self._entries[pid] = (now, cpu_seconds)

        if previous is None:
            return None

        prev_wall, prev_cpu = previous
        elapsed = now - prev_wall
        if not 0 < elapsed < self.max_age:
            return None

        cpu_delta = cpu_seconds - prev_cpu
        if cpu_delta < 0:
            return None
        return cpu_delta / elapsed * 100.0

    def forget(self, pid: int) -> None:
        with self._lock:
            self._entries.pop(pid, None)

    def prune(self) -> int:
        """Drop observations too old to produce a percent; returns how many."""
        cutoff = self.clock() - self.max_age
        with self._lock:
            expired = [pid for pid, (wall, _) in self._entries.items() if wall <= cutoff]
            for pid in expired:
                del self._entries[pid]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, pid: int) -> bool:
        return pid in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class ProcessSnapshot:
    """Resource usage read from a live process."""
    process_start_time: Optional[datetime] = None
    cpu_percent: Optional[float] = None
    cpu_cores: Optional[int] = None
    memory_mb: Optional[float] = None
    memory_percent: Optional[float] = None
    memory_vms_mb: Optional[float] = None
    read_bytes: Optional[int] = None
    write_bytes: Optional[int] = None
    read_count: Optional[int] = None
    write_count: Optional[int] = None
    num_fds: Optional[int] = None
    num_threads: Optional[int] = None
    open_files: Optional[int] = None
    ctx_switches_voluntary: Optional[int] = None
    ctx_switches_involuntary: Optional[int] = None
    child_count: Optional[int] = None
    child_total_cpu_percent: Optional[float] = None
    child_total_memory_mb: Optional[float] = None

    def to_fields(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class SamplerError:
    """A typed sampling failure."""
    error_type: SampleErrorType
    message: str
    is_alive: bool = False
    process_start_time: Optional[datetime] = None
    # Metrics that were still readable (PS_ERROR only)
    partial: Optional[ProcessSnapshot] = None


@dataclass
class SampleOk:
    """Successful sample."""
    snapshot: ProcessSnapshot
    duration_ms: float = 0.0

    ok = True

    def to_metric_sample(
        self,
        run_id: str,
        hostname: str,
        pid: int,
        timestamp: datetime,
        reporter_version: Optional[str] = None
    ) -> ProcessMetricSample:
        return ProcessMetricSample(
            run_id=run_id,
            timestamp=timestamp,
            process_id=pid,
            hostname=hostname,
            is_alive=True,
            collection_error=False,
            collection_duration_ms=self.duration_ms,
            reporter_version=reporter_version,
            **self.snapshot.to_fields()
        )


@dataclass
class SampleErr:
    """Failed sample; still persisted as a row with the error fields set."""
    error: SamplerError
    duration_ms: float = 0.0

    ok = False

    @property
    def error_type(self) -> SampleErrorType:
        return self.error.error_type

    def to_metric_sample(
        self,
        run_id: str,
        hostname: str,
        pid: int,
        timestamp: datetime,
        reporter_version: Optional[str] = None
    ) -> ProcessMetricSample:
        metrics = self.error.partial.to_fields() if self.error.partial else {}
        metrics["process_start_time"] = (
            metrics.get("process_start_time") or self.error.process_start_time
        )
        return ProcessMetricSample(
            run_id=run_id,
            timestamp=timestamp,
            process_id=pid,
            hostname=hostname,
            is_alive=self.error.is_alive,
            collection_error=True,
            error_type=self.error.error_type.value,
            error_message=self.error.message,
            collection_duration_ms=self.duration_ms,
            reporter_version=reporter_version,
            **metrics
        )


SampleResult = Union[SampleOk, SampleErr]


def _err(error_type: SampleErrorType, message: str, **kwargs) -> SampleErr:
    return SampleErr(SamplerError(error_type, message, **kwargs))


def _optional(read: Callable[[], Any]) -> Any:
    """Read a metric that some platforms or permissions do not provide."""
    try:
        return read()
    except (psutil.AccessDenied, AttributeError, NotImplementedError):
        return None


class ProcessSampler:
    """Samples OS processes with psutil."""

    def __init__(
        self,
        cache: Optional[CpuTimeCache] = None,
        include_children: bool = True,
        timeout: float = 5.0,
        scale_cpu_by_cores: bool = False,
        process_factory: Callable[[int], Any] = psutil.Process
    ):
        """
        Initialize sampler.

        Args:
            cache: CPU-time cache; a private one is created if not given
            include_children: Aggregate direct children by default
            timeout: Default wall-clock budget per sample, in seconds
            scale_cpu_by_cores: Divide CPU percent by the logical core count
            process_factory: Callable returning a psutil.Process-like handle
        """
        self.cache = cache if cache is not None else CpuTimeCache()
        self.include_children = include_children
        self.timeout = timeout
        self.scale_cpu_by_cores = scale_cpu_by_cores
        self.process_factory = process_factory
        self.cpu_cores = psutil.cpu_count() or 1

    async def sample(
        self,
        pid: int,
        previous_start_time: Optional[datetime] = None,
        include_children: Optional[bool] = None,
        timeout: Optional[float] = None
    ) -> SampleResult:
        """
        Sample ``pid`` within the time budget. Never raises.

        Args:
            pid: Process to inspect
            previous_start_time: Start time recorded by the last sample of
                the same run; a mismatch means the PID was recycled
            include_children: Override the sampler default
            timeout: Override the sampler default budget
        """
        started = time.perf_counter()
        budget = self.timeout if timeout is None else timeout
        children = self.include_children if include_children is None else include_children

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.collect, pid, previous_start_time, children),
                timeout=budget
            )
        except asyncio.TimeoutError:
            result = _err(
                SampleErrorType.COLLECTION_TIMEOUT,
                f"Metrics collection exceeded {budget:g} seconds",
                is_alive=True
            )
        except Exception as e:
            logger.warning("sampler_unexpected_error", pid=pid, error=str(e))
            result = _err(SampleErrorType.UNKNOWN, f"Unexpected error: {e}", is_alive=True)

        result.duration_ms = (time.perf_counter() - started) * 1000
        return result

    def collect(
        self,
        pid: int,
        previous_start_time: Optional[datetime] = None,
        include_children: bool = True
    ) -> SampleResult:
        """Blocking collection; ``sample`` runs this in a worker thread."""
        try:
            process = self.process_factory(pid)
        except psutil.NoSuchProcess:
            self.cache.forget(pid)
            return _err(SampleErrorType.PROCESS_DIED, f"Process {pid} no longer exists")

        try:
            return self._collect_from(process, pid, previous_start_time, include_children)
        except psutil.ZombieProcess:
            return _err(SampleErrorType.ZOMBIE_PROCESS, f"Process {pid} is zombie")
        except psutil.NoSuchProcess:
            self.cache.forget(pid)
            return _err(SampleErrorType.PROCESS_DIED, f"Process {pid} no longer exists")

    def _collect_from(
        self,
        process: Any,
        pid: int,
        previous_start_time: Optional[datetime],
        include_children: bool
    ) -> SampleResult:
        start_time_error: Optional[str] = None
        process_start_time: Optional[datetime] = None

        try:
            process_start_time = datetime.fromtimestamp(process.create_time(), timezone.utc)
        except psutil.AccessDenied as e:
            start_time_error = f"Failed to get process start time: {e}"

        if process_start_time is not None and previous_start_time is not None:
            drift = abs((process_start_time - previous_start_time).total_seconds())
            if drift > PID_REUSE_TOLERANCE_SECONDS:
                return _err(
                    SampleErrorType.PID_REUSED,
                    f"Process PID {pid} was reused (start time changed by {drift:.1f}s)",
                    process_start_time=process_start_time
                )

        status = _optional(process.status)
        if status in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
            return _err(
                SampleErrorType.ZOMBIE_PROCESS,
                f"Process {pid} is {status}",
                process_start_time=process_start_time
            )

        snapshot = ProcessSnapshot(process_start_time=process_start_time, cpu_cores=self.cpu_cores)

        with process.oneshot():
            cpu_times = _optional(process.cpu_times)
            if cpu_times is not None:
                percent = self.cache.cpu_percent(pid, cpu_times.user + cpu_times.system)
                if percent is not None and self.scale_cpu_by_cores:
                    percent /= self.cpu_cores
                snapshot.cpu_percent = percent

            memory = _optional(process.memory_info)
            if memory is not None:
                snapshot.memory_mb = memory.rss / BYTES_PER_MB
                snapshot.memory_vms_mb = memory.vms / BYTES_PER_MB
            snapshot.memory_percent = _optional(process.memory_percent)

            snapshot.num_threads = _optional(process.num_threads)
            snapshot.num_fds = _optional(process.num_fds)

            io = _optional(process.io_counters)
            if io is not None:
                snapshot.read_bytes = io.read_bytes
                snapshot.write_bytes = io.write_bytes
                snapshot.read_count = io.read_count
                snapshot.write_count = io.write_count

            ctx = _optional(process.num_ctx_switches)
            if ctx is not None:
                snapshot.ctx_switches_voluntary = ctx.voluntary
                snapshot.ctx_switches_involuntary = ctx.involuntary

        open_files = _optional(process.open_files)
        snapshot.open_files = len(open_files) if open_files is not None else None

        if include_children:
            self._collect_children(process, snapshot)

        if start_time_error:
            return _err(
                SampleErrorType.PS_ERROR,
                start_time_error,
                is_alive=True,
                partial=snapshot
            )
        return SampleOk(snapshot)

    def _collect_children(self, process: Any, snapshot: ProcessSnapshot) -> None:
        """Aggregate direct (non-recursive) children."""
        self.cache.prune()
        children = _optional(lambda: process.children(recursive=False)) or []
        snapshot.child_count = len(children)
        snapshot.child_total_memory_mb = 0.0

        cpu_total = 0.0
        cpu_known = not children
        for child in children:
            try:
                cpu_times = child.cpu_times()
                snapshot.child_total_memory_mb += child.memory_info().rss / BYTES_PER_MB
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

            # Child handles are new objects on every sample, so the delta comes from the cache
            percent = self.cache.cpu_percent(child.pid, cpu_times.user + cpu_times.system)
            if percent is not None:
                cpu_total += percent
                cpu_known = True

        if cpu_known and self.scale_cpu_by_cores:
            cpu_total /= self.cpu_cores
        snapshot.child_total_cpu_percent = cpu_total if cpu_known else None


__all__ = [
    'SampleErrorType',
    'CpuTimeCache',
    'ProcessSnapshot',
    'SamplerError',
    'SampleOk',
    'SampleErr',
    'SampleResult',
    'ProcessSampler',
    'PID_REUSE_TOLERANCE_SECONDS',
]
