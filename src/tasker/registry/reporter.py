"""
Reporter daemon.

A cooperative polling loop that, every tick, checks for a shutdown request,
refreshes its heartbeat, samples every active task run on its host and
persists one metric row per run.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

import psutil

from .. import __version__
from ..utils.config import ReporterConfig
from ..utils.errors import ReporterStartupError
from ..utils.logging import get_logger
from .heartbeat import HeartbeatProtocol, LivenessResult, LivenessStatus, local_hostname
from .sampler import ProcessSampler
from .storage import ActiveTaskRun, RegistryStorage

logger = get_logger(__name__)


class DaemonState(str, Enum):
    """Lifecycle of a reporter daemon."""
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class TickReport:
    """What one tick did."""
    started_at: datetime
    active_tasks: int = 0
    samples_written: int = 0
    sample_errors: int = 0
    errors: List[str] = field(default_factory=list)


class ReporterDaemon:
    """Samples active task runs on one host until told to stop."""

    def __init__(
        self,
        storage: RegistryStorage,
        sampler: Optional[ProcessSampler] = None,
        heartbeat: Optional[HeartbeatProtocol] = None,
        hostname: Optional[str] = None,
        pid: Optional[int] = None,
        version: str = __version__,
        interval: float = 10.0,
        sampler_timeout: float = 5.0,
        include_children: bool = True,
        concurrency: int = 1,
        monotonic: Callable[[], float] = time.monotonic
    ):
        """
        Initialize reporter daemon.

        Args:
            storage: Registry storage
            sampler: Process sampler (a default one is created if None)
            heartbeat: Heartbeat protocol (built on ``storage`` if None)
            hostname: Host whose task runs to sample
            pid: PID recorded as the reporter's identity
            version: Version string written with heartbeats and samples
            interval: Seconds between tick starts
            sampler_timeout: Budget for sampling one process
            include_children: Aggregate direct children of each task process
            concurrency: Number of runs sampled at once within a tick
            monotonic: Clock used to measure tick duration
        """
        self.storage = storage
        self.sampler = sampler or ProcessSampler(timeout=sampler_timeout)
        self.heartbeat = heartbeat or HeartbeatProtocol(storage)
        self.hostname = hostname or self.heartbeat.hostname
        self.pid = pid if pid is not None else os.getpid()
        self.version = version
        self.interval = interval
        self.sampler_timeout = sampler_timeout
        self.include_children = include_children
        self.concurrency = max(1, concurrency)
        self._monotonic = monotonic

        self.state = DaemonState.CREATED
        self.exit_reason: Optional[str] = None
        self.ticks = 0
        self.last_tick: Optional[TickReport] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        storage: RegistryStorage,
        config: ReporterConfig,
        **kwargs
    ) -> "ReporterDaemon":
        sampler = ProcessSampler(
            include_children=config.include_children,
            timeout=config.sampler_timeout,
            scale_cpu_by_cores=config.scale_cpu_by_cores,
        )
        return cls(
            storage,
            sampler=sampler,
            interval=config.collection_interval,
            sampler_timeout=config.sampler_timeout,
            include_children=config.include_children,
            concurrency=config.concurrency,
            **kwargs
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # Supervised lifecycle

    def start(self) -> asyncio.Task:
        """Run the loop as a background task."""
        if self.is_running:
            logger.warning("reporter_already_running", hostname=self.hostname, pid=self.pid)
            return self._task

        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name=f"reporter-{self.hostname}")
        return self._task

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Ask the loop to exit and wait for it.

        The loop notices the request at its next sleep, releases its
        reporter row and returns. It is cancelled if it takes longer
        than ``timeout``.
        """
        if self._task is None:
            return

        if not self._task.done():
            self.state = DaemonState.STOPPING
        self._stop_event.set()

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("reporter_stop_timeout", hostname=self.hostname, pid=self.pid)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        except ReporterStartupError:
            pass

    async def health_check(self, max_heartbeat_age: Optional[float] = None) -> LivenessResult:
        """Liveness of this daemon as seen through its heartbeat row."""
        if max_heartbeat_age is None:
            max_heartbeat_age = max(60.0, self.interval * 3)
        return await self.heartbeat.is_alive(self.hostname, self.pid, max_heartbeat_age)

    # Loop

    async def run(self) -> None:
        """
        Claim the host and tick until shutdown.

        Raises:
            ReporterStartupError: If the host cannot be claimed
        """
        try:
            await self.heartbeat.claim_host(self.hostname, self.pid, self.version)
        except Exception as e:
            self.state = DaemonState.FAILED
            self.exit_reason = "startup_failed"
            logger.error("reporter_startup_failed", hostname=self.hostname, error=str(e))
            raise ReporterStartupError(
                f"Reporter could not claim host {self.hostname}: {e}", cause=e
            ) from e

        self.state = DaemonState.RUNNING
        logger.info(
            "reporter_started",
            hostname=self.hostname,
            pid=self.pid,
            interval=self.interval,
            version=self.version
        )

        try:
            while not self._stop_event.is_set():
                tick_started = self._monotonic()

                try:
                    if not await self.tick():
                        break
                except Exception as e:
                    logger.error("reporter_tick_failed", hostname=self.hostname, error=str(e))

                elapsed = self._monotonic() - tick_started
                if elapsed >= self.interval:
                    logger.warning(
                        "reporter_tick_overrun",
                        duration_seconds=round(elapsed, 3),
                        interval=self.interval
                    )
                    delay = 0.0
                else:
                    delay = self.interval - elapsed

                if await self._wait(delay):
                    self.exit_reason = self.exit_reason or "stopped"
                    break
        finally:
            await self._release()
            if self.state != DaemonState.FAILED:
                self.state = DaemonState.STOPPED
            logger.info(
                "reporter_stopped",
                hostname=self.hostname,
                pid=self.pid,
                reason=self.exit_reason,
                ticks=self.ticks
            )

    async def tick(self) -> bool:
        """
        Run one iteration.

        Returns:
            False when the loop must end (shutdown requested or host lost)
        """
        if await self.heartbeat.should_shutdown(self.hostname, self.pid):
            self.exit_reason = "shutdown_requested"
            return False

        if not await self.heartbeat.refresh_heartbeat(self.hostname, self.pid, self.version):
            logger.warning("reporter_superseded", hostname=self.hostname, pid=self.pid)
            self.exit_reason = "superseded"
            return False

        self.last_tick = await self.sample_active_tasks()
        self.ticks += 1
        return True

    async def sample_active_tasks(self) -> TickReport:
        """Sample and persist every active run on this host."""
        report = TickReport(started_at=self.storage.clock())

        active = await self.storage.list_active_task_runs(self.hostname)
        report.active_tasks = len(active)
        logger.debug("reporter_active_tasks", hostname=self.hostname, count=len(active))
        if not active:
            return report

        previous = await self.storage.latest_prior_start_times(run.run_id for run in active)

        if self.concurrency == 1:
            for run in active:
                await self._sample_run(run, previous.get(run.run_id), report)
        else:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(run: ActiveTaskRun) -> None:
                async with semaphore:
                    await self._sample_run(run, previous.get(run.run_id), report)

            await asyncio.gather(*(bounded(run) for run in active))

        return report

    async def _sample_run(
        self,
        run: ActiveTaskRun,
        previous_start_time: Optional[datetime],
        report: TickReport
    ) -> None:
        try:
            result = await self.sampler.sample(
                run.process_id,
                previous_start_time=previous_start_time,
                include_children=self.include_children,
                timeout=self.sampler_timeout
            )
            sample = result.to_metric_sample(
                run_id=run.run_id,
                hostname=self.hostname,
                pid=run.process_id,
                timestamp=self.storage.clock(),
                reporter_version=self.version
            )
            await self.storage.insert_metric_sample(sample)
            report.samples_written += 1

            if not result.ok:
                report.sample_errors += 1
                logger.debug(
                    "metrics_collection_error",
                    run_id=run.run_id,
                    pid=run.process_id,
                    error_type=result.error_type.value,
                    error=result.error.message
                )
        except Exception as e:
            logger.warning(
                "metrics_collection_failed",
                run_id=run.run_id,
                task_name=run.task_name,
                pid=run.process_id,
                error=str(e)
            )
            report.errors.append(f"{run.run_id}: {e}")

    async def _wait(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; True if a local stop was requested."""
        if self._stop_event.is_set():
            return True
        if delay <= 0:
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _release(self) -> None:
        try:
            await self.heartbeat.release(self.hostname, self.pid)
        except Exception as e:
            logger.warning("reporter_release_failed", hostname=self.hostname, error=str(e))


class ReporterSupervisor:
    """
    Keeps an in-process reporter running for this host on demand.

    ``ensure_running`` is what task lifecycle calls when a run starts; it
    is best-effort and never raises.
    """

    def __init__(
        self,
        storage: RegistryStorage,
        config: Optional[ReporterConfig] = None,
        hostname: Optional[str] = None,
        daemon_factory: Optional[Callable[..., ReporterDaemon]] = None
    ):
        self.storage = storage
        self.config = config or ReporterConfig()
        self.heartbeat = HeartbeatProtocol(storage, hostname=hostname)
        self.hostname = self.heartbeat.hostname
        self._daemon_factory = daemon_factory or ReporterDaemon.from_config
        self.daemon: Optional[ReporterDaemon] = None

    async def ensure_running(self, check_timeout: float = 2.0) -> bool:
        """
        Start a reporter unless a live one already serves this host.

        Returns:
            True if a reporter is (now) running for the host
        """
        if not self.config.auto_start:
            return False

        try:
            if self.daemon is not None and self.daemon.is_running:
                return True

            liveness = await asyncio.wait_for(
                self.heartbeat.is_alive(
                    self.hostname,
                    max_heartbeat_age=self.config.max_heartbeat_age
                ),
                timeout=check_timeout
            )
            if liveness.alive:
                return True
            if liveness.status == LivenessStatus.DB_ERROR:
                logger.warning("reporter_autostart_skipped", reason=liveness.error)
                return False

            self.daemon = self._daemon_factory(
                self.storage,
                self.config,
                heartbeat=self.heartbeat,
                hostname=self.hostname
            )
            self.daemon.start()
            logger.info("reporter_autostarted", hostname=self.hostname, previous=liveness.status.value)
            return True

        except Exception as e:
            logger.warning("reporter_autostart_failed", hostname=self.hostname, error=str(e))
            return False

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the in-process reporter, waiting up to ``reporter.stop_timeout`` by default."""
        if self.daemon is not None:
            await self.daemon.stop(timeout=self.config.stop_timeout if timeout is None else timeout)
            self.daemon = None


def _terminate(process_factory: Callable[[int], Any], pid: int, grace: float) -> None:
    """Terminate ``pid``, killing it if it outlives ``grace`` seconds. Blocking."""
    try:
        process = process_factory(pid)
        process.terminate()
        try:
            process.wait(timeout=grace)
        except psutil.TimeoutExpired:
            process.kill()
    except psutil.NoSuchProcess:
        pass


async def stop_reporter(
    storage: RegistryStorage,
    hostname: str,
    timeout: float = 30.0,
    poll_interval: float = 1.0,
    process_factory: Callable[[int], Any] = psutil.Process,
    local_host: Optional[str] = None,
    kill_grace: float = 5.0
) -> bool:
    """
    Stop the reporter of ``hostname``.

    Sets the shutdown flag and waits for the reporter to remove its row. If
    it does not within ``timeout`` and it runs on this machine, the process
    is terminated (killed after ``kill_grace`` seconds) and the row deleted.

    Returns:
        True if no reporter holds the host afterwards
    """
    row = await storage.get_reporter_row(hostname)
    if row is None:
        return True

    await storage.request_reporter_shutdown(hostname)

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        current = await storage.get_reporter_row(hostname)
        if current is None or current.process_id != row.process_id:
            logger.info("reporter_stopped_gracefully", hostname=hostname, pid=row.process_id)
            return True
        await asyncio.sleep(poll_interval)

    if hostname != (local_host or local_hostname()):
        logger.warning(
            "reporter_stop_timeout",
            hostname=hostname,
            pid=row.process_id,
            timeout=timeout
        )
        return False

    logger.warning("reporter_force_kill", hostname=hostname, pid=row.process_id)
    await asyncio.to_thread(_terminate, process_factory, row.process_id, kill_grace)
    await storage.delete_reporter_row(hostname, row.process_id)
    return True


__all__ = [
    'DaemonState',
    'TickReport',
    'ReporterDaemon',
    'ReporterSupervisor',
    'stop_reporter',
]
