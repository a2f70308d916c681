"""
Heartbeat and liveness protocol for reporter daemons.

One reporter owns a hostname at a time. Ownership is the (hostname, pid)
pair stored in the reporter row; every write a reporter makes is scoped by
that pair, so a superseded reporter cannot touch its successor's row.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil

from ..utils.logging import get_logger
from .storage import RegistryStorage, ReporterStatus

logger = get_logger(__name__)

DEFAULT_MAX_HEARTBEAT_AGE = 60.0


def local_hostname() -> str:
    """Name this machine records in task runs and reporter rows."""
    return os.uname().nodename


class LivenessStatus(str, Enum):
    """Observed state of a host's reporter."""
    NOT_REGISTERED = "NOT_REGISTERED"
    RUNNING = "RUNNING"
    STALE = "STALE"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    ZOMBIE = "ZOMBIE"
    DEAD = "DEAD"
    DB_ERROR = "DB_ERROR"


@dataclass
class LivenessResult:
    """Answer to "is this reporter alive?"."""
    alive: bool
    status: LivenessStatus
    heartbeat_age_seconds: Optional[float] = None
    same_machine: bool = False
    process_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alive": self.alive,
            "status": self.status.value,
            "heartbeat_age_seconds": self.heartbeat_age_seconds,
            "same_machine": self.same_machine,
            "process_id": self.process_id,
            "error": self.error,
        }


class HeartbeatProtocol:
    """Claims hosts, publishes heartbeats and answers liveness queries."""

    def __init__(
        self,
        storage: RegistryStorage,
        clock: Optional[Callable[[], datetime]] = None,
        hostname: Optional[str] = None,
        process_factory: Callable[[int], Any] = psutil.Process
    ):
        """
        Initialize heartbeat protocol.

        Args:
            storage: Registry storage
            clock: Source of "now" for heartbeat ages (defaults to the storage clock)
            hostname: Name of the machine this code runs on
            process_factory: psutil.Process-like factory for same-machine checks
        """
        self.storage = storage
        self.clock = clock or storage.clock
        self.hostname = hostname or local_hostname()
        self.process_factory = process_factory

    async def claim_host(
        self,
        hostname: str,
        pid: int,
        version: Optional[str] = None
    ) -> ReporterStatus:
        """
        Make ``pid`` the reporter of ``hostname``.

        A row held by another PID is replaced (delete and insert in one
        transaction). A row already held by ``pid`` just gets a heartbeat.
        """
        existing = await self.storage.get_reporter_row(hostname)

        if existing is not None and existing.process_id == pid:
            await self.storage.upsert_reporter_heartbeat(hostname, pid, version)
            refreshed = await self.storage.get_reporter_row(hostname)
            if refreshed is not None and refreshed.process_id == pid:
                return refreshed

        if existing is not None and existing.process_id != pid:
            logger.info(
                "reporter_row_replaced",
                hostname=hostname,
                previous_pid=existing.process_id,
                pid=pid
            )

        row = await self.storage.replace_reporter_row(hostname, pid, version)
        logger.info("reporter_registered", hostname=hostname, pid=pid, version=version)
        return row

    async def refresh_heartbeat(
        self,
        hostname: str,
        pid: int,
        version: Optional[str] = None
    ) -> bool:
        """
        Publish liveness for (hostname, pid).

        Returns False, and changes nothing, when ``pid`` no longer owns the row.
        """
        return await self.storage.upsert_reporter_heartbeat(hostname, pid, version)

    async def request_shutdown(self, hostname: str) -> bool:
        """Ask the host's reporter to exit at its next tick."""
        requested = await self.storage.request_reporter_shutdown(hostname)
        if requested:
            logger.info("reporter_shutdown_requested", hostname=hostname)
        return requested

    async def should_shutdown(self, hostname: str, pid: int) -> bool:
        """Whether the row owned by (hostname, pid) carries a shutdown request."""
        row = await self.storage.get_reporter_row(hostname)
        return row is not None and row.process_id == pid and row.shutdown_requested

    async def release(self, hostname: str, pid: int) -> bool:
        """Delete the host's row if ``pid`` still owns it."""
        return await self.storage.delete_reporter_row(hostname, pid) > 0

    async def is_alive(
        self,
        hostname: str,
        pid: Optional[int] = None,
        max_heartbeat_age: float = DEFAULT_MAX_HEARTBEAT_AGE
    ) -> LivenessResult:
        """
        Decide whether the reporter of ``hostname`` is alive.

        Args:
            hostname: Host whose reporter to check
            pid: Expected reporter PID; None accepts whichever PID owns the row
            max_heartbeat_age: Heartbeats older than this many seconds are stale

        Returns:
            Liveness result; database failures give ``DB_ERROR``, never an exception
        """
        same_machine = hostname == self.hostname

        try:
            row = await self.storage.get_reporter_row(hostname)
        except Exception as e:
            logger.warning("reporter_liveness_db_error", hostname=hostname, error=str(e))
            return LivenessResult(
                alive=False,
                status=LivenessStatus.DB_ERROR,
                same_machine=same_machine,
                process_id=pid,
                error=str(e)
            )

        return self._evaluate(row, pid, max_heartbeat_age, same_machine)

    def _evaluate(
        self,
        row: Optional[ReporterStatus],
        pid: Optional[int],
        max_heartbeat_age: float,
        same_machine: bool
    ) -> LivenessResult:
        if row is None or (pid is not None and row.process_id != pid):
            return LivenessResult(
                alive=False,
                status=LivenessStatus.NOT_REGISTERED,
                same_machine=same_machine,
                process_id=pid
            )

        age = row.heartbeat_age(self.clock())
        result = LivenessResult(
            alive=False,
            status=LivenessStatus.SHUTTING_DOWN,
            heartbeat_age_seconds=age,
            same_machine=same_machine,
            process_id=row.process_id
        )

        if row.shutdown_requested:
            return result

        if age > max_heartbeat_age:
            result.status = LivenessStatus.STALE
            return result

        if not same_machine:
            # No way to inspect another host's process table
            result.alive = True
            result.status = LivenessStatus.RUNNING
            return result

        result.status = self._inspect_process(row.process_id)
        result.alive = result.status == LivenessStatus.RUNNING
        return result

    def _inspect_process(self, pid: int) -> LivenessStatus:
        try:
            process = self.process_factory(pid)
            status = process.status()
        except psutil.ZombieProcess:
            return LivenessStatus.ZOMBIE
        except psutil.NoSuchProcess:
            return LivenessStatus.DEAD
        except psutil.AccessDenied:
            # Exists, owned by another user
            return LivenessStatus.RUNNING

        if status in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
            return LivenessStatus.ZOMBIE
        return LivenessStatus.RUNNING

    async def list_reporters(
        self,
        max_heartbeat_age: float = DEFAULT_MAX_HEARTBEAT_AGE
    ) -> List[Tuple[ReporterStatus, LivenessResult]]:
        """Every reporter row with its evaluated liveness."""
        rows = await self.storage.list_reporter_rows()
        return [
            (row, self._evaluate(row, None, max_heartbeat_age, row.hostname == self.hostname))
            for row in rows
        ]


__all__ = [
    'DEFAULT_MAX_HEARTBEAT_AGE',
    'local_hostname',
    'LivenessStatus',
    'LivenessResult',
    'HeartbeatProtocol',
]
