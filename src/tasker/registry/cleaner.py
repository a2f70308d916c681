"""
Retention cleaner for process metrics.

Schedules retention when runs finish and deletes the metrics of runs that
finished longer ago than the retention window, leaving an audit record of
what was deleted.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..utils.logging import get_logger
from .storage import RegistryStorage, RetentionCandidate

logger = get_logger(__name__)

DEFAULT_RETENTION_DAYS = 30


@dataclass
class RetentionResult:
    """Outcome of retention for one run."""
    run_id: str
    task_name: str
    metrics_deleted_count: int
    completed_at: datetime
    deleted_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task_name": self.task_name,
            "metrics_deleted_count": self.metrics_deleted_count,
            "completed_at": self.completed_at.isoformat(),
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "error": self.error,
        }


@dataclass
class CleanupStats:
    """Statistics from one cleanup pass."""
    started_at: datetime
    completed_at: datetime
    retention_days: int
    dry_run: bool = False

    results: List[RetentionResult] = None

    def __post_init__(self):
        if self.results is None:
            self.results = []

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def runs_processed(self) -> int:
        return len(self.results)

    @property
    def runs_failed(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)

    @property
    def metrics_deleted(self) -> int:
        if self.dry_run:
            return 0
        return sum(r.metrics_deleted_count for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "retention_days": self.retention_days,
            "dry_run": self.dry_run,
            "runs_processed": self.runs_processed,
            "runs_failed": self.runs_failed,
            "metrics_deleted": self.metrics_deleted,
            "results": [r.to_dict() for r in self.results],
        }


class RetentionCleaner:
    """Deletes old process metrics, one transaction per run."""

    def __init__(
        self,
        storage: RegistryStorage,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize cleaner.

        Args:
            storage: Registry storage instance
            retention_days: Default retention window in days
            clock: Source of "now" (defaults to the storage clock)
        """
        self.storage = storage
        self.retention_days = retention_days
        self.clock = clock or storage.clock

        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def schedule_retention(
        self,
        run_id: str,
        completed_at: datetime,
        retention_days: Optional[int] = None
    ) -> bool:
        """
        Schedule metric deletion for a finished run.

        Only the first call for a run has an effect.
        """
        days = self.retention_days if retention_days is None else retention_days
        scheduled = await self.storage.schedule_retention(run_id, completed_at, days)
        if scheduled:
            logger.debug("metrics_retention_scheduled", run_id=run_id, retention_days=days)
        return scheduled

    async def cleanup_old_metrics(
        self,
        retention_days: Optional[int] = None,
        dry_run: bool = False
    ) -> CleanupStats:
        """
        Delete metrics of runs that finished more than ``retention_days`` ago.

        Args:
            retention_days: Retention window (defaults to the cleaner's)
            dry_run: Only report the candidates and their sample counts

        Returns:
            Per-run results; a failed run has a zero count, no ``deleted_at``
            and an error message, and stays eligible for the next pass
        """
        days = self.retention_days if retention_days is None else retention_days
        now = self.clock()
        stats = CleanupStats(
            started_at=now,
            completed_at=now,
            retention_days=days,
            dry_run=dry_run
        )

        candidates = await self.storage.find_retention_eligible_runs(days, now=now)

        if dry_run:
            stats.results = [
                RetentionResult(
                    run_id=c.run_id,
                    task_name=c.task_name,
                    metrics_deleted_count=c.metric_count,
                    completed_at=c.completed_at,
                )
                for c in candidates
            ]
            stats.completed_at = self.clock()
            logger.info("metrics_cleanup_dry_run", runs=len(candidates), retention_days=days)
            return stats

        for candidate in candidates:
            stats.results.append(await self._delete_run(candidate, days))

        stats.completed_at = self.clock()
        logger.info(
            "metrics_cleanup_complete",
            runs=stats.runs_processed,
            failed=stats.runs_failed,
            metrics_deleted=stats.metrics_deleted,
            retention_days=days
        )
        return stats

    async def _delete_run(self, candidate: RetentionCandidate, retention_days: int) -> RetentionResult:
        try:
            async with self.storage.db.transaction() as tx:
                deleted = await self.storage.delete_metrics_for_run(candidate.run_id, tx=tx)
                deleted_at = self.clock()
                await self.storage.mark_retention_complete(
                    candidate.run_id,
                    deleted_at,
                    deleted,
                    candidate.completed_at,
                    retention_days,
                    tx=tx
                )
        except Exception as e:
            logger.error("metrics_cleanup_run_failed", run_id=candidate.run_id, error=str(e))
            return RetentionResult(
                run_id=candidate.run_id,
                task_name=candidate.task_name,
                metrics_deleted_count=0,
                completed_at=candidate.completed_at,
                error=str(e)
            )

        return RetentionResult(
            run_id=candidate.run_id,
            task_name=candidate.task_name,
            metrics_deleted_count=deleted,
            completed_at=candidate.completed_at,
            deleted_at=deleted_at
        )

    async def start_periodic_cleanup(self, interval_hours: float = 24) -> None:
        """Run ``cleanup_old_metrics`` every ``interval_hours``."""
        if self._cleanup_task and not self._cleanup_task.done():
            logger.warning("Cleanup task already running")
            return

        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(interval_hours * 3600)
        )
        logger.info(f"Started periodic metrics cleanup with {interval_hours}h interval")

    async def stop_periodic_cleanup(self) -> None:
        """Stop periodic cleanup task."""
        if not self._cleanup_task:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Cleanup task didn't stop gracefully, cancelling")
            self._cleanup_task.cancel()

        self._cleanup_task = None
        logger.info("Stopped periodic metrics cleanup")

    async def _cleanup_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                stats = await self.cleanup_old_metrics()
                if stats.runs_failed:
                    logger.warning(f"Periodic cleanup finished with {stats.runs_failed} failed runs")
            except Exception as e:
                logger.error(f"Error in cleanup loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue


__all__ = [
    'DEFAULT_RETENTION_DAYS',
    'RetentionResult',
    'CleanupStats',
    'RetentionCleaner',
]
