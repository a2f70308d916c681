"""
Registry Storage for the pipeline tracker.

Holds the data model (task runs, metric samples, reporter rows, retention
records) and every read/write the reporter, heartbeat protocol, retention
engine and task lifecycle need.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..storage.database import Database, Row, Transaction
from ..storage.schema import create_schema
from ..utils.errors import DatabaseError
from ..utils.logging import get_logger

logger = get_logger(__name__)

Executor = Union[Database, Transaction]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Status of a task run."""
    NOT_STARTED = "NOT_STARTED"
    STARTED = "STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = (TaskStatus.STARTED, TaskStatus.RUNNING)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class TaskRun:
    """One execution of a registered task."""
    run_id: str
    task_id: int
    status: TaskStatus
    hostname: Optional[str] = None
    process_id: Optional[int] = None
    parent_pid: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    total_subtasks: Optional[int] = None
    current_subtask: Optional[int] = None
    overall_percent_complete: Optional[float] = None
    overall_progress_message: Optional[str] = None
    error_message: Optional[str] = None
    version: Optional[str] = None
    git_commit: Optional[str] = None
    user_name: Optional[str] = None

    # Joined from tasks/stages when read back
    task_name: Optional[str] = None
    stage_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.end_time is not None


@dataclass
class ActiveTaskRun:
    """A run the reporter should sample."""
    run_id: str
    process_id: int
    start_time: Optional[datetime]
    task_name: str = "Unknown"


@dataclass
class ProcessMetricSample:
    """One sampling event for one task run. Append-only."""
    run_id: str
    timestamp: datetime
    process_id: int
    hostname: str
    is_alive: bool
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
    collection_error: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    collection_duration_ms: Optional[float] = None
    reporter_version: Optional[str] = None


METRIC_COLUMNS = tuple(f.name for f in fields(ProcessMetricSample))
_METRIC_TIMESTAMPS = ("timestamp", "process_start_time")
_METRIC_BOOLEANS = ("is_alive", "collection_error")


@dataclass
class ReporterStatus:
    """The reporter row for one hostname."""
    hostname: str
    process_id: int
    started_at: datetime
    last_heartbeat: datetime
    version: Optional[str] = None
    shutdown_requested: bool = False

    def heartbeat_age(self, now: datetime) -> float:
        """Seconds since the last heartbeat."""
        return (now - self.last_heartbeat).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "process_id": self.process_id,
            "started_at": self.started_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "version": self.version,
            "shutdown_requested": self.shutdown_requested,
        }


@dataclass
class MetricsRetentionRecord:
    """Retention ledger entry for one run."""
    run_id: str
    task_completed_at: datetime
    metrics_delete_after: datetime
    metrics_deleted: bool = False
    deleted_at: Optional[datetime] = None
    metrics_count: int = 0


@dataclass
class RetentionCandidate:
    """A terminal run whose metrics are due for deletion."""
    run_id: str
    task_name: str
    completed_at: datetime
    metric_count: int


@dataclass
class SubtaskProgress:
    """Progress of one subtask within a run."""
    run_id: str
    subtask_number: int
    subtask_name: Optional[str] = None
    status: TaskStatus = TaskStatus.STARTED
    percent_complete: float = 0.0
    items_total: Optional[int] = None
    items_complete: int = 0
    progress_message: Optional[str] = None
    error_message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class RegistryStorage:
    """Storage backend for stages, runs, metrics, reporters and retention."""

    def __init__(self, db: Database, clock: Clock = utc_now):
        """
        Initialize registry storage.

        Args:
            db: Connected or unconnected database wrapper
            clock: Source of "now" for timestamps written by this store
        """
        self.db = db
        self.dialect = db.dialect
        self.clock = clock
        self._initialized = False

    async def initialize(self) -> None:
        """Connect and create tables."""
        await self.db.connect()
        await create_schema(self.db)
        self._initialized = True
        logger.info("registry_storage_initialized", dialect=self.dialect.name)

    async def close(self) -> None:
        """Close the database connection."""
        await self.db.close()
        self._initialized = False

    def _table(self, name: str) -> str:
        return self.dialect.table(name)

    def _executor(self, tx: Optional[Transaction]) -> Executor:
        if not self._initialized:
            raise DatabaseError("Registry storage not initialized")
        return tx if tx is not None else self.db

    def _ts(self, value: Optional[datetime]) -> Any:
        return self.dialect.encode_timestamp(value)

    def _dt(self, value: Any) -> Optional[datetime]:
        return self.dialect.decode_timestamp(value)

    # Active run discovery (reporter)

    async def list_active_task_runs(self, hostname: str) -> List[ActiveTaskRun]:
        """Runs on ``hostname`` in STARTED/RUNNING state with a known PID."""
        db = self._executor(None)
        rows = await db.fetchall(
            f"""
            SELECT tr.run_id, tr.process_id, tr.start_time,
                   COALESCE(t.task_name, 'Unknown') AS task_name
            FROM {self._table('task_runs')} tr
            LEFT JOIN {self._table('tasks')} t ON tr.task_id = t.task_id
            WHERE tr.hostname = ?
              AND tr.status IN (?, ?)
              AND tr.process_id IS NOT NULL
            ORDER BY tr.start_time
            """,
            (hostname, TaskStatus.STARTED.value, TaskStatus.RUNNING.value)
        )
        return [
            ActiveTaskRun(
                run_id=row["run_id"],
                process_id=int(row["process_id"]),
                start_time=self._dt(row["start_time"]),
                task_name=row["task_name"],
            )
            for row in rows
        ]

    async def latest_prior_start_times(self, run_ids: Iterable[str]) -> Dict[str, datetime]:
        """
        Process start time of the newest sample for each run, in one query.

        Runs with no samples, or whose newest sample has no start time, are
        absent from the result.
        """
        ids = sorted(set(run_ids))
        if not ids:
            return {}
        db = self._executor(None)
        rows = await db.fetchall(self.dialect.latest_start_times_sql(len(ids)), ids)
        return {
            row["run_id"]: self._dt(row["process_start_time"])
            for row in rows
            if row["process_start_time"] is not None
        }

    # Metric samples

    async def insert_metric_sample(
        self,
        sample: ProcessMetricSample,
        tx: Optional[Transaction] = None
    ) -> None:
        """Append one sample row."""
        db = self._executor(tx)
        values = []
        for column in METRIC_COLUMNS:
            value = getattr(sample, column)
            if column in _METRIC_TIMESTAMPS:
                value = self._ts(value)
            elif column in _METRIC_BOOLEANS and value is not None:
                value = bool(value)
            values.append(value)
        await db.execute(
            f"INSERT INTO {self._table('process_metrics')} ({', '.join(METRIC_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in METRIC_COLUMNS)})",
            values
        )

    async def get_metric_samples(self, run_id: str) -> List[ProcessMetricSample]:
        """All samples for a run, oldest first."""
        db = self._executor(None)
        rows = await db.fetchall(
            f"SELECT {', '.join(METRIC_COLUMNS)} FROM {self._table('process_metrics')} "
            f"WHERE run_id = ? ORDER BY timestamp",
            (run_id,)
        )
        return [self._row_to_sample(row) for row in rows]

    async def count_metric_samples(self, run_id: str) -> int:
        db = self._executor(None)
        row = await db.fetchone(
            f"SELECT COUNT(*) AS n FROM {self._table('process_metrics')} WHERE run_id = ?",
            (run_id,)
        )
        return int(row["n"]) if row else 0

    def _row_to_sample(self, row: Row) -> ProcessMetricSample:
        data = dict(row)
        for column in _METRIC_TIMESTAMPS:
            data[column] = self._dt(data[column])
        for column in _METRIC_BOOLEANS:
            if data[column] is not None:
                data[column] = bool(data[column])
        return ProcessMetricSample(**data)

    async def delete_metrics_for_run(
        self,
        run_id: str,
        tx: Optional[Transaction] = None
    ) -> int:
        """Delete every sample of a run. Returns the number removed."""
        db = self._executor(tx)
        return await db.execute(
            f"DELETE FROM {self._table('process_metrics')} WHERE run_id = ?",
            (run_id,)
        )

    # Reporter rows

    def _row_to_reporter(self, row: Row) -> ReporterStatus:
        return ReporterStatus(
            hostname=row["hostname"],
            process_id=int(row["process_id"]),
            started_at=self._dt(row["started_at"]),
            last_heartbeat=self._dt(row["last_heartbeat"]),
            version=row["version"],
            shutdown_requested=bool(row["shutdown_requested"]),
        )

    async def get_reporter_row(
        self,
        hostname: str,
        tx: Optional[Transaction] = None
    ) -> Optional[ReporterStatus]:
        db = self._executor(tx)
        row = await db.fetchone(
            f"""
            SELECT hostname, process_id, started_at, last_heartbeat, version, shutdown_requested
            FROM {self._table('reporter_status')}
            WHERE hostname = ?
            """,
            (hostname,)
        )
        return self._row_to_reporter(row) if row else None

    async def list_reporter_rows(self) -> List[ReporterStatus]:
        db = self._executor(None)
        rows = await db.fetchall(
            f"""
            SELECT hostname, process_id, started_at, last_heartbeat, version, shutdown_requested
            FROM {self._table('reporter_status')}
            ORDER BY hostname
            """
        )
        return [self._row_to_reporter(row) for row in rows]

    async def replace_reporter_row(
        self,
        hostname: str,
        pid: int,
        version: Optional[str]
    ) -> ReporterStatus:
        """
        Atomically replace whatever row ``hostname`` has with a fresh one for ``pid``.

        Delete and insert run in one transaction, so a failure leaves the
        previous row untouched.
        """
        self._executor(None)
        now = self.clock()
        async with self.db.transaction() as tx:
            await tx.execute(
                f"DELETE FROM {self._table('reporter_status')} WHERE hostname = ?",
                (hostname,)
            )
            await tx.execute(
                f"""
                INSERT INTO {self._table('reporter_status')}
                    (hostname, process_id, started_at, last_heartbeat, version, shutdown_requested)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (hostname, pid, self._ts(now), self._ts(now), version, False)
            )
        return ReporterStatus(
            hostname=hostname,
            process_id=pid,
            started_at=now,
            last_heartbeat=now,
            version=version,
            shutdown_requested=False,
        )

    async def upsert_reporter_heartbeat(
        self,
        hostname: str,
        pid: int,
        version: Optional[str]
    ) -> bool:
        """
        Refresh the heartbeat of the row owned by (hostname, pid).

        Never inserts. Returns False when no row matches, which means the
        reporter no longer owns the host.
        """
        db = self._executor(None)
        updated = await db.execute(
            f"""
            UPDATE {self._table('reporter_status')}
            SET last_heartbeat = ?, version = ?
            WHERE hostname = ? AND process_id = ?
            """,
            (self._ts(self.clock()), version, hostname, pid)
        )
        return updated > 0

    async def request_reporter_shutdown(self, hostname: str) -> bool:
        """Flag the host's reporter for shutdown. Returns False if no row exists."""
        db = self._executor(None)
        updated = await db.execute(
            f"UPDATE {self._table('reporter_status')} SET shutdown_requested = ? WHERE hostname = ?",
            (True, hostname)
        )
        return updated > 0

    async def delete_reporter_row(self, hostname: str, pid: Optional[int] = None) -> int:
        """Delete the host's reporter row, optionally only if ``pid`` still owns it."""
        db = self._executor(None)
        if pid is None:
            return await db.execute(
                f"DELETE FROM {self._table('reporter_status')} WHERE hostname = ?",
                (hostname,)
            )
        return await db.execute(
            f"DELETE FROM {self._table('reporter_status')} WHERE hostname = ? AND process_id = ?",
            (hostname, pid)
        )

    # Retention ledger

    async def schedule_retention(
        self,
        run_id: str,
        completed_at: datetime,
        retention_days: int
    ) -> bool:
        """
        Record when a run's metrics become deletable.

        Insert-or-ignore: returns False if the run was already scheduled,
        in which case the existing record is left as it was.
        """
        db = self._executor(None)
        sql = self.dialect.insert_ignore(
            "process_metrics_retention",
            ("run_id", "task_completed_at", "metrics_delete_after", "metrics_deleted", "metrics_count"),
            ("run_id",)
        )
        inserted = await db.execute(
            sql,
            (
                run_id,
                self._ts(completed_at),
                self._ts(completed_at + timedelta(days=retention_days)),
                False,
                0,
            )
        )
        return inserted > 0

    async def get_retention_record(self, run_id: str) -> Optional[MetricsRetentionRecord]:
        db = self._executor(None)
        row = await db.fetchone(
            f"""
            SELECT run_id, task_completed_at, metrics_delete_after, metrics_deleted,
                   deleted_at, metrics_count
            FROM {self._table('process_metrics_retention')}
            WHERE run_id = ?
            """,
            (run_id,)
        )
        if not row:
            return None
        return MetricsRetentionRecord(
            run_id=row["run_id"],
            task_completed_at=self._dt(row["task_completed_at"]),
            metrics_delete_after=self._dt(row["metrics_delete_after"]),
            metrics_deleted=bool(row["metrics_deleted"]),
            deleted_at=self._dt(row["deleted_at"]),
            metrics_count=int(row["metrics_count"] or 0),
        )

    async def find_retention_eligible_runs(
        self,
        retention_days: int,
        now: Optional[datetime] = None
    ) -> List[RetentionCandidate]:
        """
        Terminal runs that ended more than ``retention_days`` ago and have not
        been marked deleted, with their sample counts (zero included).
        """
        db = self._executor(None)
        cutoff = (now or self.clock()) - timedelta(days=retention_days)
        rows = await db.fetchall(
            f"""
            SELECT tr.run_id,
                   COALESCE(t.task_name, 'Unknown') AS task_name,
                   tr.end_time AS completed_at,
                   COUNT(pm.metric_id) AS metric_count
            FROM {self._table('task_runs')} tr
            LEFT JOIN {self._table('process_metrics')} pm ON pm.run_id = tr.run_id
            LEFT JOIN {self._table('tasks')} t ON tr.task_id = t.task_id
            LEFT JOIN {self._table('process_metrics_retention')} r ON r.run_id = tr.run_id
            WHERE tr.status IN (?, ?, ?)
              AND tr.end_time IS NOT NULL
              AND tr.end_time < ?
              AND (r.metrics_deleted IS NULL OR r.metrics_deleted = ?)
            GROUP BY tr.run_id, t.task_name, tr.end_time
            ORDER BY tr.end_time
            """,
            (
                *(status.value for status in TERMINAL_STATUSES),
                self._ts(cutoff),
                False,
            )
        )
        return [
            RetentionCandidate(
                run_id=row["run_id"],
                task_name=row["task_name"],
                completed_at=self._dt(row["completed_at"]),
                metric_count=int(row["metric_count"]),
            )
            for row in rows
        ]

    async def mark_retention_complete(
        self,
        run_id: str,
        deleted_at: datetime,
        count: int,
        completed_at: datetime,
        retention_days: int,
        tx: Optional[Transaction] = None
    ) -> None:
        """
        Flag a run's metrics as deleted.

        Creates the ledger entry if the run was never scheduled; an existing
        entry keeps its completion and delete-after times.
        """
        db = self._executor(tx)
        sql = self.dialect.upsert(
            "process_metrics_retention",
            (
                "run_id", "task_completed_at", "metrics_delete_after",
                "metrics_deleted", "deleted_at", "metrics_count",
            ),
            ("run_id",),
            ("metrics_deleted", "deleted_at", "metrics_count"),
        )
        await db.execute(
            sql,
            (
                run_id,
                self._ts(completed_at),
                self._ts(completed_at + timedelta(days=retention_days)),
                True,
                self._ts(deleted_at),
                count,
            )
        )

    # Stages, tasks and runs (task lifecycle)

    async def register_stage(
        self,
        stage_name: str,
        stage_order: Optional[int] = None,
        description: Optional[str] = None
    ) -> int:
        """Create the stage if needed and return its id."""
        db = self._executor(None)
        await db.execute(
            self.dialect.insert_ignore(
                "stages", ("stage_name", "stage_order", "description", "created_at"), ("stage_name",)
            ),
            (stage_name, stage_order, description, self._ts(self.clock()))
        )
        row = await db.fetchone(
            f"SELECT stage_id FROM {self._table('stages')} WHERE stage_name = ?",
            (stage_name,)
        )
        return int(row["stage_id"])

    async def register_task(
        self,
        stage_id: int,
        task_name: str,
        task_order: Optional[int] = None,
        description: Optional[str] = None,
        script_path: Optional[str] = None
    ) -> int:
        """Create the task under ``stage_id`` if needed and return its id."""
        db = self._executor(None)
        await db.execute(
            self.dialect.insert_ignore(
                "tasks",
                ("stage_id", "task_name", "task_order", "description", "script_path", "created_at"),
                ("stage_id", "task_name"),
            ),
            (stage_id, task_name, task_order, description, script_path, self._ts(self.clock()))
        )
        row = await db.fetchone(
            f"SELECT task_id FROM {self._table('tasks')} WHERE stage_id = ? AND task_name = ?",
            (stage_id, task_name)
        )
        return int(row["task_id"])

    async def find_task_id(self, stage_name: str, task_name: str) -> Optional[int]:
        db = self._executor(None)
        row = await db.fetchone(
            f"""
            SELECT t.task_id FROM {self._table('tasks')} t
            JOIN {self._table('stages')} s ON s.stage_id = t.stage_id
            WHERE s.stage_name = ? AND t.task_name = ?
            """,
            (stage_name, task_name)
        )
        return int(row["task_id"]) if row else None

    async def create_task_run(self, run: TaskRun) -> None:
        db = self._executor(None)
        await db.execute(
            f"""
            INSERT INTO {self._table('task_runs')}
                (run_id, task_id, hostname, process_id, parent_pid, start_time, end_time,
                 last_update, status, total_subtasks, current_subtask,
                 overall_percent_complete, overall_progress_message, error_message,
                 version, git_commit, user_name)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id, run.task_id, run.hostname, run.process_id, run.parent_pid,
                self._ts(run.start_time), self._ts(run.end_time),
                self._ts(run.last_update or self.clock()), TaskStatus(run.status).value,
                run.total_subtasks, run.current_subtask, run.overall_percent_complete,
                run.overall_progress_message, run.error_message,
                run.version, run.git_commit, run.user_name,
            )
        )

    _RUN_UPDATABLE = (
        "status", "end_time", "current_subtask", "total_subtasks",
        "overall_percent_complete", "overall_progress_message", "error_message",
    )

    async def update_task_run(self, run_id: str, **changes: Any) -> bool:
        """Update selected fields of a run. Returns False for an unknown run."""
        unknown = set(changes) - set(self._RUN_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update task run fields: {sorted(unknown)}")

        db = self._executor(None)
        changes["last_update"] = self.clock()
        columns, values = [], []
        for column, value in changes.items():
            if isinstance(value, datetime):
                value = self._ts(value)
            elif isinstance(value, TaskStatus):
                value = value.value
            columns.append(f"{column} = ?")
            values.append(value)
        values.append(run_id)

        updated = await db.execute(
            f"UPDATE {self._table('task_runs')} SET {', '.join(columns)} WHERE run_id = ?",
            values
        )
        return updated > 0

    async def get_task_run(self, run_id: str) -> Optional[TaskRun]:
        db = self._executor(None)
        row = await db.fetchone(
            f"""
            SELECT tr.*, t.task_name, s.stage_name
            FROM {self._table('task_runs')} tr
            LEFT JOIN {self._table('tasks')} t ON tr.task_id = t.task_id
            LEFT JOIN {self._table('stages')} s ON t.stage_id = s.stage_id
            WHERE tr.run_id = ?
            """,
            (run_id,)
        )
        if not row:
            return None
        data = {f.name: row.get(f.name) for f in fields(TaskRun)}
        for column in ("start_time", "end_time", "last_update"):
            data[column] = self._dt(data[column])
        data["status"] = TaskStatus(data["status"])
        return TaskRun(**data)

    async def upsert_subtask(self, progress: SubtaskProgress) -> None:
        """Insert or overwrite the progress row for (run_id, subtask_number)."""
        db = self._executor(None)
        sql = self.dialect.upsert(
            "subtask_progress",
            (
                "run_id", "subtask_number", "subtask_name", "status", "percent_complete",
                "items_total", "items_complete", "progress_message", "error_message",
                "start_time", "end_time", "last_update",
            ),
            ("run_id", "subtask_number"),
        )
        await db.execute(
            sql,
            (
                progress.run_id, progress.subtask_number, progress.subtask_name,
                TaskStatus(progress.status).value, progress.percent_complete,
                progress.items_total, progress.items_complete, progress.progress_message,
                progress.error_message,
                self._ts(progress.start_time), self._ts(progress.end_time),
                self._ts(self.clock()),
            )
        )

    async def increment_subtask_items(
        self,
        run_id: str,
        subtask_number: int,
        increment: int = 1
    ) -> Optional[int]:
        """
        Add ``increment`` to a subtask's completed items in one statement.

        The first progress on a STARTED subtask moves it to RUNNING. Safe for
        any number of concurrent writers, including other processes.

        Returns:
            The new item count, or None if the subtask does not exist
        """
        table = self._table('subtask_progress')
        async with self._executor(None).transaction() as tx:
            updated = await tx.execute(
                f"""
                UPDATE {table}
                SET items_complete = COALESCE(items_complete, 0) + ?,
                    last_update = ?,
                    status = CASE
                        WHEN status = ? AND COALESCE(items_complete, 0) = 0 THEN ?
                        ELSE status
                    END
                WHERE run_id = ? AND subtask_number = ?
                """,
                (
                    increment, self._ts(self.clock()),
                    TaskStatus.STARTED.value, TaskStatus.RUNNING.value,
                    run_id, subtask_number,
                )
            )
            if not updated:
                return None
            row = await tx.fetchone(
                f"SELECT items_complete FROM {table} WHERE run_id = ? AND subtask_number = ?",
                (run_id, subtask_number)
            )
        return int(row["items_complete"])

    async def get_subtask(self, run_id: str, subtask_number: int) -> Optional[SubtaskProgress]:
        db = self._executor(None)
        row = await db.fetchone(
            f"""
            SELECT run_id, subtask_number, subtask_name, status, percent_complete,
                   items_total, items_complete, progress_message, error_message,
                   start_time, end_time
            FROM {self._table('subtask_progress')}
            WHERE run_id = ? AND subtask_number = ?
            """,
            (run_id, subtask_number)
        )
        if not row:
            return None
        return SubtaskProgress(
            run_id=row["run_id"],
            subtask_number=int(row["subtask_number"]),
            subtask_name=row["subtask_name"],
            status=TaskStatus(row["status"]),
            percent_complete=float(row["percent_complete"] or 0.0),
            items_total=row["items_total"],
            items_complete=int(row["items_complete"] or 0),
            progress_message=row["progress_message"],
            error_message=row["error_message"],
            start_time=self._dt(row["start_time"]),
            end_time=self._dt(row["end_time"]),
        )


__all__ = [
    'utc_now',
    'TaskStatus',
    'ACTIVE_STATUSES',
    'TERMINAL_STATUSES',
    'TaskRun',
    'ActiveTaskRun',
    'ProcessMetricSample',
    'METRIC_COLUMNS',
    'ReporterStatus',
    'MetricsRetentionRecord',
    'RetentionCandidate',
    'SubtaskProgress',
    'RegistryStorage',
]
