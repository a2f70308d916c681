"""Schema definition for the tasker registry tables."""

from typing import List

from ..utils.logging import get_logger
from .database import Database
from .dialect import Dialect

logger = get_logger(__name__)

TASK_STATUSES = (
    "NOT_STARTED", "STARTED", "RUNNING", "COMPLETED", "FAILED", "SKIPPED", "CANCELLED",
)

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS {stages} (
        stage_id {serial},
        stage_name {text} NOT NULL UNIQUE,
        stage_order {integer},
        description {text},
        created_at {timestamp} DEFAULT {now}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {tasks} (
        task_id {serial},
        stage_id {integer} NOT NULL REFERENCES {stages}(stage_id),
        task_name {text} NOT NULL,
        task_order {integer},
        description {text},
        script_path {text},
        created_at {timestamp} DEFAULT {now},
        UNIQUE (stage_id, task_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {task_runs} (
        run_id {text} PRIMARY KEY,
        task_id {integer} NOT NULL REFERENCES {tasks}(task_id),
        hostname {text},
        process_id {integer},
        parent_pid {integer},
        start_time {timestamp},
        end_time {timestamp},
        last_update {timestamp} DEFAULT {now},
        status {text} NOT NULL DEFAULT 'NOT_STARTED' CHECK (status IN ({statuses})),
        total_subtasks {integer},
        current_subtask {integer},
        overall_percent_complete {real} DEFAULT 0,
        overall_progress_message {text},
        error_message {text},
        version {text},
        git_commit {text},
        user_name {text}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {subtask_progress} (
        progress_id {serial},
        run_id {text} NOT NULL REFERENCES {task_runs}(run_id) ON DELETE CASCADE,
        subtask_number {integer} NOT NULL,
        subtask_name {text},
        status {text} NOT NULL DEFAULT 'STARTED',
        percent_complete {real} DEFAULT 0,
        items_total {integer},
        items_complete {integer} DEFAULT 0,
        progress_message {text},
        error_message {text},
        start_time {timestamp},
        end_time {timestamp},
        last_update {timestamp} DEFAULT {now},
        UNIQUE (run_id, subtask_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {process_metrics} (
        metric_id {serial},
        run_id {text} NOT NULL REFERENCES {task_runs}(run_id) ON DELETE CASCADE,
        timestamp {timestamp} NOT NULL DEFAULT {now},
        process_id {integer},
        hostname {text},
        is_alive {boolean},
        process_start_time {timestamp},
        cpu_percent {real},
        cpu_cores {integer},
        memory_mb {real},
        memory_percent {real},
        memory_vms_mb {real},
        read_bytes {bigint},
        write_bytes {bigint},
        read_count {bigint},
        write_count {bigint},
        num_fds {integer},
        num_threads {integer},
        open_files {integer},
        ctx_switches_voluntary {bigint},
        ctx_switches_involuntary {bigint},
        child_count {integer},
        child_total_cpu_percent {real},
        child_total_memory_mb {real},
        collection_error {boolean} NOT NULL DEFAULT {false},
        error_type {text},
        error_message {text},
        collection_duration_ms {real},
        reporter_version {text},
        UNIQUE (run_id, timestamp)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {reporter_status} (
        reporter_id {serial},
        hostname {text} NOT NULL UNIQUE,
        process_id {integer} NOT NULL,
        started_at {timestamp} NOT NULL DEFAULT {now},
        last_heartbeat {timestamp} NOT NULL DEFAULT {now},
        version {text},
        shutdown_requested {boolean} NOT NULL DEFAULT {false}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {process_metrics_retention} (
        retention_id {serial},
        run_id {text} NOT NULL UNIQUE REFERENCES {task_runs}(run_id) ON DELETE CASCADE,
        task_completed_at {timestamp} NOT NULL,
        metrics_delete_after {timestamp} NOT NULL,
        metrics_deleted {boolean} NOT NULL DEFAULT {false},
        deleted_at {timestamp},
        metrics_count {integer} DEFAULT 0
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_task_runs_host_status ON {task_runs}(hostname, status)",
    "CREATE INDEX IF NOT EXISTS idx_task_runs_end_time ON {task_runs}(end_time)",
    "CREATE INDEX IF NOT EXISTS idx_process_metrics_run_ts ON {process_metrics}(run_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_retention_delete_after "
    "ON {process_metrics_retention}(metrics_delete_after)",
]

TABLE_NAMES = (
    "stages", "tasks", "task_runs", "subtask_progress",
    "process_metrics", "reporter_status", "process_metrics_retention",
)


def schema_statements(dialect: Dialect) -> List[str]:
    """Render the DDL for ``dialect``."""
    params = dict(dialect.types)
    params.update({name: dialect.table(name) for name in TABLE_NAMES})
    params["now"] = dialect.now()
    params["false"] = dialect.boolean(False)
    params["statuses"] = ", ".join(f"'{s}'" for s in TASK_STATUSES)

    statements = []
    if dialect.schema_name:
        statements.append(f"CREATE SCHEMA IF NOT EXISTS {dialect.schema_name}")
    for template in _TABLES + _INDEXES:
        statements.append(" ".join(template.format(**params).split()))
    return statements


async def create_schema(db: Database) -> None:
    """Create every table and index that does not exist yet."""
    async with db.transaction() as tx:
        for statement in schema_statements(db.dialect):
            await tx.execute(statement)
    logger.info("schema_ready", dialect=db.dialect.name, tables=len(TABLE_NAMES))


__all__ = [
    'TASK_STATUSES',
    'TABLE_NAMES',
    'schema_statements',
    'create_schema',
]
