"""
Task lifecycle.

Registers stages and tasks, records run start/update/complete/fail and
subtask progress. Terminal transitions schedule metrics retention, and
starting a run makes sure a reporter serves this host.
"""

import getpass
import os
import uuid
from typing import Optional, Union

from ..utils.errors import TaskNotFoundError, ValidationError, error_context
from ..utils.logging import get_logger
from .cleaner import RetentionCleaner
from .heartbeat import local_hostname
from .reporter import ReporterSupervisor
from .storage import RegistryStorage, SubtaskProgress, TaskRun, TaskStatus

logger = get_logger(__name__)

RUN_UPDATE_STATUSES = (
    TaskStatus.RUNNING,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.SKIPPED,
    TaskStatus.CANCELLED,
)
SUBTASK_UPDATE_STATUSES = (
    TaskStatus.RUNNING,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.SKIPPED,
)
_SUBTASK_ENDED = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def _require_name(field: str, value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, value, "must be a non-empty string")
    return value.strip()


def _require_percent(field: str, value: Optional[float]) -> Optional[float]:
    if value is not None and not 0 <= value <= 100:
        raise ValidationError(field, value, "must be between 0 and 100")
    return value


def _current_user() -> Optional[str]:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


def _coerce_status(value: Union[str, TaskStatus], allowed: tuple) -> TaskStatus:
    try:
        status = TaskStatus(value)
    except ValueError:
        status = None
    if status not in allowed:
        raise ValidationError(
            "status", value, f"must be one of: {', '.join(s.value for s in allowed)}"
        )
    return status


class TaskTracker:
    """Records task runs for the scripts of a pipeline."""

    def __init__(
        self,
        storage: RegistryStorage,
        cleaner: Optional[RetentionCleaner] = None,
        supervisor: Optional[ReporterSupervisor] = None,
        hostname: Optional[str] = None
    ):
        """
        Initialize tracker.

        Args:
            storage: Registry storage
            cleaner: Retention cleaner used by the terminal-transition hook
            supervisor: Reporter supervisor asked to run when a task starts
            hostname: Host recorded on new runs
        """
        self.storage = storage
        self.cleaner = cleaner or RetentionCleaner(storage)
        self.supervisor = supervisor
        self.hostname = hostname or local_hostname()

    # Registration

    async def register_stage(
        self,
        stage_name: str,
        stage_order: Optional[int] = None,
        description: Optional[str] = None
    ) -> int:
        stage_name = _require_name("stage_name", stage_name)
        return await self.storage.register_stage(stage_name, stage_order, description)

    async def register_task(
        self,
        stage_name: str,
        task_name: str,
        task_order: Optional[int] = None,
        description: Optional[str] = None,
        script_path: Optional[str] = None,
        stage_order: Optional[int] = None
    ) -> int:
        """Register a task, creating its stage if needed. Returns the task id."""
        stage_id = await self.register_stage(stage_name, stage_order)
        task_name = _require_name("task_name", task_name)
        task_id = await self.storage.register_task(
            stage_id, task_name, task_order, description, script_path
        )
        logger.debug("task_registered", stage=stage_name, task=task_name, task_id=task_id)
        return task_id

    # Runs

    async def task_start(
        self,
        stage_name: str,
        task_name: str,
        total_subtasks: Optional[int] = None,
        message: Optional[str] = None,
        process_id: Optional[int] = None,
        version: Optional[str] = None,
        git_commit: Optional[str] = None
    ) -> str:
        """
        Start a run of a registered task.

        Args:
            stage_name: Stage the task belongs to
            task_name: Registered task name
            total_subtasks: Number of subtasks the run will report
            message: Initial progress message
            process_id: PID the reporter should sample (defaults to this process)
            version: Version of the code being run
            git_commit: Commit of the code being run

        Returns:
            The new run id
        """
        stage_name = _require_name("stage_name", stage_name)
        task_name = _require_name("task_name", task_name)
        if total_subtasks is not None and total_subtasks < 0:
            raise ValidationError("total_subtasks", total_subtasks, "must be non-negative")

        with error_context("lifecycle", "task_start", stage=stage_name, task=task_name):
            task_id = await self.storage.find_task_id(stage_name, task_name)
            if task_id is None:
                raise TaskNotFoundError(
                    f"Task '{task_name}' in stage '{stage_name}' is not registered"
                )

            run = TaskRun(
                run_id=str(uuid.uuid4()),
                task_id=task_id,
                status=TaskStatus.STARTED,
                hostname=self.hostname,
                process_id=process_id if process_id is not None else os.getpid(),
                parent_pid=os.getppid(),
                start_time=self.storage.clock(),
                total_subtasks=total_subtasks,
                current_subtask=0 if total_subtasks else None,
                overall_percent_complete=0.0,
                overall_progress_message=message,
                version=version,
                git_commit=git_commit,
                user_name=_current_user(),
            )
            await self.storage.create_task_run(run)

        logger.info("task_started", run_id=run.run_id, stage=stage_name, task=task_name)

        if self.supervisor is not None:
            await self.supervisor.ensure_running()

        return run.run_id

    async def task_update(
        self,
        run_id: str,
        status: Union[str, TaskStatus],
        current_subtask: Optional[int] = None,
        overall_percent: Optional[float] = None,
        message: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> TaskRun:
        """
        Update a run. COMPLETED, FAILED and CANCELLED end the run and
        schedule its metrics for retention.
        """
        status = _coerce_status(status, RUN_UPDATE_STATUSES)
        overall_percent = _require_percent("overall_percent", overall_percent)

        changes = {"status": status}
        if current_subtask is not None:
            changes["current_subtask"] = current_subtask
        if status == TaskStatus.COMPLETED and overall_percent is None:
            overall_percent = 100.0
        if overall_percent is not None:
            changes["overall_percent_complete"] = overall_percent
        if message is not None:
            changes["overall_progress_message"] = message
        if error_message is not None:
            changes["error_message"] = error_message

        end_time = None
        if status.is_terminal:
            end_time = self.storage.clock()
            changes["end_time"] = end_time

        with error_context("lifecycle", "task_update", run_id=run_id, status=status.value):
            if not await self.storage.update_task_run(run_id, **changes):
                raise TaskNotFoundError(f"Task run {run_id} not found")
            run = await self.storage.get_task_run(run_id)

        logger.info("task_updated", run_id=run_id, status=status.value)

        if end_time is not None:
            await self._on_terminal(run_id, end_time)

        return run

    async def task_complete(self, run_id: str, message: Optional[str] = None) -> TaskRun:
        return await self.task_update(run_id, TaskStatus.COMPLETED, overall_percent=100.0, message=message)

    async def task_fail(self, run_id: str, error_message: str) -> TaskRun:
        return await self.task_update(run_id, TaskStatus.FAILED, error_message=error_message)

    async def task_end(
        self,
        run_id: str,
        status: Union[str, TaskStatus],
        message: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> TaskRun:
        """Finish a run with any final status."""
        status = _coerce_status(status, RUN_UPDATE_STATUSES)
        if status == TaskStatus.COMPLETED:
            return await self.task_complete(run_id, message=message)
        if status == TaskStatus.FAILED:
            return await self.task_fail(run_id, error_message or "Task failed")
        return await self.task_update(run_id, status, message=message, error_message=error_message)

    async def get_task_run(self, run_id: str) -> Optional[TaskRun]:
        return await self.storage.get_task_run(run_id)

    async def _on_terminal(self, run_id: str, completed_at) -> None:
        try:
            await self.cleaner.schedule_retention(run_id, completed_at)
        except Exception as e:
            logger.warning("metrics_retention_schedule_failed", run_id=run_id, error=str(e))

    # Subtasks

    async def subtask_start(
        self,
        run_id: str,
        subtask_number: int,
        subtask_name: str,
        items_total: Optional[int] = None,
        message: Optional[str] = None
    ) -> SubtaskProgress:
        subtask_name = _require_name("subtask_name", subtask_name)
        if subtask_number < 1:
            raise ValidationError("subtask_number", subtask_number, "must be >= 1")

        if not await self.storage.update_task_run(
            run_id, status=TaskStatus.RUNNING, current_subtask=subtask_number
        ):
            raise TaskNotFoundError(f"Task run {run_id} not found")

        progress = SubtaskProgress(
            run_id=run_id,
            subtask_number=subtask_number,
            subtask_name=subtask_name,
            status=TaskStatus.RUNNING,
            items_total=items_total,
            progress_message=message,
            start_time=self.storage.clock(),
        )
        await self.storage.upsert_subtask(progress)

        logger.debug("subtask_started", run_id=run_id, subtask=subtask_number, name=subtask_name)
        return progress

    async def subtask_update(
        self,
        run_id: str,
        subtask_number: int,
        status: Union[str, TaskStatus],
        percent: Optional[float] = None,
        items_complete: Optional[int] = None,
        message: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> SubtaskProgress:
        status = _coerce_status(status, SUBTASK_UPDATE_STATUSES)
        percent = _require_percent("percent", percent)

        progress = await self.storage.get_subtask(run_id, subtask_number)
        if progress is None:
            raise TaskNotFoundError(f"Subtask {subtask_number} of run {run_id} not found")

        progress.status = status
        if percent is not None:
            progress.percent_complete = percent
        if items_complete is not None:
            progress.items_complete = items_complete
            if percent is None and progress.items_total:
                progress.percent_complete = min(100.0, items_complete / progress.items_total * 100)
        if message is not None:
            progress.progress_message = message
        if error_message is not None:
            progress.error_message = error_message
        if status in _SUBTASK_ENDED:
            progress.end_time = self.storage.clock()

        await self.storage.upsert_subtask(progress)
        return progress

    async def subtask_increment(self, run_id: str, subtask_number: int, increment: int = 1) -> int:
        """
        Count ``increment`` more finished items on a subtask.

        Unlike ``subtask_update``, which overwrites the count, this adds to it
        atomically, so parallel workers can report on the same subtask.
        Returns the new count.
        """
        if isinstance(increment, bool) or not isinstance(increment, int) or increment < 1:
            raise ValidationError("increment", increment, "must be a positive integer")

        count = await self.storage.increment_subtask_items(run_id, subtask_number, increment)
        if count is None:
            raise TaskNotFoundError(f"Subtask {subtask_number} of run {run_id} not found")
        return count

    async def subtask_complete(
        self,
        run_id: str,
        subtask_number: int,
        message: Optional[str] = None
    ) -> SubtaskProgress:
        return await self.subtask_update(
            run_id, subtask_number, TaskStatus.COMPLETED, percent=100.0, message=message
        )

    async def subtask_fail(self, run_id: str, subtask_number: int, error_message: str) -> SubtaskProgress:
        return await self.subtask_update(
            run_id, subtask_number, TaskStatus.FAILED, error_message=error_message
        )


__all__ = [
    'RUN_UPDATE_STATUSES',
    'SUBTASK_UPDATE_STATUSES',
    'TaskTracker',
]
