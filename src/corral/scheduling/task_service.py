"""Task manager: centralized task lifecycle."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from croniter import CroniterBadCronError, croniter

from corral.groups.authorization import AuthContext, AuthorizationPolicy
from corral.infrastructure.config import TIMEZONE
from corral.scheduling.repository import TaskRepository, utc_now_iso
from corral.scheduling.types import ScheduledTask, TaskRunLog


def new_task_id() -> str:
    return f"task-{uuid.uuid4()}"


class TaskManager:
    def __init__(self, task_repo: TaskRepository, tz: str = TIMEZONE) -> None:
        self._task_repo = task_repo
        self._tz = ZoneInfo(tz)

    # --- CRUD ---

    def create(
        self,
        group_folder: str,
        chat_jid: str,
        prompt: str,
        schedule_type: str,
        schedule_value: str,
        context_mode: str = "isolated",
    ) -> str:
        """Validate the schedule, persist the task and return its id.

        Raises ValueError for an unknown schedule type or a value that cannot
        be parsed for its type.
        """
        next_run = self.compute_next_run(schedule_type, schedule_value)
        task_id = new_task_id()

        task = ScheduledTask(
            id=task_id,
            group_folder=group_folder,
            chat_jid=chat_jid,
            prompt=prompt,
            schedule_type=schedule_type,  # type: ignore[arg-type]
            schedule_value=schedule_value,
            context_mode=context_mode,  # type: ignore[arg-type]
            next_run=next_run,
            status="active",
            created_at=utc_now_iso(),
        )
        self._task_repo.create_task(task)
        return task_id

    def get_by_id(self, id: str) -> ScheduledTask | None:
        return self._task_repo.get_task_by_id(id)

    def get_all(self) -> list[ScheduledTask]:
        return self._task_repo.get_all_tasks()

    def get_for_group(self, group_folder: str) -> list[ScheduledTask]:
        return self._task_repo.get_tasks_for_group(group_folder)

    # --- Lifecycle ---

    def pause(self, id: str) -> None:
        self._task_repo.update_task(id, status="paused")

    def resume(self, id: str) -> None:
        task = self._task_repo.get_task_by_id(id)
        next_run = None
        if task and task.next_run is None and task.schedule_type != "once":
            # Paused while claimed: give it a fresh slot
            next_run = self.compute_next_run(task.schedule_type, task.schedule_value)
        self._task_repo.update_task(id, status="active", next_run=next_run)

    def cancel(self, id: str) -> None:
        self._task_repo.delete_task(id)

    # --- Scheduling ---

    def get_due_tasks(self) -> list[ScheduledTask]:
        return self._task_repo.get_due_tasks()

    def claim(self, id: str) -> bool:
        return self._task_repo.claim_task(id)

    def complete_run(
        self, task: ScheduledTask, duration_ms: int, result: str | None, error: str | None
    ) -> None:
        self._task_repo.log_task_run(TaskRunLog(
            task_id=task.id,
            run_at=utc_now_iso(),
            duration_ms=duration_ms,
            status="error" if error else "success",
            result=result,
            error=error,
        ))

        next_run = self._compute_next_run_after_execution(task)
        result_summary = f"Error: {error}" if error else (result[:200] if result else "Completed")
        self._task_repo.update_task_after_run(task.id, next_run, result_summary)

    # --- Authorization ---

    def get_authorized(self, task_id: str, source_group: str, is_main: bool) -> ScheduledTask:
        task = self._task_repo.get_task_by_id(task_id)
        if not task:
            raise ValueError(f"Task not found: {task_id}")
        auth = AuthorizationPolicy(AuthContext(source_group=source_group, is_main=is_main))
        if not auth.can_manage_task(task.group_folder):
            raise PermissionError(f"Unauthorized task management: {task_id}")
        return task

    # --- Internal ---

    def compute_next_run(self, schedule_type: str, schedule_value: str) -> str | None:
        """First run time as a UTC ISO string.

        Cron expressions are evaluated in the configured timezone. Naive
        timestamps for one-shot tasks are read as local to that timezone too.
        """
        if schedule_type == "cron":
            try:
                cron = croniter(schedule_value, datetime.now(self._tz))
            except (CroniterBadCronError, ValueError, KeyError):
                raise ValueError(f"Invalid cron expression: {schedule_value}") from None
            return cron.get_next(datetime).astimezone(timezone.utc).isoformat()
        elif schedule_type == "interval":
            try:
                ms = int(schedule_value)
            except (ValueError, TypeError):
                raise ValueError(f"Invalid interval: {schedule_value}") from None
            if ms <= 0:
                raise ValueError(f"Invalid interval: {schedule_value}")
            return (datetime.now(timezone.utc) + timedelta(milliseconds=ms)).isoformat()
        elif schedule_type == "once":
            try:
                scheduled = datetime.fromisoformat(schedule_value)
            except ValueError:
                raise ValueError(f"Invalid timestamp: {schedule_value}") from None
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=self._tz)
            return scheduled.astimezone(timezone.utc).isoformat()
        raise ValueError(f"Unknown schedule type: {schedule_type}")

    def _compute_next_run_after_execution(self, task: ScheduledTask) -> str | None:
        if task.schedule_type == "once":
            return None
        return self.compute_next_run(task.schedule_type, task.schedule_value)
