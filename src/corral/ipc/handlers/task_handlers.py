"""Task IPC handlers: schedule, pause, resume, cancel."""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Literal

from corral.infrastructure.logger import logger
from corral.ipc.dispatcher import HandlerContext, IpcCommandHandler, IpcHandlerError


# --- ScheduleTaskHandler ---


@dataclass
class ScheduleTaskPayload:
    prompt: str
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str
    target_jid: str
    context_mode: Literal["group", "isolated"]


class ScheduleTaskHandler(IpcCommandHandler):
    command = "schedule_task"

    async def validate(self, data: dict[str, Any]) -> ScheduleTaskPayload:
        schedule_type = data.get("schedule_type") or data.get("scheduleType")
        schedule_value = data.get("schedule_value") or data.get("scheduleValue")
        if not data.get("prompt") or not schedule_type or not schedule_value or not data.get("targetJid"):
            raise IpcHandlerError("Missing required fields", {"command": self.command})
        if schedule_type not in ("cron", "interval", "once"):
            raise IpcHandlerError("Invalid schedule type", {"scheduleType": schedule_type})
        context_mode = data.get("context_mode") or data.get("contextMode") or "isolated"
        if context_mode not in ("group", "isolated"):
            context_mode = "isolated"
        return ScheduleTaskPayload(
            prompt=data["prompt"],
            schedule_type=schedule_type,
            schedule_value=str(schedule_value),
            target_jid=data["targetJid"],
            context_mode=context_mode,
        )

    async def execute(self, payload: ScheduleTaskPayload, context: HandlerContext) -> None:
        target_group = context.deps.registered_groups().get(payload.target_jid)
        if not target_group:
            raise IpcHandlerError("Target group not registered", {"targetJid": payload.target_jid})

        target_folder = target_group.folder
        if not context.auth.can_schedule_task(target_folder):
            raise IpcHandlerError(
                "Unauthorized schedule_task attempt",
                {"sourceGroup": context.source_group, "targetFolder": target_folder},
            )

        try:
            task_id = context.deps.task_manager.create(
                group_folder=target_folder,
                chat_jid=payload.target_jid,
                prompt=payload.prompt,
                schedule_type=payload.schedule_type,
                schedule_value=payload.schedule_value,
                context_mode=payload.context_mode,
            )
        except ValueError as err:
            raise IpcHandlerError(
                str(err), {"scheduleType": payload.schedule_type, "scheduleValue": payload.schedule_value}
            ) from err
        logger.info("Task created via IPC", task_id=task_id, source_group=context.source_group, target_folder=target_folder)
        context.deps.refresh_tasks_snapshot(context.source_group, context.is_main)


# --- Pause / resume / cancel ---


class _TaskControlHandler(IpcCommandHandler):
    """Shared validation and authorization for handlers that act on one task."""

    action: str

    async def validate(self, data: dict[str, Any]) -> str:
        if not data.get("taskId"):
            raise IpcHandlerError("Missing taskId", {"command": self.command})
        return data["taskId"]

    async def execute(self, task_id: str, context: HandlerContext) -> None:
        try:
            context.deps.task_manager.get_authorized(task_id, context.source_group, context.is_main)
        except (ValueError, PermissionError) as err:
            raise IpcHandlerError(str(err), {"taskId": task_id, "sourceGroup": context.source_group}) from err
        self.apply(task_id, context)
        logger.info(f"Task {self.action} via IPC", task_id=task_id, source_group=context.source_group)
        context.deps.refresh_tasks_snapshot(context.source_group, context.is_main)

    @abstractmethod
    def apply(self, task_id: str, context: HandlerContext) -> None: ...


class PauseTaskHandler(_TaskControlHandler):
    command = "pause_task"
    action = "paused"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.task_manager.pause(task_id)


class ResumeTaskHandler(_TaskControlHandler):
    command = "resume_task"
    action = "resumed"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.task_manager.resume(task_id)


class CancelTaskHandler(_TaskControlHandler):
    command = "cancel_task"
    action = "cancelled"

    def apply(self, task_id: str, context: HandlerContext) -> None:
        context.deps.task_manager.cancel(task_id)
