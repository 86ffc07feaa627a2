"""Scheduling domain types."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

ScheduleType = Literal["cron", "interval", "once"]
ContextMode = Literal["group", "isolated"]
TaskStatus = Literal["active", "paused", "completed"]


class ScheduledTask(BaseModel):
    id: str  # task-{uuid4}
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str  # cron expression, interval in ms, or ISO timestamp
    context_mode: ContextMode = "isolated"
    next_run: str | None = None  # UTC ISO-8601; None once claimed or finished
    last_run: str | None = None
    last_result: str | None = None
    status: TaskStatus = "active"
    created_at: str = ""


class TaskRunLog(BaseModel):
    task_id: str
    run_at: str
    duration_ms: int
    status: Literal["success", "error"]
    result: str | None = None
    error: str | None = None
