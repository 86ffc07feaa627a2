"""Task scheduler: polls for due tasks and enqueues them."""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from corral.execution.container_runner import ContainerInput, ContainerOutput, ContainerRunner
from corral.execution.execution_queue import GroupQueue
from corral.infrastructure.config import IDLE_TIMEOUT, SCHEDULER_POLL_INTERVAL
from corral.infrastructure.idle_timer import IdleTimer
from corral.infrastructure.logger import logger
from corral.infrastructure.poll_loop import PollLoop, start_poll_loop
from corral.messaging.formatter import format_outbound
from corral.scheduling.snapshot_writer import SnapshotWriter
from corral.scheduling.task_service import TaskManager
from corral.scheduling.types import ScheduledTask
from corral.state import OrchestratorState


class SchedulerDependencies:
    def __init__(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        send_message: Callable[[str, str], Awaitable[None]],
        task_manager: TaskManager,
        snapshot_writer: SnapshotWriter,
        container_runner: ContainerRunner,
        idle_timeout_s: float = IDLE_TIMEOUT / 1000,
    ) -> None:
        self.state = state
        self.queue = queue
        self.send_message = send_message
        self.task_manager = task_manager
        self.snapshot_writer = snapshot_writer
        self.container_runner = container_runner
        self.idle_timeout_s = idle_timeout_s


async def run_task(task: ScheduledTask, deps: SchedulerDependencies) -> None:
    """Run a single scheduled task in a container and record the outcome."""
    start_time = time.time()
    logger.info("Running scheduled task", task_id=task.id, group=task.group_folder)

    found = deps.state.find_group_by_folder(task.group_folder)
    if not found:
        logger.error("Group not found for task", task_id=task.id, group_folder=task.group_folder)
        deps.task_manager.complete_run(task, 0, None, f"Group not found: {task.group_folder}")
        return
    _, group = found

    is_main = deps.state.is_main(group)
    deps.snapshot_writer.refresh_tasks(task.group_folder, is_main)

    # Isolated tasks start a fresh conversation
    session_id = deps.state.get_session(task.group_folder) if task.context_mode == "group" else None

    def on_idle() -> None:
        logger.debug("Scheduled task idle timeout", task_id=task.id)
        deps.queue.close_stdin(task.chat_jid)

    idle = IdleTimer(on_idle, deps.idle_timeout_s)
    result: str | None = None
    error: str | None = None

    async def on_output(streamed: ContainerOutput) -> None:
        nonlocal result, error
        if streamed.result:
            result = streamed.result
            text = format_outbound(streamed.result)
            if text:
                await deps.send_message(task.chat_jid, text)
            idle.reset()
        if streamed.status == "error":
            error = streamed.error or "Unknown error"

    try:
        output = await deps.container_runner.run(
            group,
            ContainerInput(
                prompt=task.prompt,
                session_id=session_id,
                group_folder=task.group_folder,
                chat_jid=task.chat_jid,
                is_main=is_main,
                is_scheduled_task=True,
            ),
            on_process=lambda proc, name: deps.queue.register_process(task.chat_jid, proc, name, task.group_folder),
            on_output=on_output,
        )
        if output.status == "error":
            error = output.error or "Unknown error"
        elif output.result:
            result = output.result
        if task.context_mode == "group" and output.new_session_id:
            deps.state.set_session(task.group_folder, output.new_session_id)
    except Exception as err:
        error = str(err)
        logger.exception("Task failed", task_id=task.id)
    finally:
        idle.clear()

    duration_ms = int((time.time() - start_time) * 1000)
    logger.info("Task finished", task_id=task.id, duration_ms=duration_ms, error=error)
    deps.task_manager.complete_run(task, duration_ms, result, error)


def start_scheduler_loop(deps: SchedulerDependencies, interval_s: float = SCHEDULER_POLL_INTERVAL) -> PollLoop:
    """Start the scheduler polling loop."""

    async def poll() -> None:
        due_tasks = deps.task_manager.get_due_tasks()
        if due_tasks:
            logger.info("Found due tasks", count=len(due_tasks))

        for task in due_tasks:
            # Claiming clears next_run so the next poll cannot pick it up again
            if not deps.task_manager.claim(task.id):
                continue
            deps.queue.enqueue_task_check(task.chat_jid, task.id, lambda t=task: run_task(t, deps))

    return start_poll_loop("Scheduler", interval_s, poll)
