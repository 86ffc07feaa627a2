"""Per-group queue with global concurrency limit using asyncio.

Unlike a JS promise, a coroutine handed to asyncio.create_task does not run
up to its first await synchronously. Slots are therefore taken eagerly in the
synchronous caller (state.active, active_count) and released in the run's
finally block; otherwise two enqueues in the same tick could both see a free
slot.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

from corral.infrastructure.config import MAX_CONCURRENT_CONTAINERS
from corral.infrastructure.logger import logger
from corral.ipc.transport import IpcTransport

if TYPE_CHECKING:
    from corral.execution.container_runtime import ContainerRuntime

MAX_ATTEMPTS = 5
BASE_RETRY_S = 5.0


def backoff_delay(retry_count: int) -> float:
    """Seconds to wait after failure number retry_count (1-based): 5, 10, 20, 40, 80."""
    return BASE_RETRY_S * 2 ** (retry_count - 1)


@dataclass
class QueuedTask:
    id: str
    group_jid: str
    fn: Callable[[], Awaitable[None]]


@dataclass
class GroupState:
    active: bool = False
    active_is_task: bool = False
    running_task_id: str | None = None
    pending_messages: bool = False
    pending_tasks: deque[QueuedTask] = field(default_factory=deque)
    process: asyncio.subprocess.Process | None = None
    container_name: str | None = None
    group_folder: str | None = None
    retry_count: int = 0

    def release(self) -> None:
        """Reset per-run fields when the slot is given back."""
        self.active = False
        self.active_is_task = False
        self.running_task_id = None
        self.process = None
        self.container_name = None
        self.group_folder = None


class GroupQueue:
    """Per-group execution queue with global concurrency limiting.

    At most one run per group and at most ``max_concurrent`` runs overall.
    When a slot frees, waiting groups are started by priority (a group with a
    pending task beats one with only pending messages) and then by arrival.
    """

    def __init__(
        self,
        transport: IpcTransport | None = None,
        max_concurrent: int = MAX_CONCURRENT_CONTAINERS,
        runtime: ContainerRuntime | None = None,
    ) -> None:
        self._groups: dict[str, GroupState] = {}
        self._active_count = 0
        self._max_concurrent = max_concurrent
        self._waiting_groups: deque[str] = deque()
        self._process_messages_fn: Callable[[str], Awaitable[bool]] | None = None
        self._shutting_down = False
        self._transport = transport or IpcTransport()
        self._runtime = runtime
        self._runs: set[asyncio.Task[None]] = set()
        self._retries: set[asyncio.Task[None]] = set()

    @property
    def active_count(self) -> int:
        return self._active_count

    def _get_group(self, group_jid: str) -> GroupState:
        state = self._groups.get(group_jid)
        if not state:
            state = GroupState()
            self._groups[group_jid] = state
        return state

    def set_process_messages_fn(self, fn: Callable[[str], Awaitable[bool]]) -> None:
        self._process_messages_fn = fn

    # --- Enqueue ---

    def enqueue_message_check(self, group_jid: str) -> None:
        if self._shutting_down:
            return

        state = self._get_group(group_jid)

        if state.active:
            state.pending_messages = True
            logger.debug("Container active, message queued", group_jid=group_jid)
            return

        if self._active_count >= self._max_concurrent:
            state.pending_messages = True
            self._add_waiting(group_jid)
            logger.debug("At concurrency limit, message queued", group_jid=group_jid, active=self._active_count)
            return

        self._start_messages(group_jid, "messages")

    def enqueue_task_check(self, group_jid: str, task_id: str, fn: Callable[[], Awaitable[None]]) -> None:
        if self._shutting_down:
            return

        state = self._get_group(group_jid)

        if state.running_task_id == task_id or any(t.id == task_id for t in state.pending_tasks):
            logger.debug("Task already queued, skipping", group_jid=group_jid, task_id=task_id)
            return

        task = QueuedTask(id=task_id, group_jid=group_jid, fn=fn)

        if state.active:
            state.pending_tasks.append(task)
            if not state.active_is_task:
                # Let the message container wind down so the task is not starved
                self.close_stdin(group_jid)
            logger.debug("Container active, task queued", group_jid=group_jid, task_id=task_id)
            return

        if self._active_count >= self._max_concurrent:
            state.pending_tasks.append(task)
            self._add_waiting(group_jid)
            logger.debug("At concurrency limit, task queued", group_jid=group_jid, task_id=task_id)
            return

        self._start_task(group_jid, task)

    def _add_waiting(self, group_jid: str) -> None:
        if group_jid not in self._waiting_groups:
            self._waiting_groups.append(group_jid)

    # --- Running process ---

    def register_process(
        self,
        group_jid: str,
        proc: asyncio.subprocess.Process,
        container_name: str,
        group_folder: str | None = None,
    ) -> None:
        state = self._get_group(group_jid)
        state.process = proc
        state.container_name = container_name
        if group_folder:
            state.group_folder = group_folder

    def send_message(self, group_jid: str, text: str) -> bool:
        """Pipe text into the group's running container. False when there is none."""
        state = self._get_group(group_jid)
        if not state.active or state.active_is_task or state.process is None or not state.group_folder:
            return False
        return self._transport.send_message(state.group_folder, text)

    def close_stdin(self, group_jid: str) -> None:
        state = self._get_group(group_jid)
        if not state.active or not state.group_folder:
            return
        self._transport.close_stdin(state.group_folder)

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Read-only view of queue state, keyed by group JID, plus ``_meta`` counters."""
        view: dict[str, dict[str, object]] = {
            jid: {
                "active": state.active,
                "is_task": state.active_is_task,
                "container_name": state.container_name,
                "pending_messages": state.pending_messages,
                "pending_tasks": len(state.pending_tasks),
                "retry_count": state.retry_count,
            }
            for jid, state in self._groups.items()
        }
        view["_meta"] = {
            "active_count": self._active_count,
            "max_concurrent": self._max_concurrent,
            "waiting": list(self._waiting_groups),
            "shutting_down": self._shutting_down,
        }
        return view

    # --- Runs ---

    def _spawn(self, coro: Awaitable[None]) -> None:
        run = asyncio.ensure_future(coro)
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    def _start_messages(self, group_jid: str, reason: str) -> None:
        state = self._get_group(group_jid)
        state.active = True
        state.active_is_task = False
        state.pending_messages = False
        self._active_count += 1
        self._spawn(self._run_for_group(group_jid, reason))

    def _start_task(self, group_jid: str, task: QueuedTask) -> None:
        state = self._get_group(group_jid)
        state.active = True
        state.active_is_task = True
        state.running_task_id = task.id
        self._active_count += 1
        self._spawn(self._run_task(group_jid, task))

    async def _run_for_group(self, group_jid: str, reason: str) -> None:
        state = self._get_group(group_jid)
        logger.debug("Starting container for group", group_jid=group_jid, reason=reason, active=self._active_count)

        try:
            if self._process_messages_fn:
                success = await self._process_messages_fn(group_jid)
                if success:
                    state.retry_count = 0
                else:
                    self._schedule_retry(group_jid, state)
        except Exception:
            logger.exception("Error processing messages for group", group_jid=group_jid)
            self._schedule_retry(group_jid, state)
        finally:
            state.release()
            self._active_count -= 1
            self._on_slot_freed(group_jid)

    async def _run_task(self, group_jid: str, task: QueuedTask) -> None:
        state = self._get_group(group_jid)
        logger.debug("Running queued task", group_jid=group_jid, task_id=task.id, active=self._active_count)

        try:
            await task.fn()
        except Exception:
            logger.exception("Error running task", group_jid=group_jid, task_id=task.id)
        finally:
            state.release()
            self._active_count -= 1
            self._on_slot_freed(group_jid)

    def _schedule_retry(self, group_jid: str, state: GroupState) -> None:
        state.retry_count += 1
        if state.retry_count >= MAX_ATTEMPTS:
            logger.error(
                "Max retries exceeded, dropping messages until new activity",
                group_jid=group_jid,
                retry_count=state.retry_count,
            )
            state.retry_count = 0
            return

        delay_s = backoff_delay(state.retry_count)
        logger.info("Scheduling retry with backoff", group_jid=group_jid, retry_count=state.retry_count, delay_s=delay_s)

        async def retry_later() -> None:
            await asyncio.sleep(delay_s)
            if not self._shutting_down:
                self.enqueue_message_check(group_jid)

        retry = asyncio.ensure_future(retry_later())
        self._retries.add(retry)
        retry.add_done_callback(self._retries.discard)

    # --- Draining ---

    def _on_slot_freed(self, group_jid: str) -> None:
        if self._shutting_down:
            return
        state = self._get_group(group_jid)
        if state.pending_tasks or state.pending_messages:
            self._add_waiting(group_jid)
        self._drain_waiting()

    def _next_waiting(self) -> str | None:
        """First waiting group with a task, else the first with messages."""
        candidates = [jid for jid in self._waiting_groups if not self._get_group(jid).active]
        for jid in candidates:
            if self._get_group(jid).pending_tasks:
                return jid
        for jid in candidates:
            if self._get_group(jid).pending_messages:
                return jid
        return None

    def _drain_waiting(self) -> None:
        while self._active_count < self._max_concurrent:
            next_jid = self._next_waiting()
            if next_jid is None:
                break
            self._waiting_groups.remove(next_jid)
            state = self._get_group(next_jid)

            # Tasks first: messages are re-discovered from the store, tasks are not
            if state.pending_tasks:
                self._start_task(next_jid, state.pending_tasks.popleft())
                if state.pending_messages:
                    self._add_waiting(next_jid)
            else:
                self._start_messages(next_jid, "drain")

        # Groups left with nothing pending stay out of the waiting list
        for jid in list(self._waiting_groups):
            state = self._get_group(jid)
            if not state.pending_tasks and not state.pending_messages:
                self._waiting_groups.remove(jid)

    # --- Shutdown ---

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        """Stop accepting work, ask every running container to exit, then force-stop stragglers.

        Runs that have not yet registered a process are awaited within the same timeout.
        """
        self._shutting_down = True
        deadline = asyncio.get_running_loop().time() + timeout_s
        for retry in list(self._retries):
            retry.cancel()

        running = {jid: s for jid, s in self._groups.items() if s.active and s.process is not None}
        logger.info("GroupQueue shutting down", active=self._active_count, containers=len(running), runs=len(self._runs))

        for jid in running:
            self.close_stdin(jid)

        waits = {
            jid: asyncio.ensure_future(state.process.wait())  # type: ignore[union-attr]
            for jid, state in running.items()
            if state.process.returncode is None  # type: ignore[union-attr]
        }
        if waits:
            _done, pending = await asyncio.wait(waits.values(), timeout=timeout_s)
            for jid, wait in waits.items():
                if wait not in pending:
                    continue
                wait.cancel()
                await self._force_stop(jid, running[jid])

        if self._runs:
            remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
            _done, unfinished = await asyncio.wait(set(self._runs), timeout=remaining)
            if unfinished:
                logger.warning("Runs still in progress after shutdown timeout", runs=len(unfinished))

    async def _force_stop(self, group_jid: str, state: GroupState) -> None:
        name = state.container_name
        logger.warning("Container did not exit in time, force stopping", group_jid=group_jid, container=name)
        if self._runtime is not None and name:
            await self._runtime.stop_container(name)
        proc = state.process
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
