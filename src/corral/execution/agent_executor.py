"""Agent executor: ties container execution to session tracking."""

from __future__ import annotations

from typing import Awaitable, Callable, Literal

from corral.execution.container_runner import ContainerInput, ContainerOutput, ContainerRunner
from corral.execution.execution_queue import GroupQueue
from corral.groups.types import RegisteredGroup
from corral.infrastructure.logger import logger
from corral.scheduling.snapshot_writer import AvailableGroup, SnapshotWriter
from corral.state import OrchestratorState


class AgentExecutor:
    """Runs the agent for a group: snapshots, container run, session bookkeeping."""

    def __init__(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        get_available_groups: Callable[[], list[AvailableGroup]],
        snapshot_writer: SnapshotWriter,
        container_runner: ContainerRunner,
    ) -> None:
        self._state = state
        self._queue = queue
        self._get_available_groups = get_available_groups
        self._snapshot_writer = snapshot_writer
        self._container_runner = container_runner

    async def execute(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        on_output: Callable[[ContainerOutput], Awaitable[None]] | None = None,
        run_as_main: bool = False,
    ) -> Literal["success", "error"]:
        """Run the agent once.

        ``run_as_main`` elevates a non-main group for this run, used when a
        group's admin user sent the messages.
        """
        is_main = self._state.is_main(group) or run_as_main
        session_id = self._state.get_session(group.folder)

        self._snapshot_writer.prepare_for_execution(group.folder, is_main, self._get_available_groups())

        async def wrapped_on_output(output: ContainerOutput) -> None:
            if output.new_session_id:
                self._state.set_session(group.folder, output.new_session_id)
            if on_output:
                await on_output(output)

        try:
            output = await self._container_runner.run(
                group,
                ContainerInput(
                    prompt=prompt,
                    session_id=session_id,
                    group_folder=group.folder,
                    chat_jid=chat_jid,
                    is_main=is_main,
                ),
                on_process=lambda proc, name: self._queue.register_process(chat_jid, proc, name, group.folder),
                on_output=wrapped_on_output,
            )
        except Exception:
            logger.exception("Agent error", group=group.name)
            return "error"

        if output.new_session_id:
            self._state.set_session(group.folder, output.new_session_id)

        if output.status == "error":
            # Details stay in the log; users never see orchestration errors
            logger.error("Container agent error", group=group.name, error=output.error)
            return "error"

        return "success"
