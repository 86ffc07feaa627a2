"""IPC watcher: polls the IPC directory tree for requests from containers."""

from __future__ import annotations

from pathlib import Path
from typing import Awaitable, Callable

from corral.groups.paths import GroupPaths
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import IPC_POLL_INTERVAL, MAIN_GROUP_FOLDER
from corral.infrastructure.logger import logger
from corral.infrastructure.poll_loop import PollLoop
from corral.ipc.dispatcher import IpcCommandDispatcher, IpcCommandHandler
from corral.ipc.envelope import MalformedControlEnvelope, list_envelopes, read_envelope
from corral.ipc.handlers.group_handlers import RefreshGroupsHandler, RegisterGroupHandler
from corral.ipc.handlers.message_handlers import SendMessageHandler
from corral.ipc.handlers.task_handlers import (
    CancelTaskHandler,
    PauseTaskHandler,
    ResumeTaskHandler,
    ScheduleTaskHandler,
)
from corral.scheduling.snapshot_writer import AvailableGroup
from corral.scheduling.task_service import TaskManager


async def _no_metadata_sync() -> None:
    return None


class IpcDeps:
    """Dependencies for IPC handlers, passed as a context object."""

    def __init__(
        self,
        send_message: Callable[[str, str], Awaitable[None]],
        registered_groups: Callable[[], dict[str, RegisteredGroup]],
        register_group: Callable[[str, RegisteredGroup], None],
        get_available_groups: Callable[[], list[AvailableGroup]],
        write_groups_snapshot: Callable[[str, bool, list[AvailableGroup]], object],
        refresh_tasks_snapshot: Callable[[str, bool], None],
        task_manager: TaskManager,
        sync_group_metadata: Callable[[], Awaitable[None]] = _no_metadata_sync,
    ) -> None:
        self.send_message = send_message
        self.registered_groups = registered_groups
        self.register_group = register_group
        self.get_available_groups = get_available_groups
        self.write_groups_snapshot = write_groups_snapshot
        self.refresh_tasks_snapshot = refresh_tasks_snapshot
        self.task_manager = task_manager
        self.sync_group_metadata = sync_group_metadata


def default_handlers() -> list[IpcCommandHandler]:
    return [
        SendMessageHandler(),
        ScheduleTaskHandler(),
        PauseTaskHandler(),
        ResumeTaskHandler(),
        CancelTaskHandler(),
        RegisterGroupHandler(),
        RefreshGroupsHandler(),
    ]


class IpcWatcher:
    """Consumes request envelopes written by agents.

    Each group has ``messages/`` and ``tasks/`` under ``data/ipc/{folder}``.
    Files are handled in name order and deleted afterwards; anything that
    cannot be parsed or whose handler raises is moved to ``data/ipc/errors``.
    A group's identity comes from the directory it wrote into, never from the
    envelope contents.
    """

    def __init__(self, handlers: list[IpcCommandHandler] | None = None, interval_s: float = IPC_POLL_INTERVAL) -> None:
        self._dispatcher = IpcCommandDispatcher(handlers if handlers is not None else default_handlers())
        self._interval = interval_s
        self._processing = False
        self._loop: PollLoop | None = None

    def start(self, deps: IpcDeps) -> PollLoop:
        if self._loop and self._loop.running:
            logger.debug("IPC watcher already running, skipping duplicate start")
            return self._loop
        GroupPaths.ipc_base_dir().mkdir(parents=True, exist_ok=True)
        self._loop = PollLoop("IPC", self._interval, lambda: self.process_once(deps))
        self._loop.start()
        return self._loop

    def stop(self) -> None:
        if self._loop:
            self._loop.stop()
            self._loop = None

    async def process_once(self, deps: IpcDeps) -> None:
        """Drain every group's request directories once."""
        if self._processing:
            return
        self._processing = True
        try:
            base_dir = GroupPaths.ipc_base_dir()
            if not base_dir.is_dir():
                return
            errors_dir = GroupPaths.ipc_errors_dir()
            group_folders = sorted(e.name for e in base_dir.iterdir() if e.is_dir() and e != errors_dir)
            for source_group in group_folders:
                is_main = source_group == MAIN_GROUP_FOLDER
                for directory in (GroupPaths.ipc_messages_dir(source_group), GroupPaths.ipc_tasks_dir(source_group)):
                    await self._process_dir(directory, source_group, is_main, deps)
        finally:
            self._processing = False

    async def _process_dir(self, directory: Path, source_group: str, is_main: bool, deps: IpcDeps) -> None:
        for file_path in list_envelopes(directory):
            try:
                envelope = read_envelope(file_path)
            except MalformedControlEnvelope as err:
                logger.warning("Malformed IPC envelope", file=file_path.name, source_group=source_group, reason=err.reason)
                self._quarantine(file_path, source_group)
                continue
            except FileNotFoundError:
                continue

            try:
                await self._dispatcher.dispatch(envelope.as_dict(), source_group, is_main, deps)
            except Exception:
                logger.exception("Error processing IPC request", file=file_path.name, source_group=source_group)
                self._quarantine(file_path, source_group)
                continue

            file_path.unlink(missing_ok=True)

    def _quarantine(self, file_path: Path, source_group: str) -> None:
        errors_dir = GroupPaths.ipc_errors_dir()
        try:
            errors_dir.mkdir(parents=True, exist_ok=True)
            file_path.replace(errors_dir / f"{source_group}-{file_path.name}")
        except OSError as err:
            logger.error("Failed to move IPC file to errors", file=file_path.name, error=str(err))
