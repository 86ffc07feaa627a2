"""Orchestrator class: composes services, wires subsystems."""

from __future__ import annotations

from corral.execution.agent_executor import AgentExecutor
from corral.execution.container_runner import ContainerRunner
from corral.execution.container_runtime import ContainerRuntime, create_runtime
from corral.execution.execution_queue import GroupQueue
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import CONTAINER_NAME_PREFIX
from corral.infrastructure.database import AppDatabase, database
from corral.infrastructure.logger import logger
from corral.infrastructure.poll_loop import PollLoop
from corral.ipc.transport import IpcTransport
from corral.ipc.watcher import IpcDeps, IpcWatcher
from corral.messaging.channel_registry import ChannelRegistry
from corral.messaging.poller import MessageProcessor
from corral.messaging.types import ChannelFactory, NewMessage
from corral.scheduling.scheduler import SchedulerDependencies, start_scheduler_loop
from corral.scheduling.snapshot_writer import AvailableGroup, SnapshotWriter
from corral.scheduling.task_service import TaskManager
from corral.state import OrchestratorState

SHUTDOWN_TIMEOUT_S = 10.0


class Orchestrator:
    """Composes all services and manages the application lifecycle."""

    def __init__(
        self,
        channel_factories: list[ChannelFactory] | None = None,
        db: AppDatabase = database,
        runtime: ContainerRuntime | None = None,
    ) -> None:
        self._db = db
        self._channel_factories = channel_factories or []
        self._runtime = runtime or create_runtime()
        self._channel_registry = ChannelRegistry()
        self._transport = IpcTransport()
        self._queue = GroupQueue(transport=self._transport, runtime=self._runtime)
        self._state = OrchestratorState(self._db)
        self._ipc_watcher = IpcWatcher()
        self._running = False
        self._poll_handle: PollLoop | None = None
        self._scheduler_handle: PollLoop | None = None

    @property
    def queue(self) -> GroupQueue:
        return self._queue

    @property
    def state(self) -> OrchestratorState:
        return self._state

    async def start(self) -> None:
        """Initialize all services and start the loops."""
        logger.info("Starting Corral...")

        await self._runtime.ensure_running()
        await self._runtime.cleanup_orphans(CONTAINER_NAME_PREFIX)

        self._db.init()
        self._state.load()

        task_manager = TaskManager(self._db.task_repo)
        snapshot_writer = SnapshotWriter(task_manager)
        container_runner = ContainerRunner(runtime=self._runtime)
        agent_executor = AgentExecutor(
            state=self._state,
            queue=self._queue,
            get_available_groups=self._get_available_groups,
            snapshot_writer=snapshot_writer,
            container_runner=container_runner,
        )

        message_processor = MessageProcessor(
            state=self._state,
            channel_registry=self._channel_registry,
            queue=self._queue,
            agent_executor=agent_executor,
            message_repo=self._db.message_repo,
        )
        self._queue.set_process_messages_fn(message_processor.process_group_messages)

        await self._setup_channels()

        ipc_deps = IpcDeps(
            send_message=self._send_message,
            registered_groups=lambda: self._state.registered_groups,
            register_group=self._state.register_group,
            get_available_groups=self._get_available_groups,
            write_groups_snapshot=snapshot_writer.write_groups,
            refresh_tasks_snapshot=snapshot_writer.refresh_tasks,
            task_manager=task_manager,
        )
        self._ipc_watcher.start(ipc_deps)

        scheduler_deps = SchedulerDependencies(
            state=self._state,
            queue=self._queue,
            send_message=self._send_message,
            task_manager=task_manager,
            snapshot_writer=snapshot_writer,
            container_runner=container_runner,
        )
        self._scheduler_handle = start_scheduler_loop(scheduler_deps)
        self._poll_handle = message_processor.start_polling()

        # Messages that arrived while we were down
        message_processor.recover_pending_messages()

        self._running = True
        logger.info("Corral started", channels=len(self._channel_registry.get_all()))

    async def _setup_channels(self) -> None:
        def on_message(chat_jid: str, msg: NewMessage) -> None:
            self._db.message_repo.store_message(msg)

        def on_chat_metadata(
            jid: str, timestamp: str, name: str | None, channel: str | None, is_group: bool | None
        ) -> None:
            self._db.message_repo.upsert_chat(jid, timestamp, name, channel, is_group)

        for factory in self._channel_factories:
            try:
                channel = factory(
                    on_message=on_message,
                    on_chat_metadata=on_chat_metadata,
                    registered_groups=lambda: self._state.registered_groups,
                )
                if channel is None:
                    continue
                await channel.connect()
                self._channel_registry.register(channel)
                logger.info("Channel registered", channel=channel.name)
            except Exception:
                logger.exception("Failed to set up channel", factory=getattr(factory, "__name__", repr(factory)))

        if not self._channel_registry.get_all():
            logger.warning("No channels connected; only scheduled tasks and IPC will run")

    async def _send_message(self, jid: str, text: str) -> None:
        await self._channel_registry.route_outbound(jid, text)

    def _get_available_groups(self) -> list[AvailableGroup]:
        """All known group chats, flagged with whether they are registered."""
        registered = self._state.registered_groups
        return [
            AvailableGroup(
                jid=chat.jid,
                name=chat.name,
                last_activity=chat.last_message_time,
                is_registered=chat.jid in registered,
            )
            for chat in self._db.message_repo.get_all_chats(groups_only=True)
        ]

    def register_group(self, jid: str, group: RegisteredGroup) -> None:
        self._state.register_group(jid, group)

    async def shutdown(self) -> None:
        """Stop loops, drain containers, disconnect channels."""
        logger.info("Shutting down Corral...")
        self._running = False

        if self._poll_handle:
            self._poll_handle.stop()
        if self._scheduler_handle:
            self._scheduler_handle.stop()
        self._ipc_watcher.stop()

        await self._queue.shutdown(SHUTDOWN_TIMEOUT_S)
        await self._channel_registry.disconnect_all()

        logger.info("Corral shut down complete")
