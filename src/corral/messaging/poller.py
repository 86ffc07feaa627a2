"""Message processor: polling, cursor management and trigger checks."""

from __future__ import annotations

import re

from corral.execution.agent_executor import AgentExecutor
from corral.execution.execution_queue import GroupQueue
from corral.execution.output_parser import ContainerOutput
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import ASSISTANT_NAME, IDLE_TIMEOUT, POLL_INTERVAL
from corral.infrastructure.idle_timer import IdleTimer
from corral.infrastructure.logger import logger
from corral.infrastructure.poll_loop import PollLoop, start_poll_loop
from corral.messaging.channel_registry import ChannelRegistry, ChannelRoutingError
from corral.messaging.formatter import format_messages, format_outbound
from corral.messaging.repository import MessageRepository
from corral.messaging.types import NewMessage
from corral.state import OrchestratorState


def has_trigger(messages: list[NewMessage], group: RegisteredGroup) -> bool:
    """Check if any message starts with the group's trigger word."""
    if group.requires_trigger is False:
        return True
    pattern = re.compile(rf"^{re.escape(group.trigger)}\b", re.IGNORECASE)
    return any(pattern.search(m.content.strip()) for m in messages)


def has_admin_sender(messages: list[NewMessage], group: RegisteredGroup) -> bool:
    return bool(group.admin_users) and any(m.sender in group.admin_users for m in messages)


class MessageProcessor:
    """Polls for new messages and dispatches them to agent containers.

    A batch's cursor advances before the agent runs and is rolled back if the
    run fails before anything reached the user. Once output was delivered the
    cursor stays put, so delivery is at-least-once per batch.
    """

    def __init__(
        self,
        state: OrchestratorState,
        channel_registry: ChannelRegistry,
        queue: GroupQueue,
        agent_executor: AgentExecutor,
        message_repo: MessageRepository,
        idle_timeout_s: float = IDLE_TIMEOUT / 1000,
    ) -> None:
        self._state = state
        self._channel_registry = channel_registry
        self._queue = queue
        self._agent_executor = agent_executor
        self._message_repo = message_repo
        self._idle_timeout_s = idle_timeout_s

    def _needs_agent(self, messages: list[NewMessage], group: RegisteredGroup) -> bool:
        return self._state.is_main(group) or has_trigger(messages, group)

    async def poll_once(self) -> None:
        jids = list(self._state.registered_groups.keys())
        messages, new_ts = self._message_repo.get_new_messages(jids, self._state.last_timestamp)
        if not messages:
            return

        logger.info("New messages", count=len(messages))
        self._state.set_last_timestamp(new_ts)

        messages_by_group: dict[str, list[NewMessage]] = {}
        for msg in messages:
            messages_by_group.setdefault(msg.chat_jid, []).append(msg)

        for chat_jid, group_messages in messages_by_group.items():
            group = self._state.get_group(chat_jid)
            if not group:
                continue

            channel = self._channel_registry.find_by_jid(chat_jid)
            if not channel:
                logger.warning("No channel owns JID, skipping", chat_jid=chat_jid)
                continue

            if not self._needs_agent(group_messages, group):
                continue

            # Everything since the agent last saw this chat, not just this poll's batch
            all_pending = self._message_repo.get_messages_since(chat_jid, self._state.get_cursor(chat_jid))
            messages_to_send = all_pending or group_messages

            if self._queue.send_message(chat_jid, format_messages(messages_to_send)):
                logger.debug("Piped messages to active container", chat_jid=chat_jid, count=len(messages_to_send))
                self._state.set_cursor(chat_jid, messages_to_send[-1].timestamp)
                await channel.set_typing(chat_jid, True)
            else:
                self._queue.enqueue_message_check(chat_jid)

    def start_polling(self) -> PollLoop:
        logger.info("Corral running", trigger=f"@{ASSISTANT_NAME}")
        return start_poll_loop("Message", POLL_INTERVAL, self.poll_once)

    async def process_group_messages(self, chat_jid: str) -> bool:
        """Process accumulated messages for a group. Called by the execution queue."""
        group = self._state.get_group(chat_jid)
        if not group:
            return True

        channel = self._channel_registry.find_by_jid(chat_jid)
        if not channel:
            logger.warning("No channel owns JID, skipping", chat_jid=chat_jid)
            return True

        previous_cursor = self._state.get_cursor(chat_jid)
        missed = self._message_repo.get_messages_since(chat_jid, previous_cursor)
        if not missed:
            return True

        if not self._needs_agent(missed, group):
            return True

        run_as_main = has_admin_sender(missed, group)
        prompt = format_messages(missed)

        # Advance first so the poll loop does not pipe the same batch again
        self._state.set_cursor(chat_jid, missed[-1].timestamp)

        logger.info("Processing messages", group=group.name, count=len(missed), run_as_main=run_as_main)

        def on_idle() -> None:
            logger.debug("Idle timeout, closing container stdin", group=group.name)
            self._queue.close_stdin(chat_jid)

        idle = IdleTimer(on_idle, self._idle_timeout_s)

        await channel.set_typing(chat_jid, True)
        had_error = False
        output_sent = False

        async def on_output(result: ContainerOutput) -> None:
            nonlocal had_error, output_sent
            if result.result:
                logger.info("Agent output", group=group.name, preview=result.result[:200])
                text = format_outbound(result.result, getattr(channel, "prefix_assistant_name", True))
                if text:
                    try:
                        await self._channel_registry.route_outbound(chat_jid, text)
                        output_sent = True
                    except ChannelRoutingError as err:
                        logger.error("Failed to deliver agent output", chat_jid=chat_jid, error=str(err))
                        had_error = True
                # Only real results count as activity; session markers carry no text
                idle.reset()
            if result.status == "error":
                had_error = True

        try:
            output = await self._agent_executor.execute(group, prompt, chat_jid, on_output, run_as_main=run_as_main)
        finally:
            idle.clear()
            await channel.set_typing(chat_jid, False)

        if output == "error" or had_error:
            if output_sent:
                logger.warning("Agent error after output sent, skipping cursor rollback", group=group.name)
                return True
            self._state.set_cursor(chat_jid, previous_cursor)
            logger.warning("Agent error, rolled back cursor for retry", group=group.name)
            return False

        return True

    def recover_pending_messages(self) -> None:
        """Re-enqueue unprocessed messages from before shutdown."""
        for chat_jid, group in self._state.registered_groups.items():
            pending = self._message_repo.get_messages_since(chat_jid, self._state.get_cursor(chat_jid))
            if not pending:
                continue
            if not self._needs_agent(pending, group):
                continue
            logger.info("Recovery: found unprocessed messages", group=group.name, count=len(pending))
            self._queue.enqueue_message_check(chat_jid)
