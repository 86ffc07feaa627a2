"""Message IPC handler: outbound chat messages requested by an agent."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from corral.infrastructure.logger import logger
from corral.ipc.dispatcher import HandlerContext, IpcCommandHandler, IpcHandlerError
from corral.messaging.channel_registry import ChannelRoutingError


@dataclass
class SendMessagePayload:
    chat_jid: str
    text: str


class SendMessageHandler(IpcCommandHandler):
    command = "message"

    async def validate(self, data: dict[str, Any]) -> SendMessagePayload:
        if not data.get("chatJid") or not data.get("text"):
            raise IpcHandlerError("Missing required fields", {"command": self.command})
        return SendMessagePayload(chat_jid=data["chatJid"], text=str(data["text"]))

    async def execute(self, payload: SendMessagePayload, context: HandlerContext) -> None:
        target_group = context.deps.registered_groups().get(payload.chat_jid)
        if not target_group:
            raise IpcHandlerError("Target chat not registered", {"chatJid": payload.chat_jid})
        if not context.auth.can_send_message(target_group.folder):
            raise IpcHandlerError(
                "Unauthorized IPC message attempt blocked",
                {"chatJid": payload.chat_jid, "targetFolder": target_group.folder},
            )

        try:
            await context.deps.send_message(payload.chat_jid, payload.text)
        except ChannelRoutingError as err:
            raise IpcHandlerError(str(err), {"chatJid": payload.chat_jid}) from err
        logger.info("IPC message sent", chat_jid=payload.chat_jid, source_group=context.source_group)
