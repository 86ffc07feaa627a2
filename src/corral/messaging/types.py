"""Messaging domain types and Channel protocol."""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

from pydantic import BaseModel


class NewMessage(BaseModel):
    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool = False
    is_bot_message: bool = False


class ChatInfo(BaseModel):
    """Chat metadata as last reported by a channel."""

    jid: str
    name: str = ""
    last_message_time: str = ""
    channel: str = ""
    is_group: bool = False


@runtime_checkable
class Channel(Protocol):
    """A chat-platform connector.

    Implementations are discovered through the ``corral.channels`` entry point
    group and handed to the orchestrator at startup.
    """

    name: str

    async def connect(self) -> None: ...
    async def send_message(self, jid: str, text: str) -> None: ...
    def is_connected(self) -> bool: ...
    def owns_jid(self, jid: str) -> bool: ...
    async def disconnect(self) -> None: ...
    async def set_typing(self, jid: str, is_typing: bool) -> None: ...


# Callback types
OnInboundMessage = Callable[[str, NewMessage], None]
OnChatMetadata = Callable[[str, str, str | None, str | None, bool | None], None]


class ChannelFactory(Protocol):
    """Entry point target for the ``corral.channels`` group.

    Returns None when the channel is not configured on this host.
    """

    def __call__(
        self,
        on_message: OnInboundMessage,
        on_chat_metadata: OnChatMetadata,
        registered_groups: Callable[[], dict],
    ) -> Channel | None: ...
