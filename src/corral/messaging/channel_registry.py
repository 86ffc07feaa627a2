"""Registry pattern for multiple channels."""

from __future__ import annotations

from corral.infrastructure.logger import logger
from corral.messaging.types import Channel


class ChannelRoutingError(Exception):
    """No connected channel owns the target JID."""

    def __init__(self, jid: str) -> None:
        super().__init__(f"No channel for JID: {jid}")
        self.jid = jid


class ChannelRegistry:
    """Manages registered channels and routes JIDs to the correct channel."""

    def __init__(self) -> None:
        self._channels: list[Channel] = []

    def register(self, channel: Channel) -> None:
        if any(c.name == channel.name for c in self._channels):
            raise ValueError(f'Channel "{channel.name}" is already registered')
        self._channels.append(channel)

    def find_by_jid(self, jid: str) -> Channel | None:
        return next((c for c in self._channels if c.owns_jid(jid)), None)

    def find_connected_by_jid(self, jid: str) -> Channel | None:
        return next((c for c in self._channels if c.owns_jid(jid) and c.is_connected()), None)

    async def route_outbound(self, jid: str, text: str) -> Channel:
        """Send text through the first connected channel that owns the JID."""
        channel = self.find_connected_by_jid(jid)
        if channel is None:
            raise ChannelRoutingError(jid)
        await channel.send_message(jid, text)
        return channel

    def get_all(self) -> list[Channel]:
        return list(self._channels)

    async def connect_all(self) -> None:
        for channel in self._channels:
            await channel.connect()
            logger.info("Channel connected", channel=channel.name)

    async def disconnect_all(self) -> None:
        for channel in self._channels:
            try:
                await channel.disconnect()
            except Exception:
                logger.exception("Error disconnecting channel", channel=channel.name)
