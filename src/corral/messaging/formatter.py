"""Message formatting transforms."""

from __future__ import annotations

import re

from corral.infrastructure.config import ASSISTANT_NAME
from corral.messaging.types import NewMessage

_INTERNAL_RE = re.compile(r"<internal>[\s\S]*?</internal>")


def format_messages(messages: list[NewMessage]) -> str:
    """Format a list of messages into a single prompt string.

    Each message is wrapped in XML-like tags carrying the sender and time.
    """
    parts = [
        f'<message sender="{xml_escape(msg.sender_name)}" time="{msg.timestamp}">{xml_escape(msg.content)}</message>'
        for msg in messages
    ]
    return "<messages>\n" + "\n".join(parts) + "\n</messages>"


def strip_internal_tags(text: str) -> str:
    """Strip <internal>...</internal> blocks from agent output."""
    return _INTERNAL_RE.sub("", text).strip()


def format_outbound(raw: str, prefix_assistant_name: bool = True) -> str:
    """Prepare agent output for a chat. Returns "" when nothing user-visible remains."""
    text = strip_internal_tags(raw)
    if not text:
        return ""
    return f"{ASSISTANT_NAME}: {text}" if prefix_assistant_name else text


def xml_escape(s: str) -> str:
    """Escape special XML characters."""
    return s.replace("&", "&amp;").replace('"', "&quot;").replace("<", "&lt;").replace(">", "&gt;")
