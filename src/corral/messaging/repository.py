"""Inbound message log and chat metadata.

Messages are append-only and keyed by (id, chat_jid); reads are always
cursor based, returning only non-bot messages strictly after a timestamp.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence

from corral.messaging.types import ChatInfo, NewMessage

_MESSAGE_COLUMNS = "id, chat_jid, sender, sender_name, content, timestamp, is_from_me, is_bot_message"


class MessageRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def store_message(self, msg: NewMessage) -> None:
        """Append a message. Redelivery of a known message is a no-op."""
        self._db.execute(
            f"INSERT OR IGNORE INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                msg.id,
                msg.chat_jid,
                msg.sender,
                msg.sender_name,
                msg.content,
                msg.timestamp,
                int(msg.is_from_me),
                int(msg.is_bot_message),
            ),
        )
        self._db.commit()

    def get_new_messages(self, jids: Sequence[str], cursor: str) -> tuple[list[NewMessage], str]:
        """Messages for any of ``jids`` after ``cursor``, plus the advanced cursor."""
        if not jids:
            return [], cursor
        messages = self._fetch_after(jids, cursor)
        return messages, messages[-1].timestamp if messages else cursor

    def get_messages_since(self, chat_jid: str, cursor: str) -> list[NewMessage]:
        return self._fetch_after([chat_jid], cursor)

    def _fetch_after(self, jids: Sequence[str], cursor: str) -> list[NewMessage]:
        placeholders = ", ".join("?" for _ in jids)
        rows = self._db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages"
            f" WHERE chat_jid IN ({placeholders}) AND timestamp > ? AND is_bot_message = 0"
            " ORDER BY timestamp",
            (*jids, cursor),
        )
        return [
            NewMessage(
                id=row["id"],
                chat_jid=row["chat_jid"],
                sender=row["sender"],
                sender_name=row["sender_name"],
                content=row["content"],
                timestamp=row["timestamp"],
                is_from_me=bool(row["is_from_me"]),
                is_bot_message=bool(row["is_bot_message"]),
            )
            for row in rows
        ]

    # --- Chat metadata ---

    def upsert_chat(
        self,
        jid: str,
        timestamp: str,
        name: str | None = None,
        channel: str | None = None,
        is_group: bool | None = None,
    ) -> None:
        """Record chat activity. Fields reported as None or empty keep their stored value."""
        self._db.execute(
            """INSERT INTO chats (jid, name, last_message_time, channel, is_group)
               VALUES (:jid, COALESCE(:name, ''), :ts, COALESCE(:channel, ''), COALESCE(:is_group, 0))
               ON CONFLICT (jid) DO UPDATE SET
                   last_message_time = excluded.last_message_time,
                   name = COALESCE(NULLIF(:name, ''), chats.name),
                   channel = COALESCE(NULLIF(:channel, ''), chats.channel),
                   is_group = COALESCE(:is_group, chats.is_group)""",
            {
                "jid": jid,
                "ts": timestamp,
                "name": name,
                "channel": channel,
                "is_group": None if is_group is None else int(is_group),
            },
        )
        self._db.commit()

    def get_all_chats(self, groups_only: bool = False) -> list[ChatInfo]:
        """Known chats, most recently active first."""
        where = " WHERE is_group = 1" if groups_only else ""
        rows = self._db.execute(
            f"SELECT jid, name, last_message_time, channel, is_group FROM chats{where}"
            " ORDER BY last_message_time DESC"
        )
        return [
            ChatInfo(
                jid=row["jid"],
                name=row["name"] or "",
                last_message_time=row["last_message_time"] or "",
                channel=row["channel"] or "",
                is_group=bool(row["is_group"]),
            )
            for row in rows
        ]
