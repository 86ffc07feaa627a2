"""Registered group persistence."""

from __future__ import annotations

import json
import sqlite3

from corral.groups.types import ContainerConfig, RegisteredGroup
from corral.infrastructure.logger import logger


def _safe_parse(raw: str | None) -> dict | list | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


class GroupRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def get_registered_group(self, jid: str) -> RegisteredGroup | None:
        row = self._db.execute("SELECT * FROM registered_groups WHERE jid = ?", (jid,)).fetchone()
        if not row:
            return None
        return self._row_to_group(row)

    def set_registered_group(self, jid: str, group: RegisteredGroup) -> None:
        self._db.execute(
            """INSERT OR REPLACE INTO registered_groups
               (jid, name, folder, trigger_pattern, added_at, container_config, requires_trigger, channel, admin_users)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                jid,
                group.name,
                group.folder,
                group.trigger,
                group.added_at,
                group.container_config.model_dump_json() if group.container_config else None,
                1 if group.requires_trigger is None or group.requires_trigger else 0,
                group.channel or "whatsapp",
                json.dumps(group.admin_users) if group.admin_users else None,
            ),
        )
        self._db.commit()

    def get_all_registered_groups(self) -> dict[str, RegisteredGroup]:
        rows = self._db.execute("SELECT * FROM registered_groups").fetchall()
        return {row["jid"]: self._row_to_group(row) for row in rows}

    def _row_to_group(self, row: sqlite3.Row) -> RegisteredGroup:
        container_config = None
        parsed = _safe_parse(row["container_config"])
        if isinstance(parsed, dict):
            container_config = ContainerConfig.model_validate(parsed)
        elif row["container_config"]:
            logger.warning("Ignoring unreadable container config", jid=row["jid"])

        admin_users = _safe_parse(row["admin_users"])

        requires_trigger: bool | None = None
        if row["requires_trigger"] is not None:
            requires_trigger = row["requires_trigger"] == 1

        return RegisteredGroup(
            name=row["name"],
            folder=row["folder"],
            trigger=row["trigger_pattern"],
            added_at=row["added_at"],
            channel=row["channel"] or "whatsapp",
            container_config=container_config,
            requires_trigger=requires_trigger,
            admin_users=admin_users if isinstance(admin_users, list) else [],
        )
