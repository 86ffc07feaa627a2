"""Persistence for the orchestrator's restart-surviving state.

Holds the global message cursor, the per-chat agent cursors and the agent
session id of each group folder.
"""

from __future__ import annotations

import json
import sqlite3

from corral.infrastructure.logger import logger

LAST_TIMESTAMP_KEY = "last_timestamp"
AGENT_CURSORS_KEY = "last_agent_timestamp"


class OrchestratorStateRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def _get(self, key: str) -> str | None:
        row = self._db.execute("SELECT value FROM router_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _put(self, key: str, value: str) -> None:
        self._db.execute(
            "INSERT INTO router_state (key, value) VALUES (?, ?)"
            " ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        self._db.commit()

    # --- Cursors ---

    def load_last_timestamp(self) -> str:
        return self._get(LAST_TIMESTAMP_KEY) or ""

    def save_last_timestamp(self, timestamp: str) -> None:
        self._put(LAST_TIMESTAMP_KEY, timestamp)

    def load_agent_cursors(self) -> dict[str, str]:
        """Per-chat cursors. A corrupted record reads as no cursors at all."""
        raw = self._get(AGENT_CURSORS_KEY)
        if not raw:
            return {}
        try:
            cursors = json.loads(raw)
        except json.JSONDecodeError:
            cursors = None
        if not isinstance(cursors, dict):
            logger.warning("Corrupted agent cursors in DB, resetting")
            return {}
        return {jid: ts for jid, ts in cursors.items() if isinstance(ts, str)}

    def save_agent_cursors(self, cursors: dict[str, str]) -> None:
        self._put(AGENT_CURSORS_KEY, json.dumps(cursors, sort_keys=True))

    # --- Sessions ---

    def load_sessions(self) -> dict[str, str]:
        rows = self._db.execute("SELECT group_folder, session_id FROM sessions")
        return {row["group_folder"]: row["session_id"] for row in rows}

    def save_session(self, group_folder: str, session_id: str) -> None:
        self._db.execute(
            "INSERT INTO sessions (group_folder, session_id) VALUES (?, ?)"
            " ON CONFLICT (group_folder) DO UPDATE SET session_id = excluded.session_id",
            (group_folder, session_id),
        )
        self._db.commit()
