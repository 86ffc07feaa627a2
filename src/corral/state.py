"""Orchestrator state: registered groups, agent sessions and message cursors.

Loaded once at startup, written through to the database on every change and
passed by reference to the components that need it.
"""

from __future__ import annotations

from corral.groups.paths import GroupPaths
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import MAIN_GROUP_FOLDER
from corral.infrastructure.database import AppDatabase
from corral.infrastructure.logger import logger


class OrchestratorState:
    def __init__(self, db: AppDatabase) -> None:
        self._db = db
        self.registered_groups: dict[str, RegisteredGroup] = {}
        self.sessions: dict[str, str] = {}
        self.last_timestamp = ""
        self.last_agent_timestamp: dict[str, str] = {}

    def load(self) -> None:
        self.registered_groups = self._db.group_repo.get_all_registered_groups()
        self.sessions = self._db.state_repo.load_sessions()
        self.last_timestamp = self._db.state_repo.load_last_timestamp()
        self.last_agent_timestamp = self._db.state_repo.load_agent_cursors()

        logger.info("State loaded", groups=len(self.registered_groups), sessions=len(self.sessions))

    # --- Groups ---

    def get_group(self, jid: str) -> RegisteredGroup | None:
        return self.registered_groups.get(jid)

    def find_group_by_folder(self, folder: str) -> tuple[str, RegisteredGroup] | None:
        for jid, group in self.registered_groups.items():
            if group.folder == folder:
                return jid, group
        return None

    def is_main(self, group: RegisteredGroup) -> bool:
        return group.folder == MAIN_GROUP_FOLDER

    def register_group(self, jid: str, group: RegisteredGroup) -> None:
        self._db.group_repo.set_registered_group(jid, group)
        self.registered_groups[jid] = group
        GroupPaths.logs_dir(group.folder).mkdir(parents=True, exist_ok=True)
        logger.info("Group registered", jid=jid, name=group.name, folder=group.folder)

    # --- Sessions ---

    def get_session(self, folder: str) -> str | None:
        return self.sessions.get(folder)

    def set_session(self, folder: str, session_id: str) -> None:
        if self.sessions.get(folder) == session_id:
            return
        self.sessions[folder] = session_id
        self._db.state_repo.save_session(folder, session_id)

    # --- Cursors ---

    def get_cursor(self, jid: str) -> str:
        return self.last_agent_timestamp.get(jid, "")

    def set_cursor(self, jid: str, timestamp: str) -> None:
        self.last_agent_timestamp[jid] = timestamp
        self._db.state_repo.save_agent_cursors(self.last_agent_timestamp)

    def set_last_timestamp(self, timestamp: str) -> None:
        self.last_timestamp = timestamp
        self._db.state_repo.save_last_timestamp(timestamp)
