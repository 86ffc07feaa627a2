"""SQLite database schema, migrations, and AppDatabase composition root."""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING

from pydantic import ValidationError

from corral.infrastructure.config import ASSISTANT_NAME, DATA_DIR, STORE_DIR
from corral.infrastructure.logger import logger

if TYPE_CHECKING:
    from corral.groups.repository import GroupRepository
    from corral.infrastructure.state_repo import OrchestratorStateRepository
    from corral.messaging.repository import MessageRepository
    from corral.scheduling.repository import TaskRepository


def create_schema(db: sqlite3.Connection) -> None:
    """Create all tables and indexes. Safe to call multiple times (IF NOT EXISTS)."""
    db.executescript("""
        CREATE TABLE IF NOT EXISTS chats (
            jid TEXT PRIMARY KEY,
            name TEXT,
            last_message_time TEXT,
            channel TEXT,
            is_group INTEGER DEFAULT 0
        );
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT,
            chat_jid TEXT,
            sender TEXT,
            sender_name TEXT,
            content TEXT,
            timestamp TEXT,
            is_from_me INTEGER,
            is_bot_message INTEGER DEFAULT 0,
            PRIMARY KEY (id, chat_jid),
            FOREIGN KEY (chat_jid) REFERENCES chats(jid)
        );
        CREATE INDEX IF NOT EXISTS idx_timestamp ON messages(timestamp);

        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            group_folder TEXT NOT NULL,
            chat_jid TEXT NOT NULL,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_value TEXT NOT NULL,
            context_mode TEXT DEFAULT 'isolated',
            next_run TEXT,
            last_run TEXT,
            last_result TEXT,
            status TEXT DEFAULT 'active',
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_next_run ON scheduled_tasks(next_run);
        CREATE INDEX IF NOT EXISTS idx_status ON scheduled_tasks(status);

        CREATE TABLE IF NOT EXISTS task_run_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error TEXT,
            FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
        );
        CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);

        CREATE TABLE IF NOT EXISTS router_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS sessions (
            group_folder TEXT PRIMARY KEY,
            session_id TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS registered_groups (
            jid TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            folder TEXT NOT NULL UNIQUE,
            trigger_pattern TEXT NOT NULL,
            added_at TEXT NOT NULL,
            container_config TEXT,
            requires_trigger INTEGER DEFAULT 1,
            channel TEXT DEFAULT 'whatsapp',
            admin_users TEXT
        );
    """)

    _run_schema_migrations(db)


def _add_column(db: sqlite3.Connection, *statements: str) -> None:
    try:
        for stmt in statements:
            db.execute(stmt)
        db.commit()
    except sqlite3.OperationalError:
        # Column already present
        pass


def _run_schema_migrations(db: sqlite3.Connection) -> None:
    """Bring databases created by older releases up to the current schema."""
    _add_column(db, "ALTER TABLE scheduled_tasks ADD COLUMN context_mode TEXT DEFAULT 'isolated'")
    _add_column(
        db,
        "ALTER TABLE messages ADD COLUMN is_bot_message INTEGER DEFAULT 0",
        f"UPDATE messages SET is_bot_message = 1 WHERE content LIKE '{ASSISTANT_NAME}:%'",
    )
    _add_column(db, "ALTER TABLE registered_groups ADD COLUMN channel TEXT DEFAULT 'whatsapp'")
    _add_column(db, "ALTER TABLE registered_groups ADD COLUMN admin_users TEXT")


def run_json_migrations(state_repo: OrchestratorStateRepository, group_repo: GroupRepository) -> None:
    """Import legacy JSON state files into the database, renaming each to *.migrated."""
    from corral.groups.types import RegisteredGroup

    def migrate_file(filename: str) -> dict | list | None:
        file_path = DATA_DIR / filename
        if not file_path.exists():
            return None
        try:
            data = json.loads(file_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Skipping unreadable legacy state file", file=filename, error=str(exc))
            return None
        file_path.rename(file_path.with_suffix(file_path.suffix + ".migrated"))
        return data

    router_state = migrate_file("router_state.json")
    if isinstance(router_state, dict):
        if router_state.get("last_timestamp"):
            state_repo.save_last_timestamp(router_state["last_timestamp"])
        if isinstance(router_state.get("last_agent_timestamp"), dict):
            state_repo.save_agent_cursors(router_state["last_agent_timestamp"])

    sessions = migrate_file("sessions.json")
    if isinstance(sessions, dict):
        for folder, session_id in sessions.items():
            state_repo.save_session(folder, session_id)

    groups = migrate_file("registered_groups.json")
    if isinstance(groups, dict):
        for jid, group_data in groups.items():
            try:
                group = RegisteredGroup.model_validate(group_data)
            except ValidationError as exc:
                logger.warning("Skipping invalid legacy group", jid=jid, error=str(exc))
                continue
            group_repo.set_registered_group(jid, group)


class AppDatabase:
    """Composition root that initializes the DB and exposes repositories."""

    def __init__(self) -> None:
        self._db: sqlite3.Connection | None = None
        # Repositories are set after init
        self.message_repo: MessageRepository | None = None
        self.task_repo: TaskRepository | None = None
        self.group_repo: GroupRepository | None = None
        self.state_repo: OrchestratorStateRepository | None = None

    @property
    def db(self) -> sqlite3.Connection:
        assert self._db is not None, "Database not initialized. Call init() first."
        return self._db

    def init(self) -> None:
        """Open (or create) the database file at the standard location."""
        db_path = STORE_DIR / "messages.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path))
        self._db.row_factory = sqlite3.Row
        self._init_repos()

        run_json_migrations(self.state_repo, self.group_repo)

    def _init_test(self) -> None:
        """For tests only. Creates a fresh in-memory database."""
        self._db = sqlite3.connect(":memory:")
        self._db.row_factory = sqlite3.Row
        self._init_repos()

    def _init_repos(self) -> None:
        assert self._db is not None
        create_schema(self._db)

        # Import here to avoid circular imports
        from corral.groups.repository import GroupRepository
        from corral.infrastructure.state_repo import OrchestratorStateRepository
        from corral.messaging.repository import MessageRepository
        from corral.scheduling.repository import TaskRepository

        self.message_repo = MessageRepository(self._db)
        self.task_repo = TaskRepository(self._db)
        self.group_repo = GroupRepository(self._db)
        self.state_repo = OrchestratorStateRepository(self._db)


# Singleton instance
database = AppDatabase()
