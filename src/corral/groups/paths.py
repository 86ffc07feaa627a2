"""Centralized path construction for group-related directories and files."""

from __future__ import annotations

from pathlib import Path

from corral.infrastructure.config import DATA_DIR, GROUPS_DIR


class GroupPaths:
    """Where each group's workspace, logs, IPC channels and sessions live on the host."""

    @staticmethod
    def group_dir(folder: str) -> Path:
        """Workspace: groups/{folder}"""
        return GROUPS_DIR / folder

    @staticmethod
    def logs_dir(folder: str) -> Path:
        """Container run logs: groups/{folder}/logs"""
        return GROUPS_DIR / folder / "logs"

    @staticmethod
    def ipc_base_dir() -> Path:
        return DATA_DIR / "ipc"

    @staticmethod
    def ipc_errors_dir() -> Path:
        """Quarantine for envelopes that could not be handled: data/ipc/errors"""
        return DATA_DIR / "ipc" / "errors"

    @staticmethod
    def ipc_dir(folder: str) -> Path:
        """Mounted at /workspace/ipc: data/ipc/{folder}"""
        return DATA_DIR / "ipc" / folder

    @staticmethod
    def ipc_input_dir(folder: str) -> Path:
        """Host -> agent messages and the close sentinel: data/ipc/{folder}/input"""
        return DATA_DIR / "ipc" / folder / "input"

    @staticmethod
    def ipc_messages_dir(folder: str) -> Path:
        """Agent -> host outbound message requests: data/ipc/{folder}/messages"""
        return DATA_DIR / "ipc" / folder / "messages"

    @staticmethod
    def ipc_tasks_dir(folder: str) -> Path:
        """Agent -> host task-control requests: data/ipc/{folder}/tasks"""
        return DATA_DIR / "ipc" / folder / "tasks"

    @staticmethod
    def sessions_dir(folder: str) -> Path:
        """Agent session state: data/sessions/{folder}"""
        return DATA_DIR / "sessions" / folder
