"""Writes task and group snapshots into a group's IPC directory for the agent to read."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from corral.groups.paths import GroupPaths
from corral.scheduling.repository import utc_now_iso
from corral.scheduling.task_service import TaskManager


@dataclass
class AvailableGroup:
    jid: str
    name: str
    last_activity: str
    is_registered: bool


def _write_json(path: Path, data: object) -> None:
    # Agents may read mid-write, so go through a temp file
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    tmp.replace(path)


class SnapshotWriter:
    """Non-main groups see only their own tasks and no group listing."""

    def __init__(self, task_manager: TaskManager) -> None:
        self._task_manager = task_manager

    def write_tasks(self, group_folder: str, is_main: bool, tasks: list[dict]) -> Path:
        ipc_dir = GroupPaths.ipc_dir(group_folder)
        ipc_dir.mkdir(parents=True, exist_ok=True)

        filtered = tasks if is_main else [t for t in tasks if t.get("groupFolder") == group_folder]

        tasks_file = ipc_dir / "current_tasks.json"
        _write_json(tasks_file, filtered)
        return tasks_file

    def write_groups(self, group_folder: str, is_main: bool, groups: list[AvailableGroup]) -> Path:
        ipc_dir = GroupPaths.ipc_dir(group_folder)
        ipc_dir.mkdir(parents=True, exist_ok=True)

        visible = (
            [
                {"jid": g.jid, "name": g.name, "lastActivity": g.last_activity, "isRegistered": g.is_registered}
                for g in groups
            ]
            if is_main
            else []
        )

        groups_file = ipc_dir / "available_groups.json"
        _write_json(groups_file, {"groups": visible, "lastSync": utc_now_iso()})
        return groups_file

    def refresh_tasks(self, group_folder: str, is_main: bool) -> None:
        """Rewrite the tasks snapshot from the database."""
        self.write_tasks(
            group_folder,
            is_main,
            [
                {
                    "id": t.id,
                    "groupFolder": t.group_folder,
                    "prompt": t.prompt,
                    "scheduleType": t.schedule_type,
                    "scheduleValue": t.schedule_value,
                    "status": t.status,
                    "nextRun": t.next_run,
                }
                for t in self._task_manager.get_all()
            ],
        )

    def prepare_for_execution(self, group_folder: str, is_main: bool, available_groups: list[AvailableGroup]) -> None:
        self.refresh_tasks(group_folder, is_main)
        self.write_groups(group_folder, is_main, available_groups)
