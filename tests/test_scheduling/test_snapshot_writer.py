"""Tests for the task and group snapshots written for agents."""

import json

import pytest

from corral.scheduling.snapshot_writer import AvailableGroup, SnapshotWriter
from corral.scheduling.task_service import TaskManager


@pytest.fixture
def writer(db, workspace):
    manager = TaskManager(db.task_repo, tz="UTC")
    manager.create("team", "team@g.us", "Team task", "once", "2099-01-01T00:00:00")
    manager.create("other", "other@g.us", "Other task", "once", "2099-01-01T00:00:00")
    return SnapshotWriter(manager)


GROUPS = [AvailableGroup("team@g.us", "Team", "2024-01-01T00:00:00+00:00", True)]


def read(path):
    return json.loads(path.read_text())


class TestTasksSnapshot:
    def test_main_sees_all_tasks(self, writer, workspace):
        writer.refresh_tasks("main", True)
        tasks = read(workspace / "data" / "ipc" / "main" / "current_tasks.json")
        assert sorted(t["groupFolder"] for t in tasks) == ["other", "team"]

    def test_non_main_sees_own_tasks(self, writer, workspace):
        writer.refresh_tasks("team", False)
        tasks = read(workspace / "data" / "ipc" / "team" / "current_tasks.json")
        assert [t["prompt"] for t in tasks] == ["Team task"]
        assert tasks[0]["scheduleType"] == "once"
        assert tasks[0]["nextRun"] == "2099-01-01T00:00:00+00:00"

    def test_no_temp_file_left(self, writer, workspace):
        writer.refresh_tasks("team", False)
        assert not list((workspace / "data" / "ipc" / "team").glob("*.tmp"))


class TestGroupsSnapshot:
    def test_main_sees_groups(self, writer):
        data = read(writer.write_groups("main", True, GROUPS))
        assert data["groups"] == [
            {"jid": "team@g.us", "name": "Team", "lastActivity": "2024-01-01T00:00:00+00:00", "isRegistered": True}
        ]
        assert data["lastSync"]

    def test_non_main_sees_nothing(self, writer):
        assert read(writer.write_groups("team", False, GROUPS))["groups"] == []


def test_prepare_for_execution_writes_both(writer, workspace):
    writer.prepare_for_execution("team", False, GROUPS)
    ipc = workspace / "data" / "ipc" / "team"
    assert (ipc / "current_tasks.json").exists()
    assert (ipc / "available_groups.json").exists()
