"""Tests for container mount construction."""

import json

import pytest

from corral.execution import mount_security
from corral.execution.mount_builder import DefaultMountFactory, VolumeMount, mount_args
from corral.groups.types import AdditionalMount, ContainerConfig, RegisteredGroup


def make_group(folder: str, **kwargs) -> RegisteredGroup:
    return RegisteredGroup(name=folder, folder=folder, trigger="@Corral", added_at="2024-01-01T00:00:00+00:00", **kwargs)


def by_target(mounts: list[VolumeMount]) -> dict[str, VolumeMount]:
    return {m.container_path: m for m in mounts}


class TestVolumeMount:
    def test_args(self):
        assert VolumeMount("/a", "/b").to_args() == ["-v", "/a:/b"]
        assert VolumeMount("/a", "/b", readonly=True).to_args() == ["-v", "/a:/b:ro"]

    def test_mount_args_flattens(self):
        assert mount_args([VolumeMount("/a", "/b"), VolumeMount("/c", "/d", True)]) == [
            "-v", "/a:/b", "-v", "/c:/d:ro",
        ]


class TestDefaultMountFactory:
    def test_main_group_sees_project(self, workspace):
        (workspace / ".env").write_text("ANTHROPIC_API_KEY=x\n")
        mounts = by_target(DefaultMountFactory().build_mounts(make_group("main"), is_main=True))

        assert mounts["/workspace/project"].host_path == str(workspace)
        assert mounts["/workspace/project"].readonly is False
        assert mounts["/workspace/project/.env"].host_path == "/dev/null"
        assert mounts["/workspace/group"].readonly is False
        assert "/workspace/ipc" in mounts
        assert "/home/node/.claude" in mounts

    def test_non_main_group_confined(self, workspace):
        memory = workspace / "groups" / "global" / "MEMORY.md"
        memory.parent.mkdir(parents=True)
        memory.write_text("shared")

        mounts = by_target(DefaultMountFactory().build_mounts(make_group("team"), is_main=False))

        assert "/workspace/project" not in mounts
        assert mounts["/workspace/group"].host_path == str(workspace / "groups" / "team")
        assert mounts["/workspace/global/MEMORY.md"].readonly is True

    def test_non_main_read_only_flag(self, workspace):
        mounts = by_target(DefaultMountFactory(non_main_read_only=True).build_mounts(make_group("team"), False))
        assert mounts["/workspace/group"].readonly is True

    def test_creates_ipc_directories(self, workspace):
        DefaultMountFactory().build_mounts(make_group("team"), is_main=False)
        ipc = workspace / "data" / "ipc" / "team"
        assert (ipc / "input").is_dir()
        assert (ipc / "messages").is_dir()
        assert (ipc / "tasks").is_dir()
        assert (workspace / "data" / "sessions" / "team").is_dir()

    def test_additional_mounts_go_through_allowlist(self, workspace, monkeypatch):
        shared = workspace / "shared"
        (shared / "docs").mkdir(parents=True)
        allowlist = workspace / "mount-allowlist.json"
        allowlist.write_text(json.dumps({
            "allowedRoots": [{"path": str(shared), "allowReadWrite": True}],
            "blockedPatterns": [],
            "nonMainReadOnly": True,
        }))
        monkeypatch.setattr(mount_security, "MOUNT_ALLOWLIST_PATH", allowlist)

        group = make_group(
            "team",
            container_config=ContainerConfig(additional_mounts=[
                AdditionalMount(host_path=str(shared / "docs"), readonly=False),
                AdditionalMount(host_path=str(workspace / "groups")),
            ]),
        )
        mounts = by_target(DefaultMountFactory().build_mounts(group, is_main=False))

        assert mounts["/workspace/extra/docs"].readonly is True
        assert "/workspace/extra/groups" not in mounts

    @pytest.mark.parametrize("is_main", [True, False])
    def test_no_allowlist_means_no_extra_mounts(self, workspace, monkeypatch, is_main):
        monkeypatch.setattr(mount_security, "MOUNT_ALLOWLIST_PATH", workspace / "missing.json")
        extra = workspace / "extra-dir"
        extra.mkdir()
        group = make_group(
            "main" if is_main else "team",
            container_config=ContainerConfig(additional_mounts=[AdditionalMount(host_path=str(extra))]),
        )
        mounts = DefaultMountFactory().build_mounts(group, is_main=is_main)
        assert not any(m.container_path.startswith("/workspace/extra") for m in mounts)
