"""Mount factory for building container volume arguments."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from corral.execution.mount_security import validate_additional_mounts
from corral.groups.paths import GroupPaths
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import GLOBAL_MEMORY_FILE, NON_MAIN_GROUP_READ_ONLY, PROJECT_ROOT

SESSIONS_MOUNT = "/home/node/.claude"


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False

    def to_args(self) -> list[str]:
        suffix = ":ro" if self.readonly else ""
        return ["-v", f"{self.host_path}:{self.container_path}{suffix}"]


def mount_args(mounts: list[VolumeMount]) -> list[str]:
    return [arg for m in mounts for arg in m.to_args()]


class MountFactory(Protocol):
    """Interface for building container mounts."""

    def build_mounts(self, group: RegisteredGroup, is_main: bool) -> list[VolumeMount]: ...


class DefaultMountFactory:
    """What each group's container can see.

    The main group gets the whole project read-write. Other groups get their
    own folder (read-only when NON_MAIN_GROUP_READ_ONLY is set) plus the shared
    memory file read-only. Requested additional mounts must pass the allowlist.
    """

    def __init__(self, non_main_read_only: bool = NON_MAIN_GROUP_READ_ONLY) -> None:
        self._non_main_read_only = non_main_read_only

    def build_mounts(self, group: RegisteredGroup, is_main: bool) -> list[VolumeMount]:
        mounts: list[VolumeMount] = []
        group_dir = GroupPaths.group_dir(group.folder)
        group_dir.mkdir(parents=True, exist_ok=True)

        if is_main:
            mounts.append(VolumeMount(str(PROJECT_ROOT), "/workspace/project"))
            env_file = PROJECT_ROOT / ".env"
            if env_file.exists():
                # Secrets arrive over stdin; hide the file itself
                mounts.append(VolumeMount("/dev/null", "/workspace/project/.env", readonly=True))
            mounts.append(VolumeMount(str(group_dir), "/workspace/group"))
        else:
            mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=self._non_main_read_only))
            if GLOBAL_MEMORY_FILE.exists():
                mounts.append(VolumeMount(str(GLOBAL_MEMORY_FILE), "/workspace/global/MEMORY.md", readonly=True))

        ipc_dir = GroupPaths.ipc_dir(group.folder)
        for sub in (GroupPaths.ipc_input_dir, GroupPaths.ipc_messages_dir, GroupPaths.ipc_tasks_dir):
            sub(group.folder).mkdir(parents=True, exist_ok=True)
        mounts.append(VolumeMount(str(ipc_dir), "/workspace/ipc"))

        sessions_dir = GroupPaths.sessions_dir(group.folder)
        sessions_dir.mkdir(parents=True, exist_ok=True)
        mounts.append(VolumeMount(str(sessions_dir), SESSIONS_MOUNT))

        if group.container_config and group.container_config.additional_mounts:
            for validated in validate_additional_mounts(
                group.container_config.additional_mounts, group.folder, is_main
            ):
                mounts.append(VolumeMount(validated.host_path, validated.container_path, validated.readonly))

        return mounts
