"""Group IPC handlers: register_group, refresh_groups."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from corral.groups.types import ContainerConfig, RegisteredGroup
from corral.infrastructure.logger import logger
from corral.ipc.dispatcher import HandlerContext, IpcCommandHandler, IpcHandlerError
from corral.scheduling.repository import utc_now_iso

# Folder names become host directory names and container names
_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


# --- RegisterGroupHandler ---


@dataclass
class RegisterGroupPayload:
    jid: str
    name: str
    folder: str
    trigger: str
    channel: str | None
    container_config: ContainerConfig | None
    requires_trigger: bool | None
    admin_users: list[str]


class RegisterGroupHandler(IpcCommandHandler):
    command = "register_group"

    async def validate(self, data: dict[str, Any]) -> RegisterGroupPayload:
        if not data.get("jid") or not data.get("name") or not data.get("folder") or not data.get("trigger"):
            raise IpcHandlerError("Missing required fields", {"command": self.command})
        if not _FOLDER_RE.match(data["folder"]):
            raise IpcHandlerError("Invalid group folder", {"folder": data["folder"]})

        container_config = None
        if data.get("containerConfig"):
            try:
                container_config = ContainerConfig.model_validate(data["containerConfig"])
            except ValidationError as err:
                raise IpcHandlerError("Invalid containerConfig", {"errors": err.error_count()}) from err

        admin_users = data.get("adminUsers") or []
        if not isinstance(admin_users, list) or not all(isinstance(u, str) for u in admin_users):
            raise IpcHandlerError("Invalid adminUsers", {"command": self.command})

        return RegisterGroupPayload(
            jid=data["jid"],
            name=data["name"],
            folder=data["folder"],
            trigger=data["trigger"],
            channel=data.get("channel"),
            container_config=container_config,
            requires_trigger=data.get("requiresTrigger"),
            admin_users=admin_users,
        )

    async def execute(self, payload: RegisterGroupPayload, context: HandlerContext) -> None:
        if not context.auth.can_register_group():
            raise IpcHandlerError("Unauthorized register_group attempt", {"sourceGroup": context.source_group})

        context.deps.register_group(
            payload.jid,
            RegisteredGroup(
                name=payload.name,
                folder=payload.folder,
                trigger=payload.trigger,
                added_at=utc_now_iso(),
                channel=payload.channel or "whatsapp",
                container_config=payload.container_config,
                requires_trigger=payload.requires_trigger,
                admin_users=payload.admin_users,
            ),
        )

        logger.info("Group registered via IPC", source_group=context.source_group, jid=payload.jid, folder=payload.folder)


# --- RefreshGroupsHandler ---


class RefreshGroupsHandler(IpcCommandHandler):
    command = "refresh_groups"

    async def validate(self, data: dict[str, Any]) -> None:
        return None

    async def execute(self, _payload: None, context: HandlerContext) -> None:
        if not context.auth.can_refresh_groups():
            raise IpcHandlerError("Unauthorized refresh_groups attempt", {"sourceGroup": context.source_group})

        logger.info("Group metadata refresh requested via IPC", source_group=context.source_group)
        await context.deps.sync_group_metadata()
        context.deps.write_groups_snapshot(context.source_group, True, context.deps.get_available_groups())
