"""Authorization rules for requests coming out of a group's container."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class AuthContext:
    source_group: str
    is_main: bool


class AuthorizationPolicy:
    """Checks what a single source group may do.

    The main (admin) group may act on any group; every other group is confined
    to its own folder.
    """

    def __init__(self, ctx: AuthContext) -> None:
        self._ctx = ctx

    @property
    def source_group(self) -> str:
        return self._ctx.source_group

    @property
    def is_main(self) -> bool:
        return self._ctx.is_main

    def _own_or_main(self, target_group_folder: str) -> bool:
        return self._ctx.is_main or target_group_folder == self._ctx.source_group

    def can_send_message(self, target_group_folder: str) -> bool:
        return self._own_or_main(target_group_folder)

    def can_schedule_task(self, target_group_folder: str) -> bool:
        return self._own_or_main(target_group_folder)

    def can_manage_task(self, task_group_folder: str) -> bool:
        return self._own_or_main(task_group_folder)

    def can_register_group(self) -> bool:
        return self._ctx.is_main

    def can_refresh_groups(self) -> bool:
        return self._ctx.is_main
