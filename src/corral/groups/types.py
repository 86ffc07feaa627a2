"""Group domain types."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts camelCase keys from JSON files and IPC envelopes, snake_case from code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AdditionalMount(CamelModel):
    host_path: str  # Absolute path on host (supports ~ for home)
    container_path: str | None = None  # Relative to /workspace/extra; defaults to basename of host_path
    readonly: bool = True


class AllowedRoot(CamelModel):
    path: StrictStr  # Absolute path or ~ for home
    allow_read_write: StrictBool = False
    description: StrictStr | None = None


class MountAllowlist(CamelModel):
    """Host paths that may be exposed to containers.

    Every top-level field is required and strictly typed: a document with a
    missing key or a wrongly typed value is rejected as a whole.
    """

    allowed_roots: list[AllowedRoot]
    blocked_patterns: list[StrictStr]
    non_main_read_only: StrictBool


class ContainerConfig(CamelModel):
    additional_mounts: list[AdditionalMount] | None = None
    timeout: int | None = None  # milliseconds; falls back to CONTAINER_TIMEOUT


class RegisteredGroup(CamelModel):
    name: str
    folder: str
    trigger: str
    added_at: str
    channel: str = "whatsapp"
    container_config: ContainerConfig | None = None
    requires_trigger: bool | None = True  # Default: true for groups, false for solo chats
    admin_users: list[str] = Field(default_factory=list)  # Senders whose messages run with main privileges
