"""Configuration constants, .env parsing, and timeout settings."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def read_env_file(keys: list[str]) -> dict[str, str]:
    """Parse .env file and return values for requested keys.

    Does NOT load into os.environ: callers decide what to do with values.
    This keeps secrets out of the process environment so they don't leak
    to child processes.
    """
    env_file = Path.cwd() / ".env"
    try:
        content = env_file.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        eq_idx = trimmed.find("=")
        if eq_idx == -1:
            continue
        key = trimmed[:eq_idx].strip()
        if key not in wanted:
            continue
        value = trimmed[eq_idx + 1 :].strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Non-secret settings may also come from .env; os.environ wins.
_env_config = read_env_file(["ASSISTANT_NAME", "AGENT_BACKEND", "LLM_PROVIDER", "LLM_MODEL", "LLM_BASE_URL"])

ASSISTANT_NAME: str = os.environ.get("ASSISTANT_NAME") or _env_config.get("ASSISTANT_NAME", "Corral")

POLL_INTERVAL: float = 2.0  # seconds
SCHEDULER_POLL_INTERVAL: float = 60.0
IPC_POLL_INTERVAL: float = 1.0

# Absolute paths
PROJECT_ROOT: Path = Path.cwd()
HOME_DIR: Path = Path.home()

# Kept outside the project root so it can never be mounted into a container.
MOUNT_ALLOWLIST_PATH: Path = HOME_DIR / ".config" / "corral" / "mount-allowlist.json"
STORE_DIR: Path = (PROJECT_ROOT / "store").resolve()
GROUPS_DIR: Path = (PROJECT_ROOT / "groups").resolve()
DATA_DIR: Path = (PROJECT_ROOT / "data").resolve()
MAIN_GROUP_FOLDER: str = "main"
GLOBAL_MEMORY_FILE: Path = GROUPS_DIR / "global" / "MEMORY.md"

CONTAINER_IMAGE: str = os.environ.get("CONTAINER_IMAGE", "corral-agent:latest")
CONTAINER_RUNTIME: str = os.environ.get("CONTAINER_RUNTIME", "docker")
CONTAINER_NAME_PREFIX: str = "corral-"
CONTAINER_TIMEOUT: int = _env_int("CONTAINER_TIMEOUT", 1_800_000)  # 30min
CONTAINER_MAX_OUTPUT_SIZE: int = _env_int("CONTAINER_MAX_OUTPUT_SIZE", 10_485_760)  # 10MB
IDLE_TIMEOUT: int = _env_int("IDLE_TIMEOUT", 1_800_000)  # 30min
MAX_CONCURRENT_CONTAINERS: int = max(1, _env_int("MAX_CONCURRENT_CONTAINERS", 5))
NON_MAIN_GROUP_READ_ONLY: bool = os.environ.get("NON_MAIN_GROUP_READ_ONLY", "") in ("1", "true")

# LLM_PROVIDER is the older name for the same setting
AGENT_BACKEND: str = (
    os.environ.get("AGENT_BACKEND")
    or os.environ.get("LLM_PROVIDER")
    or _env_config.get("AGENT_BACKEND")
    or _env_config.get("LLM_PROVIDER", "claude")
)
LLM_MODEL: str = os.environ.get("LLM_MODEL") or _env_config.get("LLM_MODEL", "")
LLM_BASE_URL: str = os.environ.get("LLM_BASE_URL") or _env_config.get("LLM_BASE_URL", "")


def _resolve_timezone() -> str:
    tz = os.environ.get("TZ", "")
    if not tz:
        tz_file = Path("/etc/timezone")
        try:
            if tz_file.exists():
                tz = tz_file.read_text().strip()
            else:
                # /etc/localtime -> /usr/share/zoneinfo/Area/City
                parts = Path("/etc/localtime").resolve().parts
                if "zoneinfo" in parts:
                    tz = "/".join(parts[parts.index("zoneinfo") + 1 :])
        except OSError:
            tz = ""

    if not tz:
        return "UTC"

    try:
        ZoneInfo(tz)
        return tz
    except (ZoneInfoNotFoundError, ValueError):
        return "UTC"


TIMEZONE: str = _resolve_timezone()


class TimeoutConfig:
    """Timeout configuration for container execution (milliseconds)."""

    def __init__(
        self,
        container_timeout: int = CONTAINER_TIMEOUT,
        idle_timeout: int = IDLE_TIMEOUT,
        idle_grace: int = 30_000,
    ) -> None:
        self.container_timeout = container_timeout
        self.idle_timeout = idle_timeout
        self.idle_grace = idle_grace

    def get_hard_timeout(self) -> int:
        """Get the hard timeout (ensures idle timeout can trigger before hard kill)."""
        return max(self.container_timeout, self.idle_timeout + self.idle_grace)

    def for_group(self, group: object) -> TimeoutConfig:
        """Create a TimeoutConfig for a specific group, using group's custom timeout if set."""
        container_config = getattr(group, "container_config", None)
        group_timeout = (container_config.timeout if container_config and container_config.timeout else self.container_timeout)
        return TimeoutConfig(group_timeout, self.idle_timeout, self.idle_grace)
