"""Container runtime abstraction: a Protocol plus Docker and Podman implementations."""

from __future__ import annotations

import asyncio
import json
import shutil
from typing import Protocol

from corral.infrastructure.config import CONTAINER_RUNTIME
from corral.infrastructure.logger import logger


class ContainerRuntimeUnavailable(Exception):
    """The runtime binary is missing or its daemon does not answer."""


class ContainerRuntime(Protocol):
    """Interface for container runtimes (Docker, Podman)."""

    name: str

    @property
    def bin(self) -> str:
        """Path to the runtime binary (e.g. 'docker')."""
        ...

    def stop_args(self, container_name: str) -> list[str]: ...

    async def ensure_running(self) -> None: ...

    async def stop_container(self, container_name: str) -> None: ...

    async def cleanup_orphans(self, prefix: str) -> list[str]: ...


async def _exec(binary: str, *args: str, timeout_s: float = 15.0) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        binary,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, "timed out"
    return proc.returncode or 0, out.decode(errors="replace")


class _CliRuntime:
    """Shared behaviour for docker-compatible CLIs."""

    name = "docker"

    def __init__(self) -> None:
        self._bin = shutil.which(self.name) or self.name

    @property
    def bin(self) -> str:
        return self._bin

    def stop_args(self, container_name: str) -> list[str]:
        return ["stop", "-t", "10", container_name]

    async def ensure_running(self) -> None:
        """Fail fast at startup if the runtime cannot run containers."""
        try:
            code, out = await _exec(self._bin, "info", timeout_s=10.0)
        except FileNotFoundError as exc:
            raise ContainerRuntimeUnavailable(f"{self.name} binary not found") from exc
        if code != 0:
            raise ContainerRuntimeUnavailable(f"{self.name} is not running: {out.strip()[:200]}")
        logger.debug("Container runtime available", runtime=self.name)

    async def stop_container(self, container_name: str) -> None:
        code, out = await _exec(self._bin, *self.stop_args(container_name))
        if code != 0:
            logger.warning("Graceful stop failed, killing", container=container_name, output=out.strip()[:200])
            await _exec(self._bin, "kill", container_name)

    async def cleanup_orphans(self, prefix: str) -> list[str]:
        """Stop containers left behind by a previous run of this process."""
        code, out = await _exec(self._bin, "ps", "--filter", f"name={prefix}", "--format", "{{json .}}")
        if code != 0:
            logger.warning("Failed to list containers for orphan cleanup", output=out.strip()[:200])
            return []

        orphans: list[str] = []
        for line in out.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                info = json.loads(line)
            except json.JSONDecodeError:
                continue
            names = info.get("Names")
            name = names[0] if isinstance(names, list) and names else names
            if isinstance(name, str) and name.startswith(prefix):
                orphans.append(name)

        for name in orphans:
            await _exec(self._bin, *self.stop_args(name))
        if orphans:
            logger.info("Stopped orphaned containers", count=len(orphans), names=orphans)
        return orphans


class DockerRuntime(_CliRuntime):
    name = "docker"


class PodmanRuntime(_CliRuntime):
    name = "podman"


_RUNTIMES: dict[str, type[_CliRuntime]] = {"docker": DockerRuntime, "podman": PodmanRuntime}


def create_runtime(name: str = CONTAINER_RUNTIME) -> ContainerRuntime:
    """Pick the runtime once at startup. Unknown names raise ValueError."""
    try:
        return _RUNTIMES[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown container runtime: {name!r} (expected one of {sorted(_RUNTIMES)})") from None
