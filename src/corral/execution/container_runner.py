"""ContainerRunner: spawns agent containers via async subprocess."""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from corral.execution.agent_backend import AgentBackend, create_agent_backend
from corral.execution.container_runtime import ContainerRuntime, create_runtime
from corral.execution.errors import ContainerError, ContainerFailure, ContainerTimeout, OutputOverflow
from corral.execution.mount_builder import DefaultMountFactory, MountFactory, VolumeMount, mount_args
from corral.execution.output_parser import ContainerOutput, ContainerOutputParser
from corral.groups.paths import GroupPaths
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import (
    ASSISTANT_NAME,
    CONTAINER_IMAGE,
    CONTAINER_MAX_OUTPUT_SIZE,
    CONTAINER_NAME_PREFIX,
    TimeoutConfig,
)
from corral.infrastructure.logger import logger

STDERR_TAIL_LINES = 50
STOP_GRACE_S = 5.0
READ_CHUNK_SIZE = 8192


@dataclass
class ContainerInput:
    prompt: str
    session_id: str | None
    group_folder: str
    chat_jid: str
    is_main: bool
    is_scheduled_task: bool = False


OnProcess = Callable[[asyncio.subprocess.Process, str], None]
OnOutput = Callable[[ContainerOutput], Awaitable[None]]


@dataclass
class _RunState:
    parser: ContainerOutputParser = field(default_factory=ContainerOutputParser)
    last_output: ContainerOutput = field(default_factory=ContainerOutput)
    stdout_bytes: int = 0
    truncated: bool = False
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))


def _safe_name(folder: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "-", folder)


class ContainerRunner:
    """Runs one agent container per call and streams its events back.

    Secrets are written to the container's stdin together with the prompt;
    they never appear in ``-e`` arguments or mounted files.
    """

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        mount_factory: MountFactory | None = None,
        timeout_config: TimeoutConfig | None = None,
        backend: AgentBackend | None = None,
        image: str = CONTAINER_IMAGE,
        max_output_size: int = CONTAINER_MAX_OUTPUT_SIZE,
    ) -> None:
        self._runtime = runtime or create_runtime()
        self._mount_factory = mount_factory or DefaultMountFactory()
        self._timeout = timeout_config or TimeoutConfig()
        self._backend = backend or create_agent_backend()
        self._image = image
        self._max_output_size = max_output_size

    @property
    def backend(self) -> AgentBackend:
        return self._backend

    def container_name(self, group_folder: str) -> str:
        return f"{CONTAINER_NAME_PREFIX}{_safe_name(group_folder)}-{int(time.time() * 1000)}"

    def build_args(self, container_name: str, mounts: list[VolumeMount]) -> list[str]:
        return ["run", "-i", "--rm", "--name", container_name, *mount_args(mounts), self._image]

    def build_stdin_payload(self, input_data: ContainerInput, secrets: dict[str, str]) -> bytes:
        payload = {
            "prompt": input_data.prompt,
            "sessionId": input_data.session_id if self._backend.supports_resume else None,
            "groupFolder": input_data.group_folder,
            "chatJid": input_data.chat_jid,
            "isMain": input_data.is_main,
            "isScheduledTask": input_data.is_scheduled_task,
            "assistantName": ASSISTANT_NAME,
            **self._backend.input_fields(),
            "secrets": secrets,
        }
        return json.dumps(payload).encode() + b"\n"

    async def run(
        self,
        group: RegisteredGroup,
        input_data: ContainerInput,
        on_process: OnProcess | None = None,
        on_output: OnOutput | None = None,
    ) -> ContainerOutput:
        """Run a container to completion and return its final output.

        Timeouts, output overflow and non-zero exits never raise; they come
        back as an output with ``status="error"``.
        """
        container_name = self.container_name(group.folder)
        mounts = self._mount_factory.build_mounts(group, input_data.is_main)
        hard_timeout_s = self._timeout.for_group(group).get_hard_timeout() / 1000
        secrets = self._backend.read_secrets()

        logger.info(
            "Starting container",
            name=container_name,
            group=group.name,
            image=self._image,
            mounts=len(mounts),
            backend=self._backend.name,
        )

        started = time.monotonic()
        state = _RunState()
        exit_code: int | None = None
        try:
            proc = await asyncio.create_subprocess_exec(
                self._runtime.bin,
                *self.build_args(container_name, mounts),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            output = ContainerOutput(status="error", error=f"Failed to start container: {err}")
            logger.error("Container failed to start", name=container_name, error=str(err))
            self._write_run_log(group, container_name, mounts, None, started, output, state)
            return output

        if on_process:
            on_process(proc, container_name)

        try:
            await self._write_stdin(proc, self.build_stdin_payload(input_data, secrets))
            exit_code = await self._supervise(proc, container_name, state, hard_timeout_s, on_output)
            output = state.last_output
            output.new_session_id = state.parser.session_id or output.new_session_id
        except ContainerError as err:
            exit_code = proc.returncode
            logger.error("Container run failed", name=container_name, group=group.name, error=str(err))
            output = ContainerOutput(status="error", error=str(err), new_session_id=state.parser.session_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Container finished",
            name=container_name,
            status=output.status,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        self._write_run_log(group, container_name, mounts, exit_code, started, output, state)
        return output

    async def _write_stdin(self, proc: asyncio.subprocess.Process, data: bytes) -> None:
        assert proc.stdin is not None
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as err:
            # Process died before reading; exit code tells the rest
            logger.warning("Container closed stdin early", error=str(err))

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        container_name: str,
        state: _RunState,
        hard_timeout_s: float,
        on_output: OnOutput | None,
    ) -> int:
        """Stream events until exit. Raises ContainerTimeout, OutputOverflow or ContainerFailure."""

        async def handle_line(raw_line: bytes) -> None:
            output = state.parser.feed(raw_line.decode(errors="replace"))
            if output is None:
                return
            state.last_output = output
            if on_output:
                try:
                    await on_output(output)
                except Exception:
                    logger.exception("Output handler failed", name=container_name)

        async def read_stdout() -> None:
            # Chunked so one unterminated line cannot outgrow the reader buffer
            assert proc.stdout is not None
            pending = bytearray()
            while chunk := await proc.stdout.read(READ_CHUNK_SIZE):
                state.stdout_bytes += len(chunk)
                if state.stdout_bytes > self._max_output_size:
                    state.truncated = True
                    raise OutputOverflow(
                        f"Container output exceeded {self._max_output_size} bytes",
                        container_name,
                    )
                pending += chunk
                if b"\n" not in chunk:
                    continue
                *lines, rest = bytes(pending).split(b"\n")
                pending = bytearray(rest)
                for raw_line in lines:
                    await handle_line(raw_line)
            if pending:
                await handle_line(bytes(pending))

        def log_stderr(raw_line: bytes) -> None:
            line = raw_line.decode(errors="replace").rstrip()
            if line:
                state.stderr_tail.append(line)
                logger.debug("Container stderr", name=container_name, line=line)

        async def read_stderr() -> None:
            assert proc.stderr is not None
            pending = b""
            while chunk := await proc.stderr.read(READ_CHUNK_SIZE):
                *lines, pending = (pending + chunk).split(b"\n")
                # A runaway line is logged in pieces rather than buffered whole
                if len(pending) > READ_CHUNK_SIZE:
                    lines.append(pending)
                    pending = b""
                for raw_line in lines:
                    log_stderr(raw_line)
            log_stderr(pending)

        stdout_task = asyncio.ensure_future(read_stdout())
        stderr_task = asyncio.ensure_future(read_stderr())
        wait_task = asyncio.ensure_future(proc.wait())
        tasks = [stdout_task, stderr_task, wait_task]

        try:
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=hard_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Container hard timeout, stopping", name=container_name, timeout_s=hard_timeout_s)
            await self._force_stop(proc, container_name)
            raise ContainerTimeout(f"Container timed out after {hard_timeout_s:.0f}s", container_name) from None
        except OutputOverflow:
            logger.warning("Container output overflow, stopping", name=container_name)
            await self._force_stop(proc, container_name)
            raise
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        exit_code = proc.returncode
        if exit_code and state.last_output.status != "error":
            tail = "\n".join(list(state.stderr_tail)[-5:])
            raise ContainerFailure(
                f"Container exited with code {exit_code}" + (f": {tail}" if tail else ""),
                container_name,
                exit_code,
            )
        return exit_code or 0

    async def _force_stop(self, proc: asyncio.subprocess.Process, container_name: str) -> None:
        try:
            await self._runtime.stop_container(container_name)
        except OSError as err:
            logger.warning("Runtime stop failed", name=container_name, error=str(err))
        try:
            await asyncio.wait_for(proc.wait(), timeout=STOP_GRACE_S)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    def _write_run_log(
        self,
        group: RegisteredGroup,
        container_name: str,
        mounts: list[VolumeMount],
        exit_code: int | None,
        started: float,
        output: ContainerOutput,
        state: _RunState,
    ) -> None:
        logs_dir = GroupPaths.logs_dir(group.folder)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
        lines = [
            "=== Container Run Log ===",
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
            f"Group: {group.name}",
            f"Container: {container_name}",
            f"Duration: {int((time.monotonic() - started) * 1000)}ms",
            f"Exit Code: {exit_code}",
            f"Status: {output.status}",
            f"Stdout Bytes: {state.stdout_bytes}" + (" (truncated)" if state.truncated else ""),
        ]
        if output.error:
            lines.append(f"Error: {output.error}")
        lines.append("")
        lines.append("=== Mounts ===")
        lines.extend(f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts)
        if state.stderr_tail:
            lines.append("")
            lines.append("=== Stderr (tail) ===")
            lines.extend(state.stderr_tail)
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            (logs_dir / f"container-{stamp}.log").write_text("\n".join(lines) + "\n")
        except OSError as err:
            logger.warning("Failed to write container run log", group=group.folder, error=str(err))
