"""Tests for the container runner, using a shell script in place of the runtime CLI."""

import json
import stat
from pathlib import Path

import pytest

from corral.execution import container_runner as runner_module
from corral.execution.agent_backend import create_agent_backend
from corral.execution.container_runner import ContainerInput, ContainerRunner
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import TimeoutConfig


class ScriptRuntime:
    name = "fake"

    def __init__(self, binary: str):
        self._bin = binary
        self.stopped: list[str] = []

    @property
    def bin(self) -> str:
        return self._bin

    def stop_args(self, container_name: str) -> list[str]:
        return ["stop", container_name]

    async def ensure_running(self) -> None:
        return None

    async def stop_container(self, container_name: str) -> None:
        self.stopped.append(container_name)

    async def cleanup_orphans(self, prefix: str) -> list[str]:
        return []


def make_script(directory: Path, body: str) -> Path:
    script = directory / "fake-runtime"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return script


SUCCESS_BODY = """\
printf '%s\\n' "$@" > "$(dirname "$0")/args.txt"
read -r payload
printf '%s\\n' "$payload" > "$(dirname "$0")/stdin.json"
echo 'agent booting'
echo '{"type":"init","sessionId":"sess-1"}'
echo '{"type":"assistant"}'
echo '{"type":"result","subtype":"success","result":"Hello"}'
"""


@pytest.fixture
def group() -> RegisteredGroup:
    return RegisteredGroup(name="Team", folder="team", trigger="@Corral", added_at="2024-01-01T00:00:00+00:00")


@pytest.fixture
def container_input() -> ContainerInput:
    return ContainerInput(
        prompt="<messages></messages>",
        session_id="old-session",
        group_folder="team",
        chat_jid="team@g.us",
        is_main=False,
    )


def make_runner(script: Path, **kwargs) -> tuple[ContainerRunner, ScriptRuntime]:
    runtime = ScriptRuntime(str(script))
    runner = ContainerRunner(
        runtime=runtime,
        backend=kwargs.pop("backend", create_agent_backend("claude")),
        image="corral-agent:test",
        **kwargs,
    )
    return runner, runtime


class TestContainerRunner:
    @pytest.mark.asyncio
    async def test_streams_events_and_returns_final_result(self, workspace, group, container_input, monkeypatch):
        monkeypatch.chdir(workspace)
        (workspace / ".env").write_text("ANTHROPIC_API_KEY=sk-test-123\n")
        script = make_script(workspace, SUCCESS_BODY)
        runner, _ = make_runner(script)

        streamed = []
        registered = []

        async def on_output(output):
            streamed.append(output)

        output = await runner.run(
            group,
            container_input,
            on_process=lambda proc, name: registered.append(name),
            on_output=on_output,
        )

        assert output.status == "success"
        assert output.result == "Hello"
        assert output.new_session_id == "sess-1"
        assert [o.new_session_id for o in streamed] == ["sess-1", "sess-1"]
        assert streamed[-1].result == "Hello"
        assert registered and registered[0].startswith("corral-team-")

    @pytest.mark.asyncio
    async def test_secrets_go_over_stdin_only(self, workspace, group, container_input, monkeypatch):
        monkeypatch.chdir(workspace)
        (workspace / ".env").write_text("ANTHROPIC_API_KEY=sk-test-123\n")
        script = make_script(workspace, SUCCESS_BODY)
        runner, _ = make_runner(script)

        await runner.run(group, container_input)

        payload = json.loads((workspace / "stdin.json").read_text())
        args = (workspace / "args.txt").read_text()
        assert payload["secrets"] == {"ANTHROPIC_API_KEY": "sk-test-123"}
        assert payload["sessionId"] == "old-session"
        assert payload["groupFolder"] == "team"
        assert payload["isMain"] is False
        assert payload["provider"] == "claude"
        assert "sk-test-123" not in args
        assert args.splitlines()[:3] == ["run", "-i", "--rm"]
        assert args.splitlines()[-1] == "corral-agent:test"

    @pytest.mark.asyncio
    async def test_backend_without_resume_gets_no_session(self, workspace, group, container_input, monkeypatch):
        monkeypatch.chdir(workspace)
        script = make_script(workspace, SUCCESS_BODY)
        runner, _ = make_runner(script, backend=create_agent_backend("langchain"))

        await runner.run(group, container_input)

        payload = json.loads((workspace / "stdin.json").read_text())
        assert payload["sessionId"] is None
        assert payload["provider"] == "langchain"

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_an_error(self, workspace, group, container_input):
        script = make_script(
            workspace,
            """\
read -r payload
echo '{"type":"init","sessionId":"sess-2"}'
echo 'agent crashed' >&2
exit 3
""",
        )
        runner, _ = make_runner(script)

        output = await runner.run(group, container_input)

        assert output.status == "error"
        assert "code 3" in output.error
        assert "agent crashed" in output.error
        assert output.new_session_id == "sess-2"

    @pytest.mark.asyncio
    async def test_error_result_is_reported(self, workspace, group, container_input):
        script = make_script(
            workspace,
            """\
read -r payload
echo '{"type":"result","subtype":"error_during_execution","result":"model refused"}'
exit 1
""",
        )
        runner, _ = make_runner(script)

        output = await runner.run(group, container_input)

        assert output.status == "error"
        assert output.error == "model refused"

    @pytest.mark.asyncio
    async def test_hard_timeout_stops_container(self, workspace, group, container_input, monkeypatch):
        monkeypatch.setattr(runner_module, "STOP_GRACE_S", 0.2)
        script = make_script(workspace, "read -r payload\nexec sleep 30\n")
        runner, runtime = make_runner(script, timeout_config=TimeoutConfig(100, 0, 0))

        output = await runner.run(group, container_input)

        assert output.status == "error"
        assert "timed out" in output.error
        assert len(runtime.stopped) == 1
        assert runtime.stopped[0].startswith("corral-team-")

    @pytest.mark.asyncio
    async def test_output_overflow(self, workspace, group, container_input, monkeypatch):
        monkeypatch.setattr(runner_module, "STOP_GRACE_S", 0.2)
        body = "read -r payload\n" + "echo '" + "x" * 500 + "'\nexec sleep 30\n"
        script = make_script(workspace, body)
        runner, runtime = make_runner(script, max_output_size=100)

        output = await runner.run(group, container_input)

        assert output.status == "error"
        assert "exceeded 100 bytes" in output.error
        assert len(runtime.stopped) == 1

    @pytest.mark.asyncio
    async def test_unterminated_output_overflow_stops_container(self, workspace, group, container_input, monkeypatch):
        monkeypatch.setattr(runner_module, "STOP_GRACE_S", 0.2)
        body = "read -r payload\nhead -c 200000 /dev/zero | tr '\\0' x\nexec sleep 30\n"
        script = make_script(workspace, body)
        runner, runtime = make_runner(script, max_output_size=100)

        output = await runner.run(group, container_input)

        assert output.status == "error"
        assert "exceeded 100 bytes" in output.error
        assert len(runtime.stopped) == 1

    @pytest.mark.asyncio
    async def test_long_result_line_is_parsed(self, workspace, group, container_input):
        body = (
            "read -r payload\n"
            "printf '%s' '{\"type\":\"result\",\"subtype\":\"success\",\"result\":\"'\n"
            "head -c 100000 /dev/zero | tr '\\0' y\n"
            "printf '%s\\n' '\"}'\n"
        )
        script = make_script(workspace, body)
        runner, _ = make_runner(script)

        output = await runner.run(group, container_input)

        assert output.status == "success"
        assert output.result == "y" * 100000

    @pytest.mark.asyncio
    async def test_missing_runtime_binary(self, workspace, group, container_input):
        runner, _ = make_runner(workspace / "does-not-exist")

        output = await runner.run(group, container_input)

        assert output.status == "error"
        assert "Failed to start container" in output.error

    @pytest.mark.asyncio
    async def test_failing_output_handler_does_not_stop_the_run(self, workspace, group, container_input):
        script = make_script(workspace, SUCCESS_BODY)
        runner, _ = make_runner(script)

        async def on_output(output):
            raise RuntimeError("handler bug")

        output = await runner.run(group, container_input, on_output=on_output)

        assert output.status == "success"
        assert output.result == "Hello"

    @pytest.mark.asyncio
    async def test_writes_run_log(self, workspace, group, container_input):
        script = make_script(workspace, SUCCESS_BODY)
        runner, _ = make_runner(script)

        await runner.run(group, container_input)

        logs = list((workspace / "groups" / "team" / "logs").glob("container-*.log"))
        assert len(logs) == 1
        content = logs[0].read_text()
        assert "Status: success" in content
        assert "/workspace/group" in content


class TestContainerNaming:
    def test_unsafe_characters_replaced(self, workspace):
        runner, _ = make_runner(workspace / "bin")
        name = runner.container_name("my group/1")
        assert name.startswith("corral-my-group-1-")
