"""Tests for the message processor: polling, triggers and cursor rollback."""

import pytest

from corral.execution.output_parser import ContainerOutput
from corral.groups.types import RegisteredGroup
from corral.infrastructure.config import ASSISTANT_NAME
from corral.messaging.channel_registry import ChannelRegistry
from corral.messaging.poller import MessageProcessor, has_admin_sender, has_trigger
from corral.messaging.types import NewMessage
from corral.state import OrchestratorState


class FakeChannel:
    name = "fake"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []

    async def connect(self) -> None:
        pass

    async def send_message(self, jid: str, text: str) -> None:
        self.sent.append((jid, text))

    def is_connected(self) -> bool:
        return True

    def owns_jid(self, jid: str) -> bool:
        return jid.endswith("@g.us")

    async def disconnect(self) -> None:
        pass

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        self.typing.append((jid, is_typing))


class FakeQueue:
    def __init__(self, accept_pipe: bool = False):
        self.accept_pipe = accept_pipe
        self.piped: list[tuple[str, str]] = []
        self.enqueued: list[str] = []
        self.closed: list[str] = []

    def send_message(self, jid: str, text: str) -> bool:
        if self.accept_pipe:
            self.piped.append((jid, text))
        return self.accept_pipe

    def enqueue_message_check(self, jid: str) -> None:
        self.enqueued.append(jid)

    def close_stdin(self, jid: str) -> None:
        self.closed.append(jid)


class FakeExecutor:
    def __init__(self, outputs=(), status="success"):
        self.outputs = list(outputs)
        self.status = status
        self.calls = []

    async def execute(self, group, prompt, chat_jid, on_output=None, run_as_main=False):
        self.calls.append({"group": group.folder, "prompt": prompt, "run_as_main": run_as_main})
        for output in self.outputs:
            await on_output(output)
        return self.status


def make_group(folder: str, **kwargs) -> RegisteredGroup:
    return RegisteredGroup(
        name=folder.title(), folder=folder, trigger="@Corral", added_at="2024-01-01T00:00:00+00:00", **kwargs
    )


def msg(id: str, content: str, timestamp: str, chat_jid: str = "team@g.us", sender: str = "bob@s.whatsapp.net") -> NewMessage:
    return NewMessage(
        id=id, chat_jid=chat_jid, sender=sender, sender_name=sender.split("@")[0], content=content, timestamp=timestamp,
    )


class Harness:
    def __init__(self, db, executor=None, queue=None):
        self.db = db
        self.state = OrchestratorState(db)
        self.state.register_group("team@g.us", make_group("team", admin_users=["alice@s.whatsapp.net"]))
        self.state.register_group("main@g.us", make_group("main"))
        self.channel = FakeChannel()
        registry = ChannelRegistry()
        registry.register(self.channel)
        self.queue = queue or FakeQueue()
        self.executor = executor or FakeExecutor()
        self.processor = MessageProcessor(
            self.state, registry, self.queue, self.executor, db.message_repo, idle_timeout_s=60,
        )

    def store(self, *messages: NewMessage) -> None:
        for m in messages:
            self.db.message_repo.store_message(m)


@pytest.fixture
def make_harness(db, workspace):
    def _make(**kwargs) -> Harness:
        return Harness(db, **kwargs)
    return _make


class TestTriggers:
    def test_trigger_at_start_case_insensitive(self):
        group = make_group("team")
        assert has_trigger([msg("1", "@corral what's up", "t1")], group)
        assert not has_trigger([msg("1", "hey @Corral", "t1")], group)
        assert not has_trigger([msg("1", "@Corralling cats", "t1")], group)

    def test_trigger_not_required(self):
        group = make_group("solo", requires_trigger=False)
        assert has_trigger([msg("1", "anything", "t1")], group)

    def test_admin_sender(self):
        group = make_group("team", admin_users=["alice@s.whatsapp.net"])
        assert has_admin_sender([msg("1", "hi", "t1", sender="alice@s.whatsapp.net")], group)
        assert not has_admin_sender([msg("1", "hi", "t1")], group)
        assert not has_admin_sender([msg("1", "hi", "t1")], make_group("plain"))


class TestProcessGroupMessages:
    @pytest.mark.asyncio
    async def test_success_delivers_output_and_advances_cursor(self, make_harness):
        h = make_harness(executor=FakeExecutor([ContainerOutput(result="Hi <internal>plan</internal>Bob")]))
        h.store(msg("1", "@Corral hello", "2024-01-01T00:00:01+00:00"))

        assert await h.processor.process_group_messages("team@g.us") is True

        assert h.channel.sent == [("team@g.us", f"{ASSISTANT_NAME}: Hi Bob")]
        assert h.state.get_cursor("team@g.us") == "2024-01-01T00:00:01+00:00"
        assert "@Corral hello" in h.executor.calls[0]["prompt"]
        assert h.executor.calls[0]["run_as_main"] is False
        assert h.channel.typing[0] == ("team@g.us", True)
        assert h.channel.typing[-1] == ("team@g.us", False)

    @pytest.mark.asyncio
    async def test_error_without_output_rolls_back(self, make_harness):
        h = make_harness(executor=FakeExecutor(status="error"))
        h.state.set_cursor("team@g.us", "2024-01-01T00:00:00+00:00")
        h.store(msg("1", "@Corral hello", "2024-01-01T00:00:01+00:00"))

        assert await h.processor.process_group_messages("team@g.us") is False
        assert h.state.get_cursor("team@g.us") == "2024-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_error_after_output_keeps_cursor(self, make_harness):
        outputs = [ContainerOutput(result="partial answer"), ContainerOutput(status="error", error="boom")]
        h = make_harness(executor=FakeExecutor(outputs, status="error"))
        h.store(msg("1", "@Corral hello", "2024-01-01T00:00:01+00:00"))

        assert await h.processor.process_group_messages("team@g.us") is True
        assert h.channel.sent == [("team@g.us", f"{ASSISTANT_NAME}: partial answer")]
        assert h.state.get_cursor("team@g.us") == "2024-01-01T00:00:01+00:00"

    @pytest.mark.asyncio
    async def test_without_trigger_agent_not_run(self, make_harness):
        h = make_harness()
        h.store(msg("1", "just chatting", "2024-01-01T00:00:01+00:00"))

        assert await h.processor.process_group_messages("team@g.us") is True
        assert h.executor.calls == []
        assert h.state.get_cursor("team@g.us") == ""

    @pytest.mark.asyncio
    async def test_main_group_needs_no_trigger(self, make_harness):
        h = make_harness()
        h.store(msg("1", "status?", "2024-01-01T00:00:01+00:00", chat_jid="main@g.us"))

        await h.processor.process_group_messages("main@g.us")

        assert h.executor.calls[0]["group"] == "main"

    @pytest.mark.asyncio
    async def test_admin_sender_elevates_run(self, make_harness):
        h = make_harness()
        h.store(msg("1", "@Corral deploy", "2024-01-01T00:00:01+00:00", sender="alice@s.whatsapp.net"))

        await h.processor.process_group_messages("team@g.us")

        assert h.executor.calls[0]["run_as_main"] is True

    @pytest.mark.asyncio
    async def test_unknown_group_is_noop(self, make_harness):
        h = make_harness()
        assert await h.processor.process_group_messages("stranger@g.us") is True
        assert h.executor.calls == []


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_triggered_message_enqueued(self, make_harness):
        h = make_harness()
        h.store(msg("1", "@Corral hi", "2024-01-01T00:00:01+00:00"))

        await h.processor.poll_once()

        assert h.queue.enqueued == ["team@g.us"]
        assert h.state.last_timestamp == "2024-01-01T00:00:01+00:00"
        assert h.state.get_cursor("team@g.us") == ""

    @pytest.mark.asyncio
    async def test_pipes_into_active_container(self, make_harness):
        h = make_harness(queue=FakeQueue(accept_pipe=True))
        h.store(
            msg("1", "context first", "2024-01-01T00:00:01+00:00"),
            msg("2", "@Corral and now", "2024-01-01T00:00:02+00:00"),
        )

        await h.processor.poll_once()

        assert h.queue.enqueued == []
        [(jid, text)] = h.queue.piped
        assert jid == "team@g.us"
        assert "context first" in text and "and now" in text
        assert h.state.get_cursor("team@g.us") == "2024-01-01T00:00:02+00:00"

    @pytest.mark.asyncio
    async def test_untriggered_messages_wait(self, make_harness):
        h = make_harness()
        h.store(msg("1", "no mention", "2024-01-01T00:00:01+00:00"))

        await h.processor.poll_once()

        assert h.queue.enqueued == []
        assert h.state.last_timestamp == "2024-01-01T00:00:01+00:00"

    @pytest.mark.asyncio
    async def test_unregistered_chats_ignored(self, make_harness):
        h = make_harness()
        h.store(msg("1", "@Corral hi", "2024-01-01T00:00:01+00:00", chat_jid="stranger@g.us"))

        await h.processor.poll_once()

        assert h.queue.enqueued == []


class TestRecovery:
    def test_pending_messages_reenqueued(self, make_harness):
        h = make_harness()
        h.store(
            msg("1", "@Corral left over", "2024-01-01T00:00:01+00:00"),
            msg("2", "chit chat", "2024-01-01T00:00:01+00:00", chat_jid="main@g.us"),
        )

        h.processor.recover_pending_messages()

        assert sorted(h.queue.enqueued) == ["main@g.us", "team@g.us"]
