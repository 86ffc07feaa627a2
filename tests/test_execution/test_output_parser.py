"""Tests for the agent event stream parser."""

import json

from corral.execution.output_parser import ContainerOutputParser, parse_event_line


def line(**event) -> str:
    return json.dumps(event) + "\n"


class TestParseEventLine:
    def test_known_event(self):
        event = parse_event_line(line(type="init", sessionId="s1"))
        assert event is not None
        assert event.type == "init"
        assert event.session_id == "s1"

    def test_unknown_type_skipped(self):
        assert parse_event_line(line(type="tool_use", name="bash")) is None

    def test_non_json_skipped(self):
        assert parse_event_line("npm WARN something\n") is None
        assert parse_event_line("{not json\n") is None
        assert parse_event_line("") is None

    def test_non_object_skipped(self):
        assert parse_event_line("[1, 2, 3]") is None

    def test_error_subtype(self):
        event = parse_event_line(line(type="result", subtype="error_max_turns", result=None))
        assert event.is_error

    def test_structured_result_serialized(self):
        event = parse_event_line(line(type="result", result={"a": 1}))
        assert json.loads(event.result) == {"a": 1}


class TestContainerOutputParser:
    def test_init_reports_session(self):
        parser = ContainerOutputParser()
        output = parser.feed(line(type="init", sessionId="sess-123"))
        assert output is not None
        assert output.status == "success"
        assert output.result is None
        assert output.new_session_id == "sess-123"
        assert parser.session_id == "sess-123"

    def test_result_carries_text_and_session(self):
        parser = ContainerOutputParser()
        parser.feed(line(type="init", sessionId="sess-1"))
        output = parser.feed(line(type="result", subtype="success", result="Hello"))
        assert output.status == "success"
        assert output.result == "Hello"
        assert output.new_session_id == "sess-1"

    def test_session_update_marker(self):
        parser = ContainerOutputParser()
        output = parser.feed(line(type="result", result=None))
        assert output.status == "success"
        assert output.result is None

    def test_error_result(self):
        parser = ContainerOutputParser()
        output = parser.feed(line(type="result", subtype="error_during_execution", result="boom"))
        assert output.status == "error"
        assert output.error == "boom"

    def test_error_result_without_text_uses_subtype(self):
        parser = ContainerOutputParser()
        output = parser.feed(line(type="result", subtype="error_max_turns"))
        assert output.error == "error_max_turns"

    def test_assistant_turns_produce_nothing(self):
        parser = ContainerOutputParser()
        assert parser.feed(line(type="assistant", message="thinking")) is None
        assert parser.events_seen == 1

    def test_system_event_with_new_session(self):
        parser = ContainerOutputParser()
        parser.feed(line(type="init", sessionId="a"))
        assert parser.feed(line(type="system", sessionId="a")) is None
        output = parser.feed(line(type="system", sessionId="b"))
        assert output.new_session_id == "b"
        assert parser.session_id == "b"

    def test_garbage_between_events(self):
        parser = ContainerOutputParser()
        assert parser.feed("Starting agent...\n") is None
        parser.feed(line(type="init", sessionId="s"))
        assert parser.feed(line(type="progress", pct=50)) is None
        output = parser.feed(line(type="result", result="done"))
        assert output.result == "done"
        assert parser.events_seen == 2

    def test_multiple_results(self):
        parser = ContainerOutputParser()
        first = parser.feed(line(type="result", result="First"))
        second = parser.feed(line(type="result", result="Second"))
        assert first.result == "First"
        assert second.result == "Second"
