"""Line-delimited JSON event protocol spoken by the agent process on stdout.

Every line is one self-contained event with a ``type``:

* ``init``: a session started; carries ``sessionId`` for later resumption.
* ``assistant``: a turn marker, nothing for the host to do.
* ``result``: terminal text for one turn (``null`` for a session-update marker).
  A ``subtype`` beginning with ``error`` marks a failed turn.
* ``system``: auxiliary notification, may carry a new ``sessionId``.

Lines that are not JSON objects, and event types this host does not know,
are skipped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

EVENT_TYPES = frozenset({"init", "assistant", "result", "system"})


@dataclass
class AgentEvent:
    type: str
    session_id: str | None = None
    result: str | None = None
    subtype: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.type == "result" and bool(self.subtype) and self.subtype.startswith("error")


@dataclass
class ContainerOutput:
    status: Literal["success", "error"] = "success"
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None


def parse_event_line(line: str) -> AgentEvent | None:
    """Parse one stdout line. Returns None for anything that is not a known event."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("type") not in EVENT_TYPES:
        return None

    result = data.get("result")
    if result is not None and not isinstance(result, str):
        result = json.dumps(result)

    session_id = data.get("sessionId")
    return AgentEvent(
        type=data["type"],
        session_id=session_id if isinstance(session_id, str) else None,
        result=result,
        subtype=data.get("subtype") if isinstance(data.get("subtype"), str) else None,
        data=data,
    )


class ContainerOutputParser:
    """Turns the event stream into ContainerOutput updates for the caller."""

    def __init__(self) -> None:
        self.session_id: str | None = None
        self.events_seen = 0

    def feed(self, line: str) -> ContainerOutput | None:
        """Feed one line of stdout. Returns an output for init, result and session-changing system events."""
        event = parse_event_line(line)
        if event is None:
            return None
        self.events_seen += 1

        if event.type in ("init", "system"):
            if not event.session_id or event.session_id == self.session_id:
                return None
            self.session_id = event.session_id
            return ContainerOutput(status="success", result=None, new_session_id=event.session_id)

        if event.type == "result":
            if event.is_error:
                return ContainerOutput(
                    status="error",
                    result=None,
                    new_session_id=self.session_id,
                    error=event.result or event.subtype,
                )
            return ContainerOutput(status="success", result=event.result, new_session_id=self.session_id)

        return None
