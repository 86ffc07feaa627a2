"""Control envelopes: one JSON file per cross-boundary request or event.

Files are named ``{epoch-millis}-{uuid4}.json`` so a plain sort is
chronological, and are always written through a temp file plus rename so a
reader never sees a partial document.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

CLOSE_SENTINEL = "_close"


class MalformedControlEnvelope(Exception):
    """An envelope file could not be parsed into a ControlEnvelope."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Malformed control envelope {path.name}: {reason}")
        self.path = path
        self.reason = reason


class ControlEnvelope(BaseModel):
    """``type`` discriminator plus arbitrary payload fields."""

    model_config = ConfigDict(extra="allow")

    type: str
    timestamp: str | None = None

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def envelope_filename(now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{now_ms}-{uuid.uuid4()}.json"


def write_envelope(directory: Path, data: dict[str, Any]) -> Path:
    """Atomically write one envelope into directory. Returns the final path.

    A ``timestamp`` is added when the caller did not supply one.
    """
    if "type" not in data:
        raise ValueError("Control envelope requires a 'type'")
    body = {**data}
    body.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    directory.mkdir(parents=True, exist_ok=True)
    final_path = directory / envelope_filename()
    temp_path = final_path.with_suffix(".json.tmp")
    temp_path.write_text(json.dumps(body))
    os.replace(temp_path, final_path)
    return final_path


def read_envelope(path: Path) -> ControlEnvelope:
    """Parse an envelope file. Raises MalformedControlEnvelope on bad content."""
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise MalformedControlEnvelope(path, f"invalid JSON ({exc.msg})") from exc
    except UnicodeDecodeError as exc:
        raise MalformedControlEnvelope(path, "not UTF-8 text") from exc
    if not isinstance(raw, dict):
        raise MalformedControlEnvelope(path, "top-level value is not an object")
    try:
        return ControlEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise MalformedControlEnvelope(path, "missing or invalid 'type'") from exc


def list_envelopes(directory: Path) -> list[Path]:
    """Finished envelope files in filename (chronological) order."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".json")
