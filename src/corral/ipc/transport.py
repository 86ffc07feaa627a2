"""File-based IPC write operations."""

from __future__ import annotations

from corral.groups.paths import GroupPaths
from corral.infrastructure.logger import logger
from corral.ipc.envelope import CLOSE_SENTINEL, write_envelope


class IpcTransport:
    """Host-side writer for a running container's input directory.

    Follow-up messages become ``message`` envelopes the agent picks up between
    turns; the close sentinel tells it to finish and exit.
    """

    def send_message(self, group_folder: str, text: str) -> bool:
        """Write a message envelope for the container to read."""
        try:
            write_envelope(GroupPaths.ipc_input_dir(group_folder), {"type": "message", "text": text})
        except OSError as err:
            logger.warning("Failed to send follow-up via IPC", error=str(err), group_folder=group_folder)
            return False
        return True

    def close_stdin(self, group_folder: str) -> None:
        """Write the close sentinel to signal the container to wind down."""
        input_dir = GroupPaths.ipc_input_dir(group_folder)
        try:
            input_dir.mkdir(parents=True, exist_ok=True)
            (input_dir / CLOSE_SENTINEL).write_text("")
        except OSError as err:
            logger.warning("Failed to write close sentinel", error=str(err), group_folder=group_folder)

    def clear_input(self, group_folder: str) -> None:
        """Remove leftovers from a previous run so a fresh container starts clean."""
        input_dir = GroupPaths.ipc_input_dir(group_folder)
        if not input_dir.is_dir():
            return
        for f in input_dir.iterdir():
            if f.is_file():
                f.unlink(missing_ok=True)
