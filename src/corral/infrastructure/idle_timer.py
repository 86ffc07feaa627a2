"""Resettable idle timer using asyncio."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class IdleTimer:
    """Calls callback once timeout_s passes with no reset() call.

    Used to close a container's input after a quiet period, so a long-lived
    agent process can exit before the hard timeout.
    """

    def __init__(self, callback: Callable[[], Awaitable[None] | None], timeout_s: float) -> None:
        self._callback = callback
        self._timeout = timeout_s
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self) -> None:
        """Restart the countdown, dropping any pending callback."""
        if self._task:
            self._task.cancel()
        self._task = asyncio.create_task(self._fire())

    async def _fire(self) -> None:
        await asyncio.sleep(self._timeout)
        result = self._callback()
        if asyncio.iscoroutine(result):
            await result

    def clear(self) -> None:
        """Cancel the timer without firing the callback."""
        if self._task:
            self._task.cancel()
            self._task = None
