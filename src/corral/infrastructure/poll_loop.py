"""Shared async polling loop abstraction."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from corral.infrastructure.logger import logger


class PollLoop:
    """Calls an async function at a fixed interval until stopped.

    Errors raised by the function are logged and the loop keeps going;
    cancellation ends it.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._interval = interval_s
        self._fn = fn
        self._task: asyncio.Task[None] | None = None
        self._stopped = True

    @property
    def running(self) -> bool:
        return not self._stopped

    def start(self) -> None:
        if not self._stopped:
            logger.debug(f"{self._name} loop already running, skipping duplicate start")
            return
        self._stopped = False
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self._name} loop started", interval_s=self._interval)

    def stop(self) -> None:
        self._stopped = True
        if self._task:
            self._task.cancel()
            self._task = None

    async def tick(self) -> None:
        """Run one iteration, logging instead of raising."""
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Error in {self._name} loop")

    async def _loop(self) -> None:
        while not self._stopped:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            if not self._stopped:
                await asyncio.sleep(self._interval)


def start_poll_loop(name: str, interval_s: float, fn: Callable[[], Awaitable[None]]) -> PollLoop:
    """Create and start a polling loop. Returns a handle to stop it."""
    loop = PollLoop(name, interval_s, fn)
    loop.start()
    return loop
