"""Cooperative cancellation shared by every agent of one execution."""
from __future__ import annotations

import asyncio
import logging

from .errors import ExecutionCancelledError

logger = logging.getLogger(__name__)


class CancellationSignal:
    """One-shot flag observed at every suspension point.

    The top-level execution creates one signal; nested agents share
    it. Nothing is killed mid-instruction: loops check the flag and
    stop at their next await.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested%s", f": {reason}" if reason else "")

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise ExecutionCancelledError(where)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, aw, where: str = ""):
        """Await *aw* unless cancellation fires first.

        The losing awaitable is cancelled. Raises
        ExecutionCancelledError when the signal wins.
        """
        self.raise_if_cancelled(where)
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            logger.debug("Abandoned awaitable raised during cancellation")
        raise ExecutionCancelledError(where)
