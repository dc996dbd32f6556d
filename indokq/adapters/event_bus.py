"""Queue between engine event callbacks and a frontend renderer.

An EventBus instance is itself the EngineConfig.event_callback: it turns
each event dict into a typed event and queues it. The renderer iterates
``consume()`` until the bus is closed and everything queued has been
delivered.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from indokq.adapters.events import OrchestratorEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Bounded queue of typed engine events with backpressure."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = asyncio.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def __call__(self, data: dict[str, Any]) -> None:
        await self.emit(dict_to_event(data))

    async def emit(self, event: OrchestratorEvent) -> None:
        """Queue *event*, waiting for room up to the put timeout."""
        if self.closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.error(
                "Event queue full for %.0fs, dropping %s (%d dropped so far)",
                self._put_timeout, event.event_type, self.dropped,
            )

    async def consume(self) -> AsyncIterator[OrchestratorEvent]:
        """Yield queued events; ends once closed and empty."""
        while True:
            if not self._queue.empty():
                yield self._queue.get_nowait()
                continue
            if self.closed:
                return
            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                closer.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                yield getter.result()

    def close(self) -> None:
        """Stop accepting events; consumers still get what is queued."""
        self._closed.set()
