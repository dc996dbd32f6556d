"""Server-sent event decoding for model response streams.

The provider delivers ``data: {...}`` lines over an HTTP body whose
chunks may split anywhere, including inside a multi-byte character.
``SSEDecoder`` frames lines incrementally; ``decode_sse`` drives it
from an async chunk source and stops on cancellation.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from .cancellation import CancellationSignal
from .errors import ExecutionCancelledError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


class SSEDecoder:
    """Incremental line framer for ``data:`` events."""

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.dropped = 0

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        """Consume a chunk and return every event completed by it."""
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the source has closed."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        events = []
        for line in tail.split("\n"):
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        line = line.rstrip("\r")
        if not line.startswith(_DATA_PREFIX):
            # Blank separators, "event:" lines and ":" comments
            return None
        payload = line[len(_DATA_PREFIX):].strip()
        if not payload or payload == DONE_SENTINEL:
            return None
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self.dropped += 1
            logger.debug("Dropping malformed SSE payload: %.200s", payload)
            return None
        if not isinstance(event, dict):
            self.dropped += 1
            logger.debug("Dropping non-object SSE payload: %.200s", payload)
            return None
        return event


async def decode_sse(
    chunks: AsyncIterable[bytes | str],
    cancellation: CancellationSignal | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield protocol events decoded from *chunks*.

    Ends when the source closes or *cancellation* fires. Each pending
    read is raced against the signal so a stalled connection does not
    hold up cancellation.
    """
    decoder = SSEDecoder()
    iterator = chunks.__aiter__()
    try:
        while True:
            if cancellation is not None and cancellation.is_cancelled:
                return
            try:
                if cancellation is None:
                    chunk = await iterator.__anext__()
                else:
                    chunk = await cancellation.race(
                        iterator.__anext__(), "stream read",
                    )
            except StopAsyncIteration:
                break
            except ExecutionCancelledError:
                return
            for event in decoder.feed(chunk):
                yield event
        for event in decoder.flush():
            yield event
    finally:
        if decoder.dropped:
            logger.debug("SSE decoder dropped %d malformed payloads", decoder.dropped)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError:
                logger.debug("Chunk source could not be closed", exc_info=True)
