"""Anthropic Messages API provider over aiohttp.

Streams ``POST {base_url}/v1/messages`` with ``stream: true`` and runs
the response body through the SSE decoder. Non-2xx responses raise
ProviderError; connection failures raise StreamTransportError.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

import aiohttp

from ..cancellation import CancellationSignal
from ..config import EngineConfig
from ..errors import ProviderError, StreamTransportError
from ..stream_decoder import decode_sse
from .base import ModelProvider, ModelRequest

logger = logging.getLogger(__name__)


class AnthropicProvider(ModelProvider):
    """Talks to the Messages API directly.

    One aiohttp session is opened lazily and shared by every agent of
    the engine; call close() when done.
    """

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "anthropic"

    def is_available(self) -> bool:
        return bool(self._config.api_key or self._config.auth_token)

    @property
    def url(self) -> str:
        return f"{self._config.api_base_url.rstrip('/')}/v1/messages"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": self._config.anthropic_version,
        }
        if self._config.api_key:
            headers["x-api-key"] = self._config.api_key
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                sock_read=self._config.request_timeout_seconds,
                sock_connect=30,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def stream_message(
        self,
        request: ModelRequest,
        cancellation: CancellationSignal | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        payload = request.to_payload(
            self._config.model, self._config.max_tokens, stream=True,
        )
        session = await self._get_session()
        logger.debug(
            "Opening stream for %s (%d turns, %d tools, system=%s)",
            request.agent_type or "agent", len(request.turns),
            len(request.tools), bool(request.system_prompt),
        )
        try:
            async with session.post(
                self.url, json=payload, headers=self._headers(),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ProviderError(response.status, body)
                async for event in decode_sse(
                    response.content.iter_any(), cancellation,
                ):
                    yield event
        except aiohttp.ClientError as exc:
            raise StreamTransportError(str(exc) or type(exc).__name__) from exc
        except asyncio.TimeoutError as exc:
            raise StreamTransportError("timed out reading the response stream") from exc

    async def send_message(self, request: ModelRequest) -> dict[str, Any]:
        payload = request.to_payload(
            self._config.model,
            self._config.max_tokens_non_streaming,
            stream=False,
        )
        session = await self._get_session()
        try:
            async with session.post(
                self.url, json=payload, headers=self._headers(),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ProviderError(response.status, body)
                return await response.json()
        except aiohttp.ClientError as exc:
            raise StreamTransportError(str(exc) or type(exc).__name__) from exc
        except asyncio.TimeoutError as exc:
            raise StreamTransportError("timed out waiting for the response") from exc
