"""ProviderClient - async HTTP transport for provider requests."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiohttp

from gateway.exceptions import ProtocolError, TransportError
from gateway.schema import StreamChunk
from providers.base import ChunkReader, ProviderRequest, WireCodec

logger = logging.getLogger(__name__)


class ProviderClient:
    """Sends codec-built requests. Nothing is retried."""

    def __init__(self, connect_timeout: float = 10.0, read_timeout: float = 120.0):
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

    @asynccontextmanager
    async def open_stream(self, request: ProviderRequest) -> AsyncIterator[ChunkReader]:
        """Send a request and yield a reader over its streaming body.

        A non-2xx status raises ProtocolError carrying status and body.
        """
        async with aiohttp.ClientSession(timeout=self._timeout()) as session:
            try:
                resp = await session.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    json=request.body,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise TransportError(self._connection_error_message(request, exc)) from exc
            try:
                await self._raise_for_status(request, resp)
                yield ChunkReader(resp.content)
            finally:
                resp.release()

    async def fetch_json(self, request: ProviderRequest) -> Any:
        """Send a request and decode its JSON body."""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    json=request.body,
                ) as resp:
                    await self._raise_for_status(request, resp)
                    return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(self._connection_error_message(request, exc)) from exc
        except ValueError as exc:
            raise ProtocolError(f"invalid JSON from {_display_url(request.url)}: {exc}") from exc

    async def complete(self, codec: WireCodec, request: ProviderRequest) -> StreamChunk:
        """Non-streaming convenience: one request, one decoded chunk."""
        data = await self.fetch_json(request)
        if not isinstance(data, dict):
            raise ProtocolError(f"unexpected response shape from {_display_url(request.url)}")
        return codec.decode_response(data)

    async def _raise_for_status(self, request: ProviderRequest, resp: aiohttp.ClientResponse) -> None:
        if 200 <= resp.status < 300:
            return
        try:
            body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            body = f"<unreadable body: {exc}>"
        logger.warning("Provider request %s %s failed (HTTP %s)", request.method, _display_url(request.url), resp.status)
        raise ProtocolError(
            f"provider request failed (HTTP {resp.status}): {body}",
            status=resp.status,
            body=body,
        )

    def _timeout(self) -> aiohttp.ClientTimeout:
        """Build a client timeout configuration from settings."""
        return aiohttp.ClientTimeout(
            total=None,
            connect=self.connect_timeout,
            sock_connect=self.connect_timeout,
            sock_read=self.read_timeout,
        )

    @staticmethod
    def _connection_error_message(request: ProviderRequest, error: Exception) -> str:
        details = f"{error}" or error.__class__.__name__
        return f"cannot reach provider at {_display_url(request.url)}: {details}"


def _display_url(url: str) -> str:
    """Drop the query string, which may carry an API key."""
    return url.split("?", 1)[0]
