"""Wire codec contract shared by every provider adapter."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from gateway.exceptions import DecodeError, TransportError
from gateway.schema import ChatMessage, ChatOptions, ModelInfo, StreamChunk

if TYPE_CHECKING:
    from providers.client import ProviderClient

logger = logging.getLogger(__name__)


def expect_object(value: Any, what: str) -> dict:
    """Return `value` if it is a JSON object, else raise DecodeError."""
    if not isinstance(value, dict):
        raise DecodeError(f"{what} is not an object: {value!r:.80}")
    return value


def expect_list(value: Any, what: str) -> list:
    if not isinstance(value, list):
        raise DecodeError(f"{what} is not an array: {value!r:.80}")
    return value


def text_of(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass
class ProviderRequest:
    """A fully formed outbound HTTP request."""
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None


class ChunkReader:
    """Line reader over a streaming response body.

    Transport failures surface as TransportError. `state` holds per-stream
    decode state so codec instances can be shared between streams.
    """

    def __init__(self, stream):
        self._stream = stream
        self.state: dict[str, Any] = {}
        self.eof = False

    async def readline(self) -> str | None:
        """Return the next line without its terminator, or None at end of stream."""
        if self.eof:
            return None
        try:
            raw = await self._stream.readline()
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as exc:
            raise TransportError(f"stream read failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"stream line exceeds reader limit: {exc}") from exc
        if not raw:
            self.eof = True
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return raw.rstrip("\r\n")


class WireCodec(ABC):
    """Translate normalized chat requests and streams to one provider's wire format."""

    provider_type: str = ""
    default_base_url: str = ""

    def get_base_url(self, base_url: str) -> str:
        return (base_url or self.default_base_url).rstrip("/")

    @abstractmethod
    def build_chat_request(
        self,
        model: str,
        messages: list[ChatMessage],
        options: ChatOptions,
    ) -> ProviderRequest:
        """Build the outbound chat request."""

    @abstractmethod
    async def parse_stream_response(self, reader: ChunkReader) -> StreamChunk:
        """Decode the next chunk; `done=True` at logical end of stream or EOF."""

    @abstractmethod
    def decode_response(self, data: dict) -> StreamChunk:
        """Decode a complete non-streaming response body."""

    def build_models_request(self, base_url: str, api_key: str) -> ProviderRequest | None:
        """Request for the provider's model list; None means a fixed catalog."""
        return None

    def parse_models(self, data: Any) -> list[ModelInfo]:
        return []

    def static_models(self) -> list[ModelInfo]:
        return []

    async def fetch_models(
        self,
        client: "ProviderClient",
        base_url: str,
        api_key: str,
    ) -> list[ModelInfo]:
        request = self.build_models_request(base_url, api_key)
        if request is None:
            return self.static_models()
        data = await client.fetch_json(request)
        return self.parse_models(data)
