"""OpenAI chat-completions codec (SSE `data:` lines)."""

from __future__ import annotations

import json
import logging
from typing import Any

from gateway.exceptions import DecodeError, ProtocolError
from gateway.schema import (
    ROLE_TOOL,
    ChatMessage,
    ChatOptions,
    ModelInfo,
    StreamChunk,
    ToolCall,
)
from providers.base import ChunkReader, ProviderRequest, WireCodec, expect_list, expect_object, text_of

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class OpenAICodec(WireCodec):
    provider_type = "openai"
    default_base_url = "https://api.openai.com"

    def get_base_url(self, base_url: str) -> str:
        base = super().get_base_url(base_url)
        if not base.endswith("/v1"):
            base += "/v1"
        return base

    def build_chat_request(
        self,
        model: str,
        messages: list[ChatMessage],
        options: ChatOptions,
    ) -> ProviderRequest:
        body = {"model": model, **self._build_body(messages, options)}
        return ProviderRequest(
            method="POST",
            url=f"{self.get_base_url(options.base_url)}/chat/completions",
            headers=self._headers(options.api_key),
            body=body,
        )

    def _build_body(self, messages: list[ChatMessage], options: ChatOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": [self._render_message(m) for m in messages],
            "stream": options.stream,
        }
        if options.temperature > 0:
            body["temperature"] = options.temperature
        if options.max_tokens > 0:
            body["max_tokens"] = options.max_tokens
        if options.tools:
            body["tools"] = [tool.to_dict() for tool in options.tools]
        if options.stream:
            body["stream_options"] = {"include_usage": True}
        return body

    def _headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _render_message(message: ChatMessage) -> dict[str, Any]:
        data = message.to_dict()
        if message.role == ROLE_TOOL:
            data.pop("name", None)
        return data

    async def parse_stream_response(self, reader: ChunkReader) -> StreamChunk:
        while True:
            line = await reader.readline()
            if line is None:
                return StreamChunk(done=True)
            line = line.strip()
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if payload == DONE_SENTINEL:
                return StreamChunk(done=True)
            try:
                event = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed SSE payload: %.200s", payload)
                continue
            if not isinstance(event, dict):
                continue
            if event.get("error"):
                raise ProtocolError(f"provider stream error: {event['error']}")
            try:
                chunk = self._decode_choice(event, "delta")
            except DecodeError as exc:
                logger.debug("Skipping malformed SSE event: %s", exc)
                continue
            if chunk is not None:
                return chunk

    @staticmethod
    def _decode_choice(data: dict, key: str) -> StreamChunk | None:
        choices = data.get("choices") or []
        if not choices:
            return None
        choice = expect_object(expect_list(choices, "choices")[0], "choice")
        body = expect_object(choice.get(key) or {}, key)
        tool_calls = []
        for i, tc in enumerate(expect_list(body.get("tool_calls") or [], "tool_calls")):
            expect_object(expect_object(tc, "tool call").get("function") or {}, "tool call function")
            tool_calls.append(ToolCall.from_dict(tc, default_index=i))
        return StreamChunk(
            content=text_of(body.get("content")),
            tool_calls=tool_calls,
            finish_reason=text_of(choice.get("finish_reason")),
        )

    def decode_response(self, data: dict) -> StreamChunk:
        if data.get("error"):
            raise ProtocolError(f"provider error: {data['error']}")
        chunk = self._decode_choice(data, "message") or StreamChunk()
        chunk.done = True
        return chunk

    def build_models_request(self, base_url: str, api_key: str) -> ProviderRequest:
        return ProviderRequest(
            method="GET",
            url=f"{self.get_base_url(base_url)}/models",
            headers=self._headers(api_key),
        )

    def parse_models(self, data: Any) -> list[ModelInfo]:
        entries = data.get("data", []) if isinstance(data, dict) else []
        models = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            models.append(ModelInfo(
                id=entry["id"],
                name=entry["id"],
                object=entry.get("object", "model"),
                owned_by=entry.get("owned_by", ""),
            ))
        return models
