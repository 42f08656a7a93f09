"""Anthropic Messages API codec (typed SSE events)."""

from __future__ import annotations

import json
import logging
from typing import Any

from gateway.exceptions import DecodeError, ProtocolError
from gateway.schema import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    ChatMessage,
    ChatOptions,
    ModelInfo,
    PartKind,
    StreamChunk,
    ToolCall,
    ToolFunction,
    message_parts,
)
from providers.base import ChunkReader, ProviderRequest, WireCodec, expect_list, expect_object, text_of

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

MODELS = [
    ("claude-opus-4-6", "Claude Opus 4.6"),
    ("claude-opus-4-5", "Claude Opus 4.5"),
    ("claude-sonnet-4-5", "Claude Sonnet 4.5"),
    ("claude-haiku-4-5", "Claude Haiku 4.5"),
    ("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet"),
    ("claude-3-5-haiku-20241022", "Claude 3.5 Haiku"),
    ("claude-3-opus-20240229", "Claude 3 Opus"),
    ("claude-3-sonnet-20240229", "Claude 3 Sonnet"),
    ("claude-3-haiku-20240307", "Claude 3 Haiku"),
]


class AnthropicCodec(WireCodec):
    provider_type = "anthropic"
    default_base_url = "https://api.anthropic.com"

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
        system_parts = [m.content for m in messages if m.role == ROLE_SYSTEM and m.content]
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens if options.max_tokens > 0 else DEFAULT_MAX_TOKENS,
            "messages": self._render_messages(messages),
            "stream": options.stream,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if options.temperature > 0:
            body["temperature"] = options.temperature
        if options.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in options.tools
            ]
        return ProviderRequest(
            method="POST",
            url=f"{self.get_base_url(options.base_url)}/messages",
            headers={
                "Content-Type": "application/json",
                "x-api-key": options.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body=body,
        )

    def _render_messages(self, messages: list[ChatMessage]) -> list[dict]:
        rendered: list[dict] = []
        for message in messages:
            if message.role == ROLE_SYSTEM:
                continue
            if message.role == ROLE_USER:
                rendered.append({
                    "role": "user",
                    "content": [{"type": "text", "text": message.content}],
                })
                continue
            blocks = [self._render_part(part) for part in message_parts(message)]
            if message.role == ROLE_TOOL:
                previous = rendered[-1] if rendered else None
                if previous and previous["role"] == "user" and all(
                    block["type"] == "tool_result" for block in previous["content"]
                ):
                    previous["content"].extend(blocks)
                else:
                    rendered.append({"role": "user", "content": blocks})
            elif message.role == ROLE_ASSISTANT:
                rendered.append({"role": "assistant", "content": blocks})
        return rendered

    @staticmethod
    def _render_part(part) -> dict:
        if part.kind == PartKind.TEXT:
            return {"type": "text", "text": part.text}
        if part.kind == PartKind.TOOL_USE:
            return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.input}
        return {"type": "tool_result", "tool_use_id": part.tool_use_id, "content": part.content}

    async def parse_stream_response(self, reader: ChunkReader) -> StreamChunk:
        while True:
            line = await reader.readline()
            if line is None:
                return StreamChunk(done=True)
            line = line.strip()
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if not payload:
                continue
            try:
                event = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed Anthropic event: %.200s", payload)
                continue
            if not isinstance(event, dict):
                continue
            if event.get("type") == "error":
                error = event.get("error")
                message = error.get("message") if isinstance(error, dict) else error
                raise ProtocolError(f"anthropic API error: {message or payload}")
            try:
                chunk = self._decode_event(event)
            except DecodeError as exc:
                logger.debug("Skipping malformed Anthropic event: %s", exc)
                continue
            if chunk is not None:
                return chunk

    @staticmethod
    def _decode_event(event: dict) -> StreamChunk | None:
        event_type = event.get("type")
        index = event.get("index")
        index = index if isinstance(index, int) else 0
        if event_type == "content_block_start":
            block = expect_object(event.get("content_block") or {}, "content_block")
            if block.get("type") == "tool_use":
                return StreamChunk(tool_calls=[ToolCall(
                    index=index,
                    id=text_of(block.get("id")),
                    function=ToolFunction(name=text_of(block.get("name"))),
                )])
        elif event_type == "content_block_delta":
            delta = expect_object(event.get("delta") or {}, "delta")
            if delta.get("type") == "text_delta":
                return StreamChunk(content=text_of(delta.get("text")))
            if delta.get("type") == "input_json_delta":
                return StreamChunk(tool_calls=[ToolCall(
                    index=index,
                    function=ToolFunction(arguments=text_of(delta.get("partial_json"))),
                )])
        elif event_type == "message_delta":
            stop_reason = text_of(expect_object(event.get("delta") or {}, "delta").get("stop_reason"))
            if stop_reason:
                return StreamChunk(finish_reason=stop_reason)
        elif event_type == "message_stop":
            return StreamChunk(done=True)
        return None

    def decode_response(self, data: dict) -> StreamChunk:
        if data.get("type") == "error":
            raise ProtocolError(f"anthropic API error: {data.get('error')}")
        text = []
        tool_calls = []
        for index, block in enumerate(expect_list(data.get("content") or [], "content")):
            block = expect_object(block, "content block")
            if block.get("type") == "text":
                text.append(text_of(block.get("text")))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    index=index,
                    id=text_of(block.get("id")),
                    function=ToolFunction(
                        name=text_of(block.get("name")),
                        arguments=json.dumps(block.get("input") or {}, separators=(",", ":")),
                    ),
                ))
        return StreamChunk(
            content="".join(text),
            tool_calls=tool_calls,
            finish_reason=text_of(data.get("stop_reason")),
            done=True,
        )

    def static_models(self) -> list[ModelInfo]:
        return [ModelInfo(id=model_id, name=name) for model_id, name in MODELS]
