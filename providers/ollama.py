"""Ollama /api/chat codec (newline-delimited JSON)."""

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
    ToolFunction,
)
from providers.base import ChunkReader, ProviderRequest, WireCodec, expect_list, expect_object, text_of

logger = logging.getLogger(__name__)


class OllamaCodec(WireCodec):
    provider_type = "ollama"
    default_base_url = "http://localhost:11434"

    def build_chat_request(
        self,
        model: str,
        messages: list[ChatMessage],
        options: ChatOptions,
    ) -> ProviderRequest:
        body: dict[str, Any] = {
            "model": model,
            "messages": [self._render_message(m) for m in messages],
            "stream": options.stream,
        }
        model_options: dict[str, Any] = {}
        if options.temperature > 0:
            model_options["temperature"] = options.temperature
        if options.max_tokens > 0:
            model_options["num_predict"] = options.max_tokens
        if model_options:
            body["options"] = model_options
        if options.tools:
            body["tools"] = [tool.to_dict() for tool in options.tools]
        return ProviderRequest(
            method="POST",
            url=f"{self.get_base_url(options.base_url)}/api/chat",
            headers={"Content-Type": "application/json"},
            body=body,
        )

    @staticmethod
    def _render_message(message: ChatMessage) -> dict[str, Any]:
        data: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == ROLE_TOOL:
            data["tool_name"] = message.name
        if message.tool_calls:
            data["tool_calls"] = [
                {"function": {"name": tc.function.name, "arguments": tc.parsed_arguments()}}
                for tc in message.tool_calls
            ]
        return data

    async def parse_stream_response(self, reader: ChunkReader) -> StreamChunk:
        while True:
            line = await reader.readline()
            if line is None:
                return StreamChunk(done=True)
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed Ollama line: %.200s", line)
                continue
            if not isinstance(data, dict):
                continue
            try:
                return self._decode_line(data, reader.state)
            except DecodeError as exc:
                logger.debug("Skipping malformed Ollama line: %s", exc)

    def _decode_line(self, data: dict, state: dict) -> StreamChunk:
        if data.get("error"):
            raise ProtocolError(f"ollama error: {data['error']}")
        message = expect_object(data.get("message") or {}, "message")
        calls = [
            expect_object(call, "tool call")
            for call in expect_list(message.get("tool_calls") or [], "tool_calls")
        ]
        tool_calls = []
        for call in calls:
            function = expect_object(call.get("function") or {}, "tool call function")
            index = state.get("tool_index", 0)
            state["tool_index"] = index + 1
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments or {}, separators=(",", ":"))
            tool_calls.append(ToolCall(
                index=index,
                id=text_of(call.get("id")) or f"call_{index}",
                function=ToolFunction(name=text_of(function.get("name")), arguments=arguments),
            ))
        done = bool(data.get("done"))
        return StreamChunk(
            content=text_of(message.get("content")),
            tool_calls=tool_calls,
            finish_reason=text_of(data.get("done_reason")) if done else "",
            done=done,
        )

    def decode_response(self, data: dict) -> StreamChunk:
        chunk = self._decode_line(data, {})
        chunk.done = True
        return chunk

    def build_models_request(self, base_url: str, api_key: str) -> ProviderRequest:
        return ProviderRequest(
            method="GET",
            url=f"{self.get_base_url(base_url)}/api/tags",
            headers={"Content-Type": "application/json"},
        )

    def parse_models(self, data: Any) -> list[ModelInfo]:
        entries = data.get("models", []) if isinstance(data, dict) else []
        return [
            ModelInfo(id=entry["name"], object="model", owned_by="ollama")
            for entry in entries
            if isinstance(entry, dict) and entry.get("name")
        ]
