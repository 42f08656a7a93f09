"""Gemini generateContent codec (bracket/comma framed JSON array stream)."""

from __future__ import annotations

import json
import logging
from collections import deque
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

MODELS = [
    ("gemini-2.0-flash", "Gemini 2.0 Flash"),
    ("gemini-2.0-flash-lite", "Gemini 2.0 Flash Lite"),
    ("gemini-1.5-pro", "Gemini 1.5 Pro"),
    ("gemini-1.5-flash", "Gemini 1.5 Flash"),
    ("gemini-1.5-flash-8b", "Gemini 1.5 Flash 8B"),
    ("gemini-1.0-pro", "Gemini 1.0 Pro"),
]


class JSONObjectFramer:
    """Split a stream of text into top-level JSON objects.

    Anything outside an object (array brackets, commas, whitespace) is
    skipped. Objects may span any number of lines.
    """

    def __init__(self):
        self._buffer: list[str] = []
        self._depth = 0
        self._in_string = False
        self._escape = False

    @property
    def pending(self) -> bool:
        return self._depth > 0

    def feed(self, text: str) -> list[str]:
        objects = []
        for ch in text:
            if self._depth == 0:
                if ch == "{":
                    self._depth = 1
                    self._buffer = [ch]
                continue
            self._buffer.append(ch)
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch == "{":
                self._depth += 1
            elif ch == "}":
                self._depth -= 1
                if self._depth == 0:
                    objects.append("".join(self._buffer))
                    self._buffer = []
        return objects


class GeminiCodec(WireCodec):
    provider_type = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def build_chat_request(
        self,
        model: str,
        messages: list[ChatMessage],
        options: ChatOptions,
    ) -> ProviderRequest:
        body: dict[str, Any] = {"contents": self._render_contents(messages)}
        system_parts = [m.content for m in messages if m.role == ROLE_SYSTEM and m.content]
        if system_parts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        if options.temperature > 0 or options.max_tokens > 0:
            generation: dict[str, Any] = {}
            if options.temperature > 0:
                generation["temperature"] = options.temperature
            if options.max_tokens > 0:
                generation["maxOutputTokens"] = options.max_tokens
            body["generationConfig"] = generation
        if options.tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    }
                    for tool in options.tools
                ]
            }]
        method = "streamGenerateContent" if options.stream else "generateContent"
        return ProviderRequest(
            method="POST",
            url=f"{self.get_base_url(options.base_url)}/models/{model}:{method}?key={options.api_key}",
            headers={"Content-Type": "application/json"},
            body=body,
        )

    def _render_contents(self, messages: list[ChatMessage]) -> list[dict]:
        contents: list[dict] = []
        for message in messages:
            if message.role == ROLE_SYSTEM:
                continue
            if message.role == ROLE_USER:
                contents.append({"role": "user", "parts": [{"text": message.content}]})
                continue
            parts = [self._render_part(part) for part in message_parts(message)]
            if message.role == ROLE_ASSISTANT:
                contents.append({"role": "model", "parts": parts})
            elif message.role == ROLE_TOOL:
                previous = contents[-1] if contents else None
                if previous and previous["role"] == "user" and all(
                    "functionResponse" in part for part in previous["parts"]
                ):
                    previous["parts"].extend(parts)
                else:
                    contents.append({"role": "user", "parts": parts})
        return contents

    @staticmethod
    def _render_part(part) -> dict:
        if part.kind == PartKind.TEXT:
            return {"text": part.text}
        if part.kind == PartKind.TOOL_USE:
            return {"functionCall": {"name": part.name, "args": part.input}}
        return {"functionResponse": {"name": part.name, "response": {"content": part.content}}}

    async def parse_stream_response(self, reader: ChunkReader) -> StreamChunk:
        state = reader.state
        framer = state.setdefault("framer", JSONObjectFramer())
        pending: deque = state.setdefault("objects", deque())
        while True:
            while pending:
                raw = pending.popleft()
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed Gemini object: %.200s", raw)
                    continue
                try:
                    chunk = self._decode_event(event, state)
                except DecodeError as exc:
                    logger.warning("Skipping malformed Gemini object: %s", exc)
                    continue
                if chunk is not None:
                    return chunk
            line = await reader.readline()
            if line is None:
                if framer.pending:
                    logger.warning("Gemini stream ended inside an unterminated object")
                return StreamChunk(done=True)
            pending.extend(framer.feed(line + "\n"))

    def _decode_event(self, event: dict, state: dict) -> StreamChunk | None:
        if not isinstance(event, dict):
            return None
        error = event.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise ProtocolError(f"gemini API error: {message}")
        candidates = event.get("candidates") or []
        if not candidates:
            return None
        candidate = expect_object(expect_list(candidates, "candidates")[0], "candidate")
        content = expect_object(candidate.get("content") or {}, "content")
        parts = [expect_object(part, "part") for part in expect_list(content.get("parts") or [], "parts")]
        text = []
        tool_calls = []
        for part in parts:
            text.append(text_of(part.get("text")))
            call = part.get("functionCall")
            if call:
                call = expect_object(call, "functionCall")
                index = state.get("tool_index", 0)
                state["tool_index"] = index + 1
                tool_calls.append(ToolCall(
                    index=index,
                    id=f"call_{index}",
                    function=ToolFunction(
                        name=text_of(call.get("name")),
                        arguments=json.dumps(call.get("args") or {}, separators=(",", ":")),
                    ),
                ))
        return StreamChunk(
            content="".join(text),
            tool_calls=tool_calls,
            finish_reason=text_of(candidate.get("finishReason")),
        )

    def decode_response(self, data: dict) -> StreamChunk:
        chunk = self._decode_event(data, {}) or StreamChunk()
        chunk.done = True
        return chunk

    def static_models(self) -> list[ModelInfo]:
        return [ModelInfo(id=model_id, name=name) for model_id, name in MODELS]
