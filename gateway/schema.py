"""Normalized chat data model shared by codecs, tools and the chat loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

TOOL_TYPE_FUNCTION = "function"


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass
class ToolFunction:
    """Function name and JSON-encoded arguments of a tool call."""
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    """A tool call, either complete or a streamed fragment of one."""
    index: int = 0
    id: str = ""
    type: str = TOOL_TYPE_FUNCTION
    function: ToolFunction = field(default_factory=ToolFunction)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type or TOOL_TYPE_FUNCTION,
            "function": {
                "name": self.function.name,
                "arguments": self.function.arguments,
            },
        }

    @classmethod
    def from_dict(cls, data: dict, default_index: int = 0) -> "ToolCall":
        function = data.get("function") or {}
        index = data.get("index")
        arguments = function.get("arguments") or ""
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, separators=(",", ":"))
        return cls(
            index=index if isinstance(index, int) else default_index,
            id=_str(data.get("id")),
            type=_str(data.get("type")) or TOOL_TYPE_FUNCTION,
            function=ToolFunction(name=_str(function.get("name")), arguments=arguments),
        )

    def parsed_arguments(self) -> dict:
        """Decode the accumulated argument string; empty or invalid JSON gives {}."""
        if not self.function.arguments.strip():
            return {}
        try:
            value = json.loads(self.function.arguments)
        except json.JSONDecodeError:
            logger.debug("Tool call %s has non-JSON arguments", self.function.name)
            return {}
        return value if isinstance(value, dict) else {}


@dataclass
class ChatMessage:
    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    name: str = ""

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


@dataclass
class StreamChunk:
    """The normalized unit produced by one decode step of a codec."""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    done: bool = False


@dataclass
class ToolSchema:
    name: str
    description: str = ""
    parameters: dict = field(default_factory=lambda: empty_object_schema())

    def to_dict(self) -> dict:
        return {
            "type": TOOL_TYPE_FUNCTION,
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ChatOptions:
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    stream: bool = True
    tools: list[ToolSchema] = field(default_factory=list)


@dataclass
class ModelInfo:
    id: str
    name: str = ""
    object: str = ""
    owned_by: str = ""
    description: str = ""

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v}


@dataclass
class ProviderConfig:
    """Provider record as handed over by the persistence collaborator."""
    type: str
    base_url: str = ""
    api_key: str = ""
    name: str = ""


@dataclass
class ModelConfig:
    model: str
    provider: ProviderConfig | None = None
    temperature: float = 0.0
    max_tokens: int = 0


@dataclass
class Skill:
    name: str
    description: str = ""
    enabled: bool = True
    config: Any = None  # JSON object or raw JSON string

    def parameters(self) -> dict:
        """Stored `parameters` schema, or an empty-object schema if absent/malformed."""
        config = self.config
        if isinstance(config, (str, bytes)):
            try:
                config = json.loads(config)
            except json.JSONDecodeError:
                logger.warning("Skill %s has invalid config JSON", self.name)
                return empty_object_schema()
        if not isinstance(config, dict):
            return empty_object_schema()
        params = config.get("parameters")
        if not isinstance(params, dict):
            return empty_object_schema()
        return params


def empty_object_schema() -> dict:
    return {"type": "object", "properties": {}}


# ── Content parts ────────────────────────────────────────────────────


class PartKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"


@dataclass
class TextPart:
    text: str
    kind: PartKind = field(default=PartKind.TEXT, init=False)


@dataclass
class ToolUsePart:
    id: str
    name: str
    input: dict
    kind: PartKind = field(default=PartKind.TOOL_USE, init=False)


@dataclass
class ToolResultPart:
    tool_use_id: str
    name: str
    content: str
    kind: PartKind = field(default=PartKind.TOOL_RESULT, init=False)


ContentPart = TextPart | ToolUsePart | ToolResultPart


def message_parts(message: ChatMessage) -> list[ContentPart]:
    """Split a message into typed parts for providers with content arrays."""
    if message.role == ROLE_TOOL:
        return [ToolResultPart(
            tool_use_id=message.tool_call_id,
            name=message.name,
            content=message.content,
        )]
    parts: list[ContentPart] = []
    if message.content:
        parts.append(TextPart(text=message.content))
    for tc in message.tool_calls:
        parts.append(ToolUsePart(id=tc.id, name=tc.function.name, input=tc.parsed_arguments()))
    return parts
