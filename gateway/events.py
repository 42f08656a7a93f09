"""Outbound events streamed to the caller during a chat turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable

TYPE_USER_MESSAGE = "user_message"
TYPE_MESSAGE = "message"
TYPE_TASK_UPDATE = "task_update"
TYPE_TOOL_CALL = "tool_call"
TYPE_MESSAGE_END = "message_end"
TYPE_PERMISSION_REQUEST = "permission_request"
TYPE_PERMISSION_RESPONSE = "permission_response"
TYPE_COMMAND_BLOCKED = "command_blocked"


@dataclass
class ChatEvent:
    type: str
    content: str = ""
    delta: str = ""
    tasks: list[dict] = field(default_factory=list)
    tool_name: str = ""
    request_id: str = ""
    command: str = ""
    blocked_paths: list[str] = field(default_factory=list)
    approved: bool = False
    remember: bool = False

    def to_dict(self) -> dict:
        """Wire shape: only `type` plus the fields that carry a value."""
        return {k: v for k, v in self.__dict__.items() if k == "type" or v}


EventSink = Callable[[ChatEvent], Awaitable[None]]


def text_event(content: str) -> ChatEvent:
    return ChatEvent(type=TYPE_MESSAGE, content=content)


def delta_event(delta: str) -> ChatEvent:
    return ChatEvent(type=TYPE_MESSAGE, delta=delta)
