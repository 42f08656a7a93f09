"""Sandbox check and user approval for tool calls that carry a shell command."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from gateway.events import (
    TYPE_COMMAND_BLOCKED,
    TYPE_PERMISSION_REQUEST,
    TYPE_PERMISSION_RESPONSE,
    ChatEvent,
    EventSink,
)
from gateway.exceptions import PermissionTimeoutError
from gateway.permissions import PermissionManager, PermissionResponse
from gateway.sandbox import SandboxEvaluator

logger = logging.getLogger(__name__)

PERMISSION_PROMPT = (
    "The command you are trying to execute requires access to restricted paths. "
    "Do you want to allow this operation?"
)


def new_request_id() -> str:
    return f"req_{datetime.now():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"


class CommandGate:
    def __init__(self, sandbox: SandboxEvaluator, permissions: PermissionManager, timeout: float = 120.0):
        self.sandbox = sandbox
        self.permissions = permissions
        self.timeout = timeout

    async def check(self, tool_name: str, arguments: dict, emit: EventSink) -> str | None:
        """Return None when the call may proceed, else the text to use as its result."""
        command = arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            return None
        allowed, blocked = self.sandbox.check_command_permission(command)
        if allowed:
            return None

        request_id = new_request_id()
        future = self.permissions.create_request(request_id)
        try:
            await emit(ChatEvent(
                type=TYPE_COMMAND_BLOCKED,
                tool_name=tool_name,
                command=command,
                blocked_paths=blocked,
            ))
            await emit(ChatEvent(
                type=TYPE_PERMISSION_REQUEST,
                request_id=request_id,
                tool_name=tool_name,
                command=command,
                blocked_paths=blocked,
                content=PERMISSION_PROMPT,
            ))
            try:
                response = await future.wait(self.timeout)
            except PermissionTimeoutError as exc:
                logger.warning("%s; denying command for tool %s", exc, tool_name)
                response = PermissionResponse(approved=False)
        finally:
            self.permissions.remove_request(request_id)

        await emit(ChatEvent(
            type=TYPE_PERMISSION_RESPONSE,
            request_id=request_id,
            approved=response.approved,
            remember=response.remember,
        ))
        if not response.approved:
            return f"Command blocked by sandbox: {', '.join(blocked)}"
        if response.remember:
            for path in blocked:
                self.sandbox.add_path(path, description=f"approved for: {command}")
        return None
