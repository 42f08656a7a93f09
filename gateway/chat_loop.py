"""ChatLoop - the multi-turn request / stream / tool-execute cycle."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from gateway.events import (
    TYPE_MESSAGE_END,
    TYPE_TOOL_CALL,
    TYPE_USER_MESSAGE,
    ChatEvent,
    EventSink,
    delta_event,
    text_event,
)
from gateway.exceptions import GatewayError
from gateway.schema import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    ChatMessage,
    ChatOptions,
    ToolCall,
    ToolFunction,
)
from providers.registry import get_codec
from tools.catalog import CatalogSnapshot
from tools.dispatcher import SOURCE_MCP

if TYPE_CHECKING:
    from gateway.context import ChatSession, GatewayContext

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnResult:
    states: list[TurnState] = field(default_factory=list)
    text: str = ""
    cycles: int = 0
    truncated: bool = False
    error: str | None = None


class ToolCallAccumulator:
    """Merges streamed tool-call fragments keyed by fragment index."""

    def __init__(self):
        self._calls: dict[int, ToolCall] = {}

    def add(self, fragment: ToolCall) -> None:
        call = self._calls.get(fragment.index)
        if call is None:
            call = ToolCall(index=fragment.index, type=fragment.type, function=ToolFunction())
            self._calls[fragment.index] = call
        call.function.arguments += fragment.function.arguments
        if fragment.function.name:
            call.function.name = fragment.function.name
        if fragment.id:
            call.id = fragment.id

    def __len__(self) -> int:
        return len(self._calls)

    def calls(self) -> list[ToolCall]:
        """Accumulated calls in index order; calls without an id get a synthetic one."""
        ordered = [self._calls[i] for i in sorted(self._calls)]
        for call in ordered:
            if not call.id:
                call.id = f"call_{call.index}"
        return ordered


@dataclass
class _Cycle:
    text: str = ""
    finish_reason: str = ""
    tool_calls: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)


class ChatLoop:
    """Drives one user turn to Done or Failed, streaming events to a sink."""

    def __init__(self, context: "GatewayContext"):
        self.context = context
        self.settings = context.config.chat

    async def run_turn(self, session: "ChatSession", user_text: str, emit: EventSink) -> TurnResult:
        result = TurnResult()
        started = time.monotonic()
        await emit(ChatEvent(type=TYPE_USER_MESSAGE, content=user_text))
        session.history.append(ChatMessage(role=ROLE_USER, content=user_text))

        cycle = _Cycle()
        try:
            catalog = await self.context.catalog.build()
            while True:
                if result.cycles >= self.settings.max_turns:
                    logger.warning(
                        "Session %s hit max_turns=%d; finalizing turn", session.id, self.settings.max_turns
                    )
                    result.truncated = True
                    break
                result.cycles += 1
                cycle = _Cycle()
                await self._stream_cycle(session, catalog, cycle, result, emit)
                result.text += cycle.text

                calls = cycle.tool_calls.calls()
                if not calls:
                    if cycle.text:
                        session.history.append(ChatMessage(role=ROLE_ASSISTANT, content=cycle.text))
                    break

                result.states.append(TurnState.TOOL_EXECUTING)
                session.history.append(
                    ChatMessage(role=ROLE_ASSISTANT, content=cycle.text, tool_calls=calls)
                )
                cycle = _Cycle()
                for call in calls:
                    await self._execute_tool(session, catalog, call, emit)
            result.states.append(TurnState.DONE)
        except GatewayError as exc:
            logger.error("Session %s turn failed: %s", session.id, exc)
            result.states.append(TurnState.FAILED)
            result.error = str(exc)
            if cycle.text:
                result.text += cycle.text
                session.history.append(ChatMessage(role=ROLE_ASSISTANT, content=cycle.text))
            await emit(text_event(f"\n\nError: {exc}"))

        await emit(ChatEvent(type=TYPE_MESSAGE_END))
        session.telemetry.record_turn(
            cycles=result.cycles,
            states=[state.value for state in result.states],
            truncated=result.truncated,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        return result

    async def _stream_cycle(
        self,
        session: "ChatSession",
        catalog: CatalogSnapshot,
        cycle: _Cycle,
        result: TurnResult,
        emit: EventSink,
    ) -> None:
        result.states.append(TurnState.REQUESTING)
        model = session.model
        provider = model.provider
        if provider is None:
            raise GatewayError(f"provider not found for model {model.model}")
        codec = get_codec(provider.type)
        if codec is None:
            raise GatewayError(f"unsupported provider type: {provider.type}")

        options = ChatOptions(
            api_key=provider.api_key,
            base_url=provider.base_url,
            temperature=model.temperature if model.temperature > 0 else self.settings.temperature,
            max_tokens=model.max_tokens if model.max_tokens > 0 else self.settings.max_tokens,
            stream=True,
            tools=catalog.tools,
        )
        messages = list(session.history)
        if session.system_prompt:
            messages.insert(0, ChatMessage(role=ROLE_SYSTEM, content=session.system_prompt))
        request = codec.build_chat_request(model.model, messages, options)

        started = time.monotonic()
        error: str | None = None
        try:
            async with self.context.provider_client.open_stream(request) as reader:
                result.states.append(TurnState.STREAMING)
                while True:
                    chunk = await codec.parse_stream_response(reader)
                    if chunk.content:
                        cycle.text += chunk.content
                        await emit(delta_event(chunk.content))
                    for fragment in chunk.tool_calls:
                        cycle.tool_calls.add(fragment)
                    if chunk.finish_reason:
                        cycle.finish_reason = chunk.finish_reason
                    if chunk.done:
                        break
        except GatewayError as exc:
            error = str(exc)
            raise
        finally:
            session.telemetry.record_provider_call(
                provider_type=provider.type,
                model=model.model,
                latency_ms=(time.monotonic() - started) * 1000,
                finish_reason=cycle.finish_reason,
                error=error,
            )

    async def _execute_tool(
        self,
        session: "ChatSession",
        catalog: CatalogSnapshot,
        call: ToolCall,
        emit: EventSink,
    ) -> None:
        name = call.function.name
        logger.info("Session %s executing tool %s args=%s", session.id, name, call.function.arguments)
        await emit(ChatEvent(type=TYPE_TOOL_CALL, tool_name=name, content=f"\n\n> Calling tool: {name}...\n"))

        message = None
        if self.context.dispatcher.source_of(name) == SOURCE_MCP:
            message = await self.context.command_gate.check(name, call.parsed_arguments(), emit)
        if message is None:
            outcome = await self.context.dispatcher.dispatch(call, catalog, session.telemetry)
            for event in outcome.events:
                await emit(event)
            message = outcome.message

        session.history.append(
            ChatMessage(role=ROLE_TOOL, content=message, tool_call_id=call.id, name=name)
        )
