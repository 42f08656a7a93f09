import asyncio
import json
import tempfile
import unittest
from contextlib import asynccontextmanager
from pathlib import Path

from gateway.chat_loop import ChatLoop, ToolCallAccumulator, TurnState
from gateway.config import GatewayConfig, MCPServerConfig, MCPSettings, SandboxSettings
from gateway.context import GatewayContext
from gateway.events import (
    TYPE_COMMAND_BLOCKED,
    TYPE_MESSAGE,
    TYPE_MESSAGE_END,
    TYPE_PERMISSION_REQUEST,
    TYPE_PERMISSION_RESPONSE,
    TYPE_TASK_UPDATE,
    TYPE_TOOL_CALL,
    TYPE_USER_MESSAGE,
)
from gateway.exceptions import TransportError
from gateway.permissions import PermissionResponse
from gateway.schema import (
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ROLE_USER,
    ModelConfig,
    ProviderConfig,
    Skill,
    ToolCall,
    ToolFunction,
)
from providers.base import ChunkReader
from tools.mcp_client import MCPToolSpec
from tools.skills import StaticSkillStore


def make_reader(text: str) -> ChunkReader:
    stream = asyncio.StreamReader()
    stream.feed_data(text.encode("utf-8"))
    stream.feed_eof()
    return ChunkReader(stream)


def sse(*events) -> str:
    return "".join(f"data: {json.dumps(e) if not isinstance(e, str) else e}\n\n" for e in events)


def text_stream(*pieces: str) -> str:
    return sse(
        *({"choices": [{"delta": {"content": p}}]} for p in pieces),
        {"choices": [{"delta": {}, "finish_reason": "stop"}]},
        "[DONE]",
    )


def tool_stream(text: str, name: str, arguments: str, call_id: str = "call_1") -> str:
    return sse(
        {"choices": [{"delta": {"content": text}}]},
        {"choices": [{"delta": {"tool_calls": [{
            "index": 0, "id": call_id, "type": "function",
            "function": {"name": name, "arguments": ""},
        }]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": arguments}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        "[DONE]",
    )


class ScriptedProviderClient:
    """Replays canned stream bodies; the last one repeats forever."""

    def __init__(self, *streams: str, fail: Exception | None = None):
        self.streams = list(streams)
        self.fail = fail
        self.requests = []

    @asynccontextmanager
    async def open_stream(self, request):
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        body = self.streams.pop(0) if len(self.streams) > 1 else self.streams[0]
        yield make_reader(body)


class FakeMCPClient:
    def __init__(self, name, tools, output="ok"):
        self.name = name
        self.tools = tools
        self.output = output
        self.initialized = False
        self.calls = []

    async def start(self):
        pass

    async def initialize(self):
        self.initialized = True
        return {}

    async def list_tools(self):
        return self.tools

    async def call_tool(self, tool_name, args):
        self.calls.append((tool_name, args))
        return self.output

    async def close(self):
        pass


class EventRecorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


OPENAI_MODEL = ModelConfig(model="gpt-4o", provider=ProviderConfig(type="openai", api_key="sk"))


class TestChatLoop(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _context(self, provider, skills=None, mcp_factory=None, sandbox=None) -> GatewayContext:
        config = GatewayConfig(
            mcp=MCPSettings(config_path=str(self.tmpdir / "mcp.json")),
            sandbox=sandbox or SandboxSettings(),
            log_dir=str(self.tmpdir / "logs"),
        )
        return GatewayContext(
            config,
            skills=skills,
            provider_client=provider,
            mcp_client_factory=mcp_factory,
        )

    async def test_plain_answer_states(self):
        provider = ScriptedProviderClient(text_stream("Hel", "lo"))
        context = self._context(provider)
        session = context.create_session(OPENAI_MODEL, system_prompt="be nice")
        recorder = EventRecorder()

        result = await ChatLoop(context).run_turn(session, "hi", recorder)

        self.assertEqual(result.states, [TurnState.REQUESTING, TurnState.STREAMING, TurnState.DONE])
        self.assertEqual(result.text, "Hello")
        self.assertFalse(result.truncated)
        self.assertEqual(recorder.types(), [TYPE_USER_MESSAGE, TYPE_MESSAGE, TYPE_MESSAGE, TYPE_MESSAGE_END])
        self.assertEqual([e.delta for e in recorder.events[1:3]], ["Hel", "lo"])
        self.assertEqual([m.role for m in session.history], [ROLE_USER, ROLE_ASSISTANT])
        self.assertEqual(session.history[1].content, "Hello")

        body = provider.requests[0].body
        self.assertEqual(body["messages"][0], {"role": "system", "content": "be nice"})
        self.assertEqual(body["temperature"], 0.7)
        self.assertIn("TodoWrite", [t["function"]["name"] for t in body["tools"]])

    async def test_misshapen_stream_event_is_skipped(self):
        body = sse(
            {"choices": [None]},
            {"choices": [{"delta": "oops"}]},
            {"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]},
            "[DONE]",
        )
        context = self._context(ScriptedProviderClient(body))
        session = context.create_session(OPENAI_MODEL)
        recorder = EventRecorder()

        result = await ChatLoop(context).run_turn(session, "hi", recorder)

        self.assertEqual(result.states[-1], TurnState.DONE)
        self.assertEqual(result.text, "ok")
        self.assertEqual(recorder.types(), [TYPE_USER_MESSAGE, TYPE_MESSAGE, TYPE_MESSAGE_END])

    async def test_always_tool_model_is_capped(self):
        provider = ScriptedProviderClient(tool_stream("step ", "TodoWrite", '{"items": []}'))
        context = self._context(provider)
        session = context.create_session(OPENAI_MODEL)
        recorder = EventRecorder()

        result = await ChatLoop(context).run_turn(session, "plan it", recorder)

        self.assertTrue(result.truncated)
        self.assertEqual(result.cycles, 5)
        self.assertEqual(len(provider.requests), 5)
        self.assertEqual(result.text, "step " * 5)
        self.assertEqual(result.states[-1], TurnState.DONE)
        self.assertEqual(result.states.count(TurnState.TOOL_EXECUTING), 5)
        self.assertEqual(recorder.types().count(TYPE_TASK_UPDATE), 5)
        self.assertEqual(recorder.types()[-1], TYPE_MESSAGE_END)
        self.assertEqual(len(session.history), 11)
        tool_message = session.history[2]
        self.assertEqual(tool_message.role, ROLE_TOOL)
        self.assertEqual(tool_message.tool_call_id, "call_1")
        self.assertEqual(tool_message.name, "TodoWrite")
        self.assertEqual(tool_message.content, 'Tasks updated. Current state: {"items": []}')

    async def test_tool_then_answer(self):
        skills = StaticSkillStore([Skill(name="lint", description="Run the linter")])
        provider = ScriptedProviderClient(
            tool_stream("", "lint", '{"path": "src"}'),
            text_stream("All clean."),
        )
        context = self._context(provider, skills=skills)
        session = context.create_session(OPENAI_MODEL)
        recorder = EventRecorder()

        result = await ChatLoop(context).run_turn(session, "lint please", recorder)

        self.assertEqual(result.states, [
            TurnState.REQUESTING, TurnState.STREAMING, TurnState.TOOL_EXECUTING,
            TurnState.REQUESTING, TurnState.STREAMING, TurnState.DONE,
        ])
        self.assertIn(TYPE_TOOL_CALL, recorder.types())
        tool_message = session.history[2]
        self.assertTrue(tool_message.content.startswith('<skill-loaded name="lint">'))
        self.assertTrue(tool_message.content.endswith('Skill lint invoked with arguments: {"path": "src"}'))
        second = provider.requests[1].body["messages"]
        self.assertEqual(second[1]["tool_calls"][0]["id"], "call_1")
        self.assertEqual(second[2]["tool_call_id"], "call_1")

    async def test_transport_error_fails_turn(self):
        provider = ScriptedProviderClient(fail=TransportError("connection refused"))
        context = self._context(provider)
        session = context.create_session(OPENAI_MODEL)
        recorder = EventRecorder()

        result = await ChatLoop(context).run_turn(session, "hi", recorder)

        self.assertEqual(result.states, [TurnState.REQUESTING, TurnState.FAILED])
        self.assertEqual(result.error, "connection refused")
        self.assertEqual(recorder.events[-2].content, "\n\nError: connection refused")
        self.assertEqual(recorder.types()[-1], TYPE_MESSAGE_END)

    async def test_stream_error_keeps_partial_text(self):
        provider = ScriptedProviderClient(sse(
            {"choices": [{"delta": {"content": "partial"}}]},
            {"error": {"message": "server exploded"}},
        ))
        context = self._context(provider)
        session = context.create_session(OPENAI_MODEL)
        recorder = EventRecorder()

        result = await ChatLoop(context).run_turn(session, "hi", recorder)

        self.assertEqual(result.states, [TurnState.REQUESTING, TurnState.STREAMING, TurnState.FAILED])
        self.assertEqual(result.text, "partial")
        self.assertEqual(session.history[-1].content, "partial")
        self.assertIn("server exploded", recorder.events[-2].content)

    async def test_missing_provider_and_unknown_type(self):
        context = self._context(ScriptedProviderClient(text_stream("x")))
        recorder = EventRecorder()

        no_provider = context.create_session(ModelConfig(model="ghost"))
        result = await ChatLoop(context).run_turn(no_provider, "hi", recorder)
        self.assertEqual(result.states, [TurnState.REQUESTING, TurnState.FAILED])
        self.assertIn("provider not found", result.error)

        unknown = context.create_session(ModelConfig(model="m", provider=ProviderConfig(type="carrier-pigeon")))
        result = await ChatLoop(context).run_turn(unknown, "hi", recorder)
        self.assertEqual(result.error, "unsupported provider type: carrier-pigeon")

    async def test_mcp_tool_dispatched_to_lexicographically_first_server(self):
        spec = MCPToolSpec(name="search", description="Search", input_schema={"type": "object"})
        clients = {}

        def factory(name, config):
            clients[name] = FakeMCPClient(name, [spec], output=f"from {name}")
            return clients[name]

        provider = ScriptedProviderClient(tool_stream("", "search", '{"q": "x"}'), text_stream("ok"))
        context = self._context(provider, mcp_factory=factory)
        for name in ("zeta", "alpha"):
            context.mcp.save_config({
                **context.mcp.load_config(),
                name: MCPServerConfig(type="local", command=["srv"], enabled=True),
            })
        await context.mcp.check_all_enabled()
        session = context.create_session(OPENAI_MODEL)

        await ChatLoop(context).run_turn(session, "find x", EventRecorder())

        self.assertEqual(clients["alpha"].calls, [("search", {"q": "x"})])
        self.assertEqual(clients["zeta"].calls, [])
        self.assertEqual(session.history[2].content, "from alpha")

    async def test_unknown_tool_yields_not_found_text(self):
        provider = ScriptedProviderClient(tool_stream("", "nope", "{}"), text_stream("sorry"))
        context = self._context(provider)
        session = context.create_session(OPENAI_MODEL)

        result = await ChatLoop(context).run_turn(session, "go", EventRecorder())

        self.assertEqual(result.states[-1], TurnState.DONE)
        self.assertEqual(session.history[2].content, "Tool nope not found or execution failed")

    async def test_blocked_command_waits_for_permission(self):
        spec = MCPToolSpec(name="shell", description="Run", input_schema={"type": "object"})
        client = FakeMCPClient("box", [spec], output="ran")
        provider = ScriptedProviderClient(
            tool_stream("", "shell", json.dumps({"command": "cat /etc/shadow"})),
            text_stream("done"),
        )
        context = self._context(
            provider,
            mcp_factory=lambda name, config: client,
            sandbox=SandboxSettings(enabled=True, paths=["/home/allowed"]),
        )
        context.mcp.save_config({"box": MCPServerConfig(type="local", command=["srv"], enabled=True)})
        await context.mcp.check_all_enabled()
        session = context.create_session(OPENAI_MODEL)

        async def emit(event):
            recorder.events.append(event)
            if event.type == TYPE_PERMISSION_REQUEST:
                context.permissions.set_response(event.request_id, PermissionResponse(approved=False))

        recorder = EventRecorder()
        await ChatLoop(context).run_turn(session, "read it", emit)

        types = recorder.types()
        self.assertLess(types.index(TYPE_COMMAND_BLOCKED), types.index(TYPE_PERMISSION_REQUEST))
        self.assertIn(TYPE_PERMISSION_RESPONSE, types)
        self.assertEqual(client.calls, [])
        self.assertEqual(session.history[2].content, "Command blocked by sandbox: /etc/shadow")
        self.assertEqual(context.permissions.pending_ids(), [])


class TestToolCallAccumulator(unittest.TestCase):
    def test_merges_by_index_and_keeps_first_name(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCall(index=1, id="b", function=ToolFunction(name="second", arguments="{")))
        acc.add(ToolCall(index=0, function=ToolFunction(name="first", arguments="")))
        acc.add(ToolCall(index=1, function=ToolFunction(arguments="}")))

        calls = acc.calls()

        self.assertEqual([c.index for c in calls], [0, 1])
        self.assertEqual(calls[0].id, "call_0")
        self.assertEqual(calls[1].id, "b")
        self.assertEqual(calls[1].function.name, "second")
        self.assertEqual(calls[1].function.arguments, "{}")
