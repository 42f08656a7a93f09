import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from gateway.config import GatewayConfig, MCPSettings, SandboxSettings
from gateway.context import GatewayContext
from providers.base import ChunkReader
from tools.mcp_client import MCPToolSpec
from web.app import create_app


class ScriptedProviderClient:
    def __init__(self, body: str):
        self.body = body

    @asynccontextmanager
    async def open_stream(self, request):
        stream = asyncio.StreamReader()
        stream.feed_data(self.body.encode("utf-8"))
        stream.feed_eof()
        yield ChunkReader(stream)


class FakeMCPClient:
    def __init__(self, name):
        self.name = name
        self.initialized = False

    async def start(self):
        pass

    async def initialize(self):
        self.initialized = True
        return {}

    async def list_tools(self):
        return [MCPToolSpec(name="search")]

    async def call_tool(self, tool_name, args):
        return "ok"

    async def close(self):
        pass


OPENAI_STREAM = "".join(
    f"data: {payload}\n\n"
    for payload in (
        json.dumps({"choices": [{"delta": {"content": "Hi "}}]}),
        json.dumps({"choices": [{"delta": {"content": "there"}, "finish_reason": "stop"}]}),
        "[DONE]",
    )
)

MODEL = {"model": "gpt-4o", "provider": {"type": "openai", "api_key": "sk-test"}}


@pytest.fixture
def app(tmp_path: Path):
    config = GatewayConfig(
        mcp=MCPSettings(config_path=str(tmp_path / "mcp.json"), check_on_start=False),
        sandbox=SandboxSettings(enabled=True, paths=["/home/allowed"]),
        data_dir=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
    )
    context = GatewayContext(
        config,
        provider_client=ScriptedProviderClient(OPENAI_STREAM),
        mcp_client_factory=lambda name, server: FakeMCPClient(name),
    )
    app = create_app(config, context=context)
    app.testing = True
    yield app
    app.config["runner"].stop()


def _sse_events(resp) -> list[dict]:
    body = resp.get_data(as_text=True)
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def test_send_requires_message_and_model(app):
    client = app.test_client()
    assert client.post("/api/chat/send", json={}).status_code == 400

    resp = client.post("/api/chat/send", json={"message": "hi"})
    assert resp.status_code == 400
    assert "model" in resp.get_json()["error"]

    resp = client.post("/api/chat/send", json={
        "message": "hi",
        "model": {"model": "x", "provider": {"type": "carrier-pigeon"}},
    })
    assert resp.status_code == 400


def test_send_stream_and_history(app):
    client = app.test_client()
    resp = client.post("/api/chat/send", json={"message": "hello", "model": MODEL})
    assert resp.status_code == 200
    session_id = resp.get_json()["session_id"]

    events = _sse_events(client.get(f"/api/chat/stream/{session_id}"))
    types = [e["type"] for e in events]
    assert types[0] == "user_message"
    assert [e["delta"] for e in events if e["type"] == "message"] == ["Hi ", "there"]
    assert types[-2:] == ["message_end", "done"]
    assert events[-1]["content"] == "Hi there"
    assert events[-1]["states"] == ["requesting", "streaming", "done"]

    history = client.get(f"/api/chat/history/{session_id}").get_json()
    assert [m["role"] for m in history["history"]] == ["user", "assistant"]
    assert history["history"][1]["content"] == "Hi there"


def test_unknown_session_routes(app):
    client = app.test_client()
    assert client.get("/api/chat/stream/nope").status_code == 404
    assert client.get("/api/chat/history/nope").status_code == 404


def test_permission_responses(app):
    client = app.test_client()
    permissions = app.config["gateway_context"].permissions

    assert client.post("/api/permissions/req_x", json={"approved": "yes"}).status_code == 400
    assert client.post("/api/permissions/req_x", json={"approved": True}).status_code == 404

    permissions.create_request("req_live")
    resp = client.post("/api/permissions/req_live", json={"approved": True, "remember": True})
    assert resp.status_code == 200
    assert permissions.get_response("req_live").remember is True
    assert client.post("/api/permissions/req_live", json={"approved": False}).status_code == 404


def test_sandbox_check(app):
    client = app.test_client()
    resp = client.post("/api/sandbox/check", json={
        "command": "cp /home/allowed/file.txt /home/blocked/file.txt",
    })
    payload = resp.get_json()
    assert payload["allowed"] is False
    assert "/home/blocked/file.txt" in payload["blocked_paths"]
    assert client.post("/api/sandbox/check", json={}).status_code == 400

    resp = client.post("/api/sandbox", json={"add": ["/home/blocked"]})
    assert resp.status_code == 200
    resp = client.post("/api/sandbox/check", json={"command": "cat /home/blocked/file.txt"})
    assert resp.get_json() == {"allowed": True, "blocked_paths": []}


def test_mcp_server_lifecycle(app):
    client = app.test_client()

    resp = client.put("/api/mcp/alpha", json={"type": "local", "command": 3})
    assert resp.status_code == 400

    resp = client.put("/api/mcp/alpha", json={"type": "local", "command": ["srv"], "enabled": True})
    assert resp.status_code == 200

    resp = client.post("/api/mcp/alpha/check")
    assert resp.get_json() == {"name": "alpha", "status": "connected"}

    single = client.get("/api/mcp/alpha").get_json()
    assert single["config"]["command"] == ["srv"]
    assert single["status"] == "connected"
    assert client.get("/api/mcp/missing").status_code == 404

    servers = client.get("/api/mcp").get_json()["servers"]
    assert [s["name"] for s in servers] == ["alpha"]
    assert servers[0]["config"]["command"] == ["srv"]

    statuses = client.post("/api/mcp/check").get_json()["servers"]
    assert statuses["alpha"]["status"] == "connected"

    assert client.delete("/api/mcp/alpha").status_code == 200
    assert client.delete("/api/mcp/alpha").status_code == 404


def test_provider_models(app):
    client = app.test_client()
    resp = client.get("/api/providers/anthropic/models")
    assert resp.status_code == 200
    assert resp.get_json()["models"]

    assert client.get("/api/providers/carrier-pigeon/models").status_code == 404
    assert "openai" in client.get("/api/providers").get_json()["providers"]


def test_metrics_routes(app):
    client = app.test_client()
    assert client.get("/api/metrics").get_json() == {"enabled": False, "sessions": []}
    assert client.get("/api/metrics/nope").status_code == 404

    session_id = client.post("/api/chat/send", json={"message": "hello", "model": MODEL}).get_json()["session_id"]
    _sse_events(client.get(f"/api/chat/stream/{session_id}"))

    payload = client.get(f"/api/metrics/{session_id}").get_json()
    assert payload["session_id"] == session_id
    assert payload["metrics"]["turns"] == 0
