"""JSON-RPC MCP clients over stdio, streamable HTTP and SSE transports."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
from urllib.parse import urljoin, urlparse

import aiohttp

from gateway.exceptions import MCPError, MCPTransportError
from gateway.schema import ToolSchema, empty_object_schema

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "agent-gateway"
CLIENT_VERSION = "0.1.0"

# Tool results can be large; the default 64 KiB line limit is too small.
STDIO_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class MCPToolSpec:
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=empty_object_schema)

    def to_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.input_schema)


class MCPClient:
    """Base MCP client: handshake, tool listing and invocation over `_request`."""

    def __init__(self, name: str, connect_timeout: float = 10.0):
        self.name = name
        self.connect_timeout = connect_timeout
        self._initialized = False
        self._request_id = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def start(self) -> None:
        """Open the transport. Subclasses override."""
        return None

    async def initialize(self) -> dict:
        if self._initialized:
            return {}
        result = await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
                "capabilities": {},
            },
        )
        await self._notify("notifications/initialized", {})
        self._initialized = True
        return result if isinstance(result, dict) else {}

    async def list_tools(self) -> list[MCPToolSpec]:
        response = await self._request("tools/list", {})
        tools = response.get("tools", []) if isinstance(response, dict) else []
        specs: list[MCPToolSpec] = []
        for tool in tools:
            if not isinstance(tool, dict) or not tool.get("name"):
                continue
            schema = tool.get("inputSchema")
            specs.append(MCPToolSpec(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=schema if isinstance(schema, dict) else empty_object_schema(),
            ))
        return specs

    async def call_tool(self, tool_name: str, args: dict[str, Any]) -> str:
        """Invoke a tool and return its text. A result flagged isError raises MCPError."""
        response = await self._request("tools/call", {"name": tool_name, "arguments": args})
        text = self._format_result(response)
        if isinstance(response, dict) and response.get("isError"):
            raise MCPError(f"tool '{tool_name}' on '{self.name}' reported an error: {text}")
        return text

    async def close(self) -> None:
        return None

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        raise NotImplementedError

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        raise NotImplementedError

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _payload(self, method: str, params: dict[str, Any], req_id: int | None = None) -> dict:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "params": params}
        if req_id is not None:
            payload["id"] = req_id
        return payload

    def _unwrap(self, data: dict) -> Any:
        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise MCPError(f"MCP server '{self.name}' returned error: {message}")
        return data.get("result", {})

    @staticmethod
    def _format_result(result: Any) -> str:
        if isinstance(result, dict) and isinstance(result.get("content"), list):
            parts = []
            for item in result["content"]:
                if isinstance(item, dict) and item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(json.dumps(item))
            return "\n".join(parts)
        if isinstance(result, (dict, list)):
            return json.dumps(result, indent=2)
        return str(result)


class MCPStdioClient(MCPClient):
    """MCP client over a subprocess's stdin/stdout, one JSON message per line."""

    def __init__(
        self,
        name: str,
        command: list[str],
        env: dict[str, str] | None = None,
        connect_timeout: float = 10.0,
    ):
        super().__init__(name, connect_timeout)
        if not command:
            raise MCPError("local MCP requires non-empty command")
        self.command = list(command)
        self.env = dict(env or {})
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if self._proc and self._proc.returncode is None:
            return
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.command[0],
                *self.command[1:],
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
                limit=STDIO_LINE_LIMIT,
            )
        except OSError as exc:
            raise MCPTransportError(f"failed to start '{self.command[0]}': {exc}") from exc
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            logger.debug("[mcp:%s] %s", self.name, line.decode("utf-8", errors="replace").rstrip())

    def _pipes(self) -> tuple[asyncio.StreamWriter, asyncio.StreamReader]:
        if not self._proc or self._proc.returncode is not None:
            raise MCPTransportError(f"MCP stdio server '{self.name}' is not running")
        if not self._proc.stdin or not self._proc.stdout:
            raise MCPTransportError("MCP stdio process not available")
        return self._proc.stdin, self._proc.stdout

    async def _write(self, payload: dict) -> None:
        stdin, _ = self._pipes()
        try:
            stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await stdin.drain()
        except (ConnectionError, RuntimeError) as exc:
            raise MCPTransportError(f"MCP stdio write failed: {exc}") from exc

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        async with self._lock:
            _, stdout = self._pipes()
            req_id = self._next_id()
            await self._write(self._payload(method, params, req_id))
            while True:
                try:
                    line = await stdout.readline()
                except ValueError as exc:
                    raise MCPTransportError(f"MCP stdio message too large: {exc}") from exc
                if not line:
                    raise MCPTransportError(f"MCP stdio server '{self.name}' closed connection")
                try:
                    data = json.loads(line.decode("utf-8"))
                except ValueError:
                    logger.debug("[mcp:%s] skipping non-JSON output", self.name)
                    continue
                if not isinstance(data, dict) or "method" in data or data.get("id") != req_id:
                    continue
                return self._unwrap(data)

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        async with self._lock:
            await self._write(self._payload(method, params))

    async def close(self) -> None:
        proc = self._proc
        if proc and proc.returncode is None:
            if proc.stdin:
                proc.stdin.close()
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=3)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if self._stderr_task:
            self._stderr_task.cancel()
        self._initialized = False


async def iter_sse_events(content: aiohttp.StreamReader) -> AsyncIterator[tuple[str, str]]:
    """Yield (event, data) pairs from a text/event-stream body."""
    event = "message"
    data: list[str] = []
    async for raw_line in content:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        key, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if key == "event":
            event = value
        elif key == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


def _validate_url(url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise MCPError(f"invalid MCP server url: {url!r}")
    return url


class _HttpClientBase(MCPClient):
    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        connect_timeout: float = 10.0,
    ):
        super().__init__(name, connect_timeout)
        self.url = _validate_url(url)
        self.headers = dict(headers or {})
        self._session: aiohttp.ClientSession | None = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(
                    total=None,
                    connect=self.connect_timeout,
                    sock_connect=self.connect_timeout,
                ),
            )
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        self._initialized = False


class MCPStreamableHttpClient(_HttpClientBase):
    """MCP client over the streamable HTTP transport (POST per message)."""

    def __init__(self, name: str, url: str, headers: dict[str, str] | None = None,
                 connect_timeout: float = 10.0):
        super().__init__(name, url, headers, connect_timeout)
        self._session_id: str | None = None

    def _request_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        session = self._ensure_session()
        req_id = self._next_id()
        try:
            async with session.post(
                self.url,
                json=self._payload(method, params, req_id),
                headers=self._request_headers(),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text(errors="replace")
                    raise MCPTransportError(f"MCP HTTP {resp.status} from '{self.name}': {body[:500]}")
                session_id = resp.headers.get("Mcp-Session-Id")
                if session_id:
                    self._session_id = session_id
                if resp.content_type == "text/event-stream":
                    async for _, data in iter_sse_events(resp.content):
                        message = self._decode(data)
                        if message is not None and message.get("id") == req_id:
                            return self._unwrap(message)
                    raise MCPTransportError(f"MCP stream from '{self.name}' ended without a response")
                try:
                    message = await resp.json(content_type=None)
                except ValueError as exc:
                    raise MCPTransportError(
                        f"MCP server '{self.name}' sent a non-JSON {resp.content_type} body"
                    ) from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise MCPTransportError(f"MCP HTTP request to '{self.name}' failed: {exc}") from exc
        if not isinstance(message, dict):
            raise MCPError(f"MCP server '{self.name}' returned a malformed response")
        return self._unwrap(message)

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        session = self._ensure_session()
        try:
            async with session.post(
                self.url,
                json=self._payload(method, params),
                headers=self._request_headers(),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text(errors="replace")
                    raise MCPTransportError(f"MCP HTTP {resp.status} from '{self.name}': {body[:500]}")
        except aiohttp.ClientError as exc:
            raise MCPTransportError(f"MCP HTTP notify to '{self.name}' failed: {exc}") from exc

    @staticmethod
    def _decode(data: str) -> dict | None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            return None
        return message if isinstance(message, dict) else None

    async def close(self) -> None:
        if self._session and self._session_id:
            try:
                async with self._session.delete(self.url, headers=self._request_headers()):
                    pass
            except aiohttp.ClientError as exc:
                logger.debug("MCP session teardown for '%s' failed: %s", self.name, exc)
            self._session_id = None
        await super().close()


class MCPSseClient(_HttpClientBase):
    """MCP client over the SSE transport: GET stream for responses, POST to the endpoint."""

    def __init__(self, name: str, url: str, headers: dict[str, str] | None = None,
                 connect_timeout: float = 10.0):
        super().__init__(name, url, headers, connect_timeout)
        self._pending: dict[int, asyncio.Future] = {}
        self._endpoint: asyncio.Future | None = None
        self._listen_task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._listen_task is not None:
            return
        self._endpoint = asyncio.get_running_loop().create_future()
        self._listen_task = asyncio.create_task(self._listen())
        await asyncio.shield(self._endpoint)

    async def _listen(self) -> None:
        session = self._ensure_session()
        assert self._endpoint is not None
        try:
            async with session.get(self.url, headers={"Accept": "text/event-stream"}) as resp:
                if resp.status >= 400:
                    raise MCPTransportError(f"MCP SSE stream for '{self.name}' returned HTTP {resp.status}")
                async for event, data in iter_sse_events(resp.content):
                    if event == "endpoint":
                        if not self._endpoint.done():
                            self._endpoint.set_result(urljoin(self.url, data.strip()))
                        continue
                    self._dispatch(data)
            raise MCPTransportError(f"MCP SSE stream for '{self.name}' closed")
        except (aiohttp.ClientError, ValueError, MCPTransportError) as exc:
            error = exc if isinstance(exc, MCPTransportError) else MCPTransportError(
                f"MCP SSE stream for '{self.name}' failed: {exc}"
            )
            self._fail_pending(error)

    def _dispatch(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("[mcp:%s] skipping malformed SSE data", self.name)
            return
        if not isinstance(message, dict):
            return
        req_id = message.get("id")
        if not isinstance(req_id, int):
            return
        future = self._pending.pop(req_id, None)
        if future is None or future.done():
            return
        try:
            future.set_result(self._unwrap(message))
        except MCPError as exc:
            future.set_exception(exc)

    def _fail_pending(self, error: Exception) -> None:
        if self._endpoint is not None and not self._endpoint.done():
            self._endpoint.set_exception(error)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _post(self, payload: dict) -> None:
        if self._endpoint is None or not self._endpoint.done():
            raise MCPTransportError(f"MCP SSE client '{self.name}' not started")
        session = self._ensure_session()
        try:
            async with session.post(self._endpoint.result(), json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text(errors="replace")
                    raise MCPTransportError(f"MCP HTTP {resp.status} from '{self.name}': {body[:500]}")
        except aiohttp.ClientError as exc:
            raise MCPTransportError(f"MCP SSE post to '{self.name}' failed: {exc}") from exc

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        req_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._post(self._payload(method, params, req_id))
            return await future
        finally:
            self._pending.pop(req_id, None)

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        await self._post(self._payload(method, params))

    async def close(self) -> None:
        if self._listen_task:
            self._listen_task.cancel()
            self._listen_task = None
        if self._endpoint is not None and not self._endpoint.done():
            self._endpoint.cancel()
        self._fail_pending(MCPTransportError(f"MCP client '{self.name}' closed"))
        await super().close()
