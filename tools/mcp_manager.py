"""MCP connection manager: named servers, health checks and the live client pool."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Callable

from gateway.config import (
    MCP_STATUS_CONNECTED,
    MCP_STATUS_DISABLED,
    MCP_STATUS_FAILED,
    MCP_STATUS_UNKNOWN,
    MCP_TYPE_LOCAL,
    MCP_TYPE_REMOTE,
    MCPServerConfig,
    MCPSettings,
    MCPStatus,
)
from gateway.exceptions import ConfigError, GatewayError, MCPError
from tools.mcp_client import MCPClient, MCPSseClient, MCPStdioClient, MCPStreamableHttpClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, MCPServerConfig], MCPClient]

# Added to the per-server timeout for background checks started by set_server.
BACKGROUND_CHECK_GRACE_MS = 500


def remote_headers(config: MCPServerConfig) -> dict[str, str]:
    """Request headers for a remote server; api_key becomes a Bearer token unless overridden."""
    headers = dict(config.headers)
    has_auth = any(key.lower() == "authorization" for key in headers)
    if config.api_key and not has_auth:
        headers["Authorization"] = f"Bearer {config.api_key}"
    return headers


class MCPManager:
    """Owns MCP server configs, their connection status and live clients."""

    def __init__(self, settings: MCPSettings, client_factory: ClientFactory | None = None):
        self.settings = settings
        self.config_path = settings.config_path
        self._clients: dict[str, MCPClient] = {}
        self._status: dict[str, MCPStatus] = {}
        self._lock = asyncio.Lock()
        self._client_factory = client_factory or self._default_client_factory
        self._background: dict[str, asyncio.Task] = {}

    # ── Persisted config ─────────────────────────────────────────────

    def _load_raw(self) -> dict[str, dict]:
        if not os.path.exists(self.config_path):
            return {}
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            raise MCPError(f"failed to read MCP config {self.config_path}: {exc}") from exc
        servers = data.get("servers") if isinstance(data, dict) else None
        if servers is None:
            return {}
        if not isinstance(servers, dict):
            raise MCPError(f"'servers' in {self.config_path} must be an object")
        return servers

    def _save_raw(self, servers: dict[str, dict]) -> None:
        directory = os.path.dirname(os.path.abspath(self.config_path))
        os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump({"servers": servers}, f, indent=2)

    def load_config(self) -> dict[str, MCPServerConfig]:
        """Parse every server entry; invalid entries are skipped and logged."""
        servers: dict[str, MCPServerConfig] = {}
        for name, raw in self._load_raw().items():
            try:
                servers[name] = MCPServerConfig.from_dict(raw)
            except ConfigError as exc:
                logger.warning("Skipping invalid MCP server '%s': %s", name, exc)
        return servers

    def save_config(self, servers: dict[str, MCPServerConfig]) -> None:
        self._save_raw({name: cfg.to_dict() for name, cfg in servers.items()})

    def list_server_names(self) -> list[str]:
        return sorted(self._load_raw())

    def get_server_config(self, name: str) -> MCPServerConfig:
        raw = self._load_raw()
        if name not in raw:
            raise MCPError(f"MCP server '{name}' not found")
        return MCPServerConfig.from_dict(raw[name])

    # ── Mutations ────────────────────────────────────────────────────

    async def set_server(self, name: str, config: MCPServerConfig) -> None:
        """Persist a server entry, then reconnect it in the background or disable it."""
        raw = self._load_raw()
        raw[name] = config.to_dict()
        self._save_raw(raw)
        await self._cancel_check(name)
        if config.enabled:
            deadline = (config.timeout_ms(self.settings.default_timeout_ms) + BACKGROUND_CHECK_GRACE_MS) / 1000
            self._spawn(name, self._check_with_deadline(name, deadline))
        else:
            await self._disconnect(name)
            await self._set_status(name, MCP_STATUS_DISABLED)

    async def delete_server(self, name: str) -> None:
        raw = self._load_raw()
        if name not in raw:
            raise MCPError(f"MCP server '{name}' not found")
        del raw[name]
        self._save_raw(raw)
        await self._cancel_check(name)
        await self._disconnect(name)
        async with self._lock:
            self._status.pop(name, None)

    # ── Health checks ────────────────────────────────────────────────

    async def check_server(self, name: str) -> MCPStatus:
        """Reconnect one server from scratch and return its resulting status."""
        try:
            raw = self._load_raw()
        except MCPError as exc:
            return MCPStatus(MCP_STATUS_FAILED, str(exc))
        if name not in raw:
            async with self._lock:
                self._status.pop(name, None)
            return MCPStatus(MCP_STATUS_FAILED, "server not found")

        try:
            config = MCPServerConfig.from_dict(raw[name])
        except ConfigError as exc:
            await self._disconnect(name)
            return await self._set_status(name, MCP_STATUS_FAILED, str(exc))

        await self._disconnect(name)
        if not config.enabled:
            return await self._set_status(name, MCP_STATUS_DISABLED)
        await self._connect(name, config)
        return self._status.get(name, MCPStatus())

    async def check_all_enabled(self) -> dict[str, MCPStatus]:
        """Check every enabled server concurrently and return a status snapshot."""
        try:
            raw = self._load_raw()
        except MCPError as exc:
            logger.warning("MCP config load failed: %s", exc)
            return {}
        checks = []
        for name in sorted(raw):
            entry = raw[name]
            if not (isinstance(entry, dict) and entry.get("enabled")):
                await self._disconnect(name)
                await self._set_status(name, MCP_STATUS_DISABLED)
                continue
            checks.append(self.check_server(name))
        await asyncio.gather(*checks)
        return dict(self._status)

    def get_status(self) -> dict[str, MCPStatus]:
        """Status for every configured server, Unknown when never checked."""
        try:
            names = self._load_raw()
        except MCPError as exc:
            logger.warning("MCP config load failed: %s", exc)
            names = {}
        return {name: self._status.get(name, MCPStatus(MCP_STATUS_UNKNOWN)) for name in sorted(names)}

    # ── Pool access ──────────────────────────────────────────────────

    def get_client(self, name: str) -> MCPClient | None:
        return self._clients.get(name)

    def connected_clients(self) -> list[tuple[str, MCPClient]]:
        """Snapshot of live clients, sorted by server name."""
        return sorted(self._clients.items(), key=lambda item: item[0])

    async def drain(self) -> None:
        """Wait for background checks started by set_server."""
        while self._background:
            await asyncio.wait(list(self._background.values()))

    async def shutdown(self) -> None:
        for task in list(self._background.values()):
            task.cancel()
        if self._background:
            await asyncio.wait(list(self._background.values()))
        async with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
            for name, client in clients:
                logger.info("Closing MCP client '%s'", name)
                await client.close()

    # ── Internals ────────────────────────────────────────────────────

    def _default_client_factory(self, name: str, config: MCPServerConfig) -> MCPClient:
        if config.type == MCP_TYPE_LOCAL:
            if not config.command:
                raise ConfigError("local MCP requires non-empty command")
            return MCPStdioClient(name, config.command, config.env)
        if config.type == MCP_TYPE_REMOTE:
            headers = remote_headers(config)
            try:
                return MCPStreamableHttpClient(name, config.url, headers)
            except MCPError as exc:
                logger.info("Streamable HTTP client for '%s' unavailable (%s); using SSE", name, exc)
                return MCPSseClient(name, config.url, headers)
        raise ConfigError(f"unknown type: {config.type}")

    async def _connect(self, name: str, config: MCPServerConfig) -> None:
        timeout_ms = config.timeout_ms(self.settings.default_timeout_ms)
        try:
            client = self._client_factory(name, config)
        except GatewayError as exc:
            logger.warning("MCP server '%s' cannot be created: %s", name, exc)
            await self._set_status(name, MCP_STATUS_FAILED, str(exc))
            return

        try:
            await asyncio.wait_for(self._handshake(client), timeout_ms / 1000)
        except asyncio.CancelledError:
            await client.close()
            raise
        except asyncio.TimeoutError:
            await client.close()
            logger.warning("MCP server '%s' timed out after %d ms", name, timeout_ms)
            await self._set_status(name, MCP_STATUS_FAILED, f"timed out after {timeout_ms} ms")
            return
        except (GatewayError, OSError) as exc:
            await client.close()
            logger.warning("MCP server '%s' connection failed: %s", name, exc)
            await self._set_status(name, MCP_STATUS_FAILED, str(exc) or exc.__class__.__name__)
            return

        try:
            await self._lock.acquire()
        except asyncio.CancelledError:
            await client.close()
            raise
        try:
            old = self._clients.get(name)
            self._clients[name] = client
            self._status[name] = MCPStatus(MCP_STATUS_CONNECTED)
            if old is not None and old is not client:
                await old.close()
        finally:
            self._lock.release()
        logger.info("MCP server '%s' connected", name)

    @staticmethod
    async def _handshake(client: MCPClient) -> None:
        if not client.initialized:
            await client.start()
            await client.initialize()
        await client.list_tools()

    async def _disconnect(self, name: str) -> None:
        async with self._lock:
            client = self._clients.pop(name, None)
            if client is not None:
                await client.close()

    async def _set_status(self, name: str, status: str, error: str = "") -> MCPStatus:
        value = MCPStatus(status, error)
        async with self._lock:
            self._status[name] = value
        return value

    async def _check_with_deadline(self, name: str, deadline: float) -> None:
        try:
            await asyncio.wait_for(self.check_server(name), deadline)
        except asyncio.TimeoutError:
            await self._set_status(name, MCP_STATUS_FAILED, "check timed out")

    def _spawn(self, name: str, coro) -> None:
        task = asyncio.create_task(coro)
        self._background[name] = task
        task.add_done_callback(lambda done: self._on_background_done(name, done))

    async def _cancel_check(self, name: str) -> None:
        """Stop an in-flight background check so it cannot install a client afterwards."""
        task = self._background.get(name)
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    def _on_background_done(self, name: str, task: asyncio.Task) -> None:
        if self._background.get(name) is task:
            del self._background[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("MCP background check failed", exc_info=exc)
