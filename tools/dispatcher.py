"""Tool dispatch: control tools, then user skills, then MCP servers."""

from __future__ import annotations

import asyncio
import logging
import time

from gateway.exceptions import GatewayError, ToolNotFoundError
from gateway.schema import ToolCall
from gateway.telemetry import Telemetry
from tools.base_tool import ToolResult
from tools.catalog import CatalogSnapshot
from tools.control_tools import get_control_tool
from tools.mcp_manager import MCPManager
from tools.skills import SkillStore, run_skill

logger = logging.getLogger(__name__)

SOURCE_CONTROL = "control"
SOURCE_SKILL = "skill"
SOURCE_MCP = "mcp"


class ToolDispatcher:
    """Route a tool call to the first source that serves its name."""

    def __init__(self, skills: SkillStore, mcp: MCPManager | None = None, call_timeout: float = 30.0):
        self.skills = skills
        self.mcp = mcp
        self.call_timeout = call_timeout

    def source_of(self, name: str) -> str:
        if get_control_tool(name) is not None:
            return SOURCE_CONTROL
        skill = self.skills.get_skill(name)
        if skill is not None and skill.enabled:
            return SOURCE_SKILL
        return SOURCE_MCP

    async def dispatch(
        self,
        call: ToolCall,
        catalog: CatalogSnapshot,
        telemetry: Telemetry | None = None,
    ) -> ToolResult:
        name = call.function.name
        arguments = call.function.arguments
        start = time.monotonic()
        source = self.source_of(name)

        if source == SOURCE_CONTROL:
            result = await get_control_tool(name).execute(arguments)
        elif source == SOURCE_SKILL:
            result = ToolResult(message=run_skill(self.skills.get_skill(name), arguments))
        else:
            try:
                return await self._dispatch_mcp(call, catalog, telemetry)
            except ToolNotFoundError as exc:
                logger.warning("%s", exc)
                return ToolResult(message=f"Tool {name} not found or execution failed")

        if telemetry:
            telemetry.record_tool_call(name, source, (time.monotonic() - start) * 1000)
        return result

    async def _dispatch_mcp(
        self,
        call: ToolCall,
        catalog: CatalogSnapshot,
        telemetry: Telemetry | None,
    ) -> ToolResult:
        """Try each advertising server in name order; first success wins."""
        name = call.function.name
        args = call.parsed_arguments()
        servers = catalog.mcp_owners.get(name, []) if self.mcp is not None else []
        for server in servers:
            client = self.mcp.get_client(server)
            if client is None:
                continue
            start = time.monotonic()
            try:
                text = await asyncio.wait_for(client.call_tool(name, args), self.call_timeout)
            except asyncio.TimeoutError:
                error = f"timed out after {self.call_timeout:.1f}s"
            except (GatewayError, OSError) as exc:
                error = str(exc) or exc.__class__.__name__
            else:
                if telemetry:
                    telemetry.record_tool_call(name, SOURCE_MCP, (time.monotonic() - start) * 1000, server=server)
                return ToolResult(message=text)
            logger.warning("MCP tool '%s' failed on server '%s': %s", name, server, error)
            if telemetry:
                telemetry.record_tool_call(
                    name, SOURCE_MCP, (time.monotonic() - start) * 1000, server=server, error=error
                )
        raise ToolNotFoundError(f"no MCP server could execute tool '{name}'")
