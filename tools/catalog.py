"""Per-turn tool catalog: control tools, enabled skills and live MCP tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from gateway.exceptions import GatewayError
from gateway.schema import ToolSchema
from tools.control_tools import CONTROL_TOOLS
from tools.mcp_client import MCPClient, MCPToolSpec
from tools.mcp_manager import MCPManager
from tools.skills import SkillStore, skill_schema

logger = logging.getLogger(__name__)


@dataclass
class CatalogSnapshot:
    """Tool schemas offered for one turn plus which MCP servers advertise each name."""
    tools: list[ToolSchema] = field(default_factory=list)
    mcp_owners: dict[str, list[str]] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return [tool.name for tool in self.tools]


class ToolCatalog:
    """Builds a fresh CatalogSnapshot on every call; nothing is cached."""

    def __init__(self, skills: SkillStore, mcp: MCPManager | None = None, list_timeout: float = 5.0):
        self.skills = skills
        self.mcp = mcp
        self.list_timeout = list_timeout

    async def build(self) -> CatalogSnapshot:
        snapshot = CatalogSnapshot()
        seen: set[str] = set()

        def add(schema: ToolSchema) -> bool:
            if schema.name in seen:
                return False
            seen.add(schema.name)
            snapshot.tools.append(schema)
            return True

        for tool in CONTROL_TOOLS:
            add(tool.schema())
        for skill in self.skills.list_enabled_skills():
            if not add(skill_schema(skill)):
                logger.warning("Skill '%s' shadowed by an earlier tool of the same name", skill.name)

        for server, specs in await self._mcp_tools():
            for spec in specs:
                # A name claimed by a control tool or skill never routes to MCP.
                if spec.name in snapshot.mcp_owners or spec.name not in seen:
                    owners = snapshot.mcp_owners.setdefault(spec.name, [])
                    if server not in owners:
                        owners.append(server)
                add(spec.to_schema())
        return snapshot

    async def _mcp_tools(self) -> list[tuple[str, list[MCPToolSpec]]]:
        if self.mcp is None:
            return []
        clients = self.mcp.connected_clients()
        results = await asyncio.gather(*(self._list(name, client) for name, client in clients))
        return [(name, specs) for (name, _), specs in zip(clients, results)]

    async def _list(self, server: str, client: MCPClient) -> list[MCPToolSpec]:
        try:
            return await asyncio.wait_for(client.list_tools(), self.list_timeout)
        except asyncio.TimeoutError:
            logger.warning("MCP server '%s' tool listing timed out after %.1fs", server, self.list_timeout)
        except (GatewayError, OSError) as exc:
            logger.warning("MCP server '%s' tool listing failed: %s", server, exc)
        return []
