"""GatewayContext - the service container handed to the chat loop and web layer."""

from __future__ import annotations

import uuid

from gateway.command_gate import CommandGate
from gateway.config import GatewayConfig
from gateway.permissions import PermissionManager
from gateway.sandbox import SandboxEvaluator
from gateway.schema import ChatMessage, ModelConfig
from gateway.telemetry import Telemetry
from providers.client import ProviderClient
from tools.catalog import ToolCatalog
from tools.dispatcher import ToolDispatcher
from tools.mcp_manager import ClientFactory, MCPManager
from tools.skills import SkillStore, StaticSkillStore


class ChatSession:
    """One conversation: model selection plus the message history."""

    def __init__(self, config: GatewayConfig, model: ModelConfig, session_id: str | None = None,
                 system_prompt: str = ""):
        self.id: str = session_id or uuid.uuid4().hex[:12]
        self.model = model
        self.system_prompt = system_prompt
        self.history: list[ChatMessage] = []
        self.telemetry = Telemetry(config.telemetry, self.id)


class GatewayContext:
    """Explicit wiring of every collaborator the core needs."""

    def __init__(
        self,
        config: GatewayConfig,
        skills: SkillStore | None = None,
        provider_client: ProviderClient | None = None,
        mcp: MCPManager | None = None,
        sandbox: SandboxEvaluator | None = None,
        permissions: PermissionManager | None = None,
        mcp_client_factory: ClientFactory | None = None,
    ):
        self.config = config
        self.skills = skills or StaticSkillStore()
        self.provider_client = provider_client or ProviderClient(
            connect_timeout=config.chat.connect_timeout,
            read_timeout=config.chat.read_timeout,
        )
        self.mcp = mcp or MCPManager(config.mcp, client_factory=mcp_client_factory)
        self.sandbox = sandbox or SandboxEvaluator.from_settings(
            config.sandbox.enabled, config.sandbox.paths
        )
        self.permissions = permissions or PermissionManager()
        self.catalog = ToolCatalog(self.skills, self.mcp, list_timeout=config.mcp.catalog_timeout)
        self.dispatcher = ToolDispatcher(self.skills, self.mcp, call_timeout=config.mcp.call_timeout)
        self.command_gate = CommandGate(self.sandbox, self.permissions, timeout=config.permissions.timeout)

    def create_session(self, model: ModelConfig, session_id: str | None = None,
                       system_prompt: str = "") -> ChatSession:
        return ChatSession(self.config, model, session_id=session_id, system_prompt=system_prompt)

    async def start(self) -> None:
        if self.config.mcp.check_on_start:
            await self.mcp.check_all_enabled()

    async def shutdown(self) -> None:
        await self.mcp.shutdown()
