"""Configuration loading and validation."""

import json
import os
from dataclasses import dataclass, field
from gateway.exceptions import ConfigError

MCP_TYPE_LOCAL = "local"
MCP_TYPE_REMOTE = "remote"

MCP_STATUS_CONNECTED = "connected"
MCP_STATUS_DISABLED = "disabled"
MCP_STATUS_FAILED = "failed"
MCP_STATUS_UNKNOWN = "unknown"

DEFAULT_MCP_TIMEOUT_MS = 5000


@dataclass
class ChatSettings:
    """Configuration for the chat orchestration loop."""
    max_turns: int = 5
    connect_timeout: float = 10.0
    read_timeout: float = 120.0
    temperature: float = 0.7
    max_tokens: int = 0


@dataclass
class MCPSettings:
    """Configuration for MCP connection management."""
    config_path: str = "mcp.json"
    default_timeout_ms: int = DEFAULT_MCP_TIMEOUT_MS
    catalog_timeout: float = 5.0
    call_timeout: float = 30.0
    check_on_start: bool = True


@dataclass
class PermissionSettings:
    """Configuration for sandbox permission requests."""
    timeout: float = 120.0


@dataclass
class SandboxSettings:
    """Initial sandbox state seeded into the in-memory store."""
    enabled: bool = False
    paths: list[str] = field(default_factory=list)


@dataclass
class TelemetryConfig:
    """Configuration for telemetry and metrics logging."""
    enabled: bool = False
    log_dir: str = "./data/metrics"
    otel_enabled: bool = False
    otel_endpoint: str | None = None
    otel_service_name: str = "agent-gateway"


@dataclass
class GatewayConfig:
    """Complete gateway configuration."""
    chat: ChatSettings = field(default_factory=ChatSettings)
    mcp: MCPSettings = field(default_factory=MCPSettings)
    permissions: PermissionSettings = field(default_factory=PermissionSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    data_dir: str = "data"
    log_dir: str = "data/logs"
    log_level: str = "INFO"


@dataclass
class MCPServerConfig:
    """Configuration for a single MCP server, keyed by name in mcp.json."""
    type: str
    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    url: str = ""
    api_key: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    enabled: bool = False
    timeout: int = 0  # ms, 0 = use default

    def timeout_ms(self, default: int = DEFAULT_MCP_TIMEOUT_MS) -> int:
        return self.timeout if self.timeout > 0 else default

    @classmethod
    def from_dict(cls, raw: dict) -> "MCPServerConfig":
        """Parse one server entry. Shape errors raise ConfigError."""
        if not isinstance(raw, dict):
            raise ConfigError("MCP server entry must be an object")
        command = raw.get("command") or []
        if isinstance(command, str):
            command = [command]
        if not isinstance(command, list):
            raise ConfigError("MCP server command must be a list of strings")
        env = raw.get("env") or {}
        headers = raw.get("headers") or {}
        if not isinstance(env, dict) or not isinstance(headers, dict):
            raise ConfigError("MCP server env and headers must be objects")
        timeout = raw.get("timeout", 0) or 0
        try:
            timeout = int(timeout)
        except (TypeError, ValueError):
            raise ConfigError("MCP server timeout must be an integer")
        return cls(
            type=str(raw.get("type") or ""),
            command=[str(part) for part in command],
            env={str(k): str(v) for k, v in env.items()},
            url=str(raw.get("url") or ""),
            api_key=str(raw.get("api_key") or ""),
            headers={str(k): str(v) for k, v in headers.items()},
            enabled=bool(raw.get("enabled", False)),
            timeout=max(timeout, 0),
        )

    def to_dict(self) -> dict:
        data: dict = {"type": self.type}
        if self.command:
            data["command"] = list(self.command)
        if self.env:
            data["env"] = dict(self.env)
        if self.url:
            data["url"] = self.url
        if self.api_key:
            data["api_key"] = self.api_key
        if self.headers:
            data["headers"] = dict(self.headers)
        data["enabled"] = self.enabled
        if self.timeout:
            data["timeout"] = self.timeout
        return data


@dataclass
class MCPStatus:
    status: str = MCP_STATUS_UNKNOWN
    error: str = ""

    def to_dict(self) -> dict:
        data = {"status": self.status}
        if self.error:
            data["error"] = self.error
        return data


def load_config(config_path: str = "config.json") -> GatewayConfig:
    """Load configuration from JSON file with defaults."""
    if not os.path.exists(config_path):
        config = GatewayConfig()
        _apply_env_overrides(config)
        return config

    try:
        with open(config_path, "r") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}")
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root in {config_path} must be an object")

    data_dir = raw.get("data_dir", "data")
    log_dir = raw.get("log_dir", os.path.join(data_dir, "logs"))

    log_level = raw.get("log_level", "INFO")
    if not isinstance(log_level, str) or log_level.upper() not in (
        "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
    ):
        raise ConfigError("log_level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")

    config = GatewayConfig(
        chat=_load_chat_settings(raw.get("chat", {})),
        mcp=_load_mcp_settings(raw.get("mcp", {})),
        permissions=_load_permission_settings(raw.get("permissions", {})),
        sandbox=_load_sandbox_settings(raw.get("sandbox", {})),
        telemetry=_load_telemetry_settings(raw.get("telemetry", {}), data_dir),
        data_dir=data_dir,
        log_dir=log_dir,
        log_level=log_level.upper(),
    )
    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: GatewayConfig) -> None:
    env_mcp_path = os.getenv("GATEWAY_MCP_CONFIG")
    if env_mcp_path:
        config.mcp.config_path = env_mcp_path


def _load_chat_settings(raw: dict) -> ChatSettings:
    """Parse and validate chat loop settings."""
    _require_object(raw, "chat")
    return ChatSettings(
        max_turns=_coerce_int(raw.get("max_turns", 5), "chat.max_turns", 1),
        connect_timeout=_coerce_float(raw.get("connect_timeout", 10.0), "chat.connect_timeout", 0.1),
        read_timeout=_coerce_float(raw.get("read_timeout", 120.0), "chat.read_timeout", 0.1),
        temperature=_coerce_float(raw.get("temperature", 0.7), "chat.temperature", 0.0),
        max_tokens=_coerce_int(raw.get("max_tokens", 0), "chat.max_tokens", 0),
    )


def _load_mcp_settings(raw: dict) -> MCPSettings:
    """Parse and validate MCP settings."""
    _require_object(raw, "mcp")
    config_path = raw.get("config_path", "mcp.json")
    if not isinstance(config_path, str) or not config_path.strip():
        raise ConfigError("mcp.config_path must be a non-empty string")

    check_on_start = raw.get("check_on_start", True)
    if not isinstance(check_on_start, bool):
        raise ConfigError("mcp.check_on_start must be a boolean")

    return MCPSettings(
        config_path=config_path.strip(),
        default_timeout_ms=_coerce_int(
            raw.get("default_timeout_ms", DEFAULT_MCP_TIMEOUT_MS), "mcp.default_timeout_ms", 1
        ),
        catalog_timeout=_coerce_float(raw.get("catalog_timeout", 5.0), "mcp.catalog_timeout", 0.1),
        call_timeout=_coerce_float(raw.get("call_timeout", 30.0), "mcp.call_timeout", 0.1),
        check_on_start=check_on_start,
    )


def _load_permission_settings(raw: dict) -> PermissionSettings:
    _require_object(raw, "permissions")
    return PermissionSettings(
        timeout=_coerce_float(raw.get("timeout", 120.0), "permissions.timeout", 0.1),
    )


def _load_sandbox_settings(raw: dict) -> SandboxSettings:
    """Parse and validate the initial sandbox allow-list."""
    _require_object(raw, "sandbox")
    enabled = raw.get("enabled", False)
    if not isinstance(enabled, bool):
        raise ConfigError("sandbox.enabled must be a boolean")

    paths = raw.get("paths", [])
    if paths is None:
        paths = []
    if not isinstance(paths, list):
        raise ConfigError("sandbox.paths must be a list")
    for idx, path in enumerate(paths):
        if not isinstance(path, str) or not path.strip():
            raise ConfigError(f"sandbox.paths[{idx}] must be a non-empty string")

    return SandboxSettings(enabled=enabled, paths=[p.strip() for p in paths])


def _load_telemetry_settings(raw: dict, data_dir: str) -> TelemetryConfig:
    """Parse and validate telemetry settings."""
    _require_object(raw, "telemetry")
    enabled = raw.get("enabled", False)
    if not isinstance(enabled, bool):
        raise ConfigError("telemetry.enabled must be a boolean")

    log_dir = raw.get("log_dir", os.path.join(data_dir, "metrics"))
    if not isinstance(log_dir, str) or not log_dir.strip():
        raise ConfigError("telemetry.log_dir must be a non-empty string")

    otel_enabled = raw.get("otel_enabled", False)
    if not isinstance(otel_enabled, bool):
        raise ConfigError("telemetry.otel_enabled must be a boolean")

    otel_endpoint = raw.get("otel_endpoint")
    if otel_endpoint is not None and (not isinstance(otel_endpoint, str) or not otel_endpoint.strip()):
        raise ConfigError("telemetry.otel_endpoint must be a non-empty string if provided")

    otel_service_name = raw.get("otel_service_name", "agent-gateway")
    if not isinstance(otel_service_name, str) or not otel_service_name.strip():
        raise ConfigError("telemetry.otel_service_name must be a non-empty string")

    return TelemetryConfig(
        enabled=enabled,
        log_dir=log_dir,
        otel_enabled=otel_enabled,
        otel_endpoint=otel_endpoint.strip() if isinstance(otel_endpoint, str) else None,
        otel_service_name=otel_service_name.strip(),
    )


def _require_object(raw: object, name: str) -> None:
    if not isinstance(raw, dict):
        raise ConfigError(f"{name} must be an object")


def _coerce_float(value: object, name: str, min_value: float) -> float:
    """Coerce config value to float with basic validation."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number")

    if value < min_value:
        raise ConfigError(f"{name} must be >= {min_value}")
    return value


def _coerce_int(value: object, name: str, min_value: int) -> int:
    """Coerce config value to int with basic validation."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer")

    if value < min_value:
        raise ConfigError(f"{name} must be >= {min_value}")
    return value
