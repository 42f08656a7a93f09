"""Custom exceptions for Agent Gateway."""


class GatewayError(Exception):
    """Base class for errors raised by the gateway core."""
    pass


class TransportError(GatewayError):
    """Raised when a request cannot be dispatched or a stream read fails."""
    pass


class ProtocolError(GatewayError):
    """Raised on non-2xx responses or an unexpected stream shape."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class DecodeError(GatewayError):
    """Raised when a single stream line or event cannot be decoded."""
    pass


class ToolNotFoundError(GatewayError):
    """Raised when no tool source can serve a requested tool."""
    pass


class ConfigError(GatewayError):
    """Raised when configuration is invalid or missing."""
    pass


class MCPError(GatewayError):
    """Raised for MCP manager level failures (unknown server, bad config)."""
    pass


class MCPTransportError(MCPError):
    """Raised when MCP transport communication fails."""
    pass


class PermissionTimeoutError(GatewayError):
    """Raised when a permission request is not answered in time."""
    pass
