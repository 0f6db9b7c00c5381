"""Exceptions raised by the MCP client layer."""

from typing import Optional


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Transport parameters are missing or the handshake failed."""
    pass


class NotConnectedError(MCPClientError):
    """A capability operation was attempted without a connected session."""
    pass


class ToolInvocationError(MCPClientError):
    """A tool call failed at the transport or on the server."""

    def __init__(self, tool_name: str, cause: object) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(f"Failed to call MCP tool {tool_name}: {cause}")


class DiscoveryWarning(MCPClientError):
    """
    A non-fatal discovery problem.

    Recorded by the capability registry when a capability class cannot be
    listed or a single resource fails to load; never raised.
    """

    def __init__(self, capability: str, message: str, item: Optional[str] = None) -> None:
        self.capability = capability
        self.item = item
        super().__init__(message)
