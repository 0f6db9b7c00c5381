"""MCP Client - session, capability discovery and tool adaptation.

Connects to an MCP server over streamable HTTP, SSE or stdio, discovers
its tools, resources and prompts, and wraps each tool as a validated
callable for the orchestration loop.
"""

from mcp_client.adapter import adapt_tool, wrap_local_tool
from mcp_client.errors import (
    DiscoveryWarning,
    MCPClientError,
    MCPConnectionError,
    NotConnectedError,
    ToolInvocationError,
)
from mcp_client.registry import CapabilityRegistry
from mcp_client.session import MCPSession

__all__ = [
    "adapt_tool",
    "wrap_local_tool",
    "CapabilityRegistry",
    "MCPSession",
    "DiscoveryWarning",
    "MCPClientError",
    "MCPConnectionError",
    "NotConnectedError",
    "ToolInvocationError",
]
