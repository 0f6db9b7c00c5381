"""Session Manager - connection lifecycle for one MCP server.

Owns the transport (streamable HTTP, SSE or a stdio subprocess) and the
MCP ``ClientSession`` running over it, tracks the session state, and
drives capability discovery through the registry once connected.
"""

import asyncio
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation
from pydantic import AnyUrl

from shared.config import MCPServerSettings
from shared.logging import get_logger
from shared.models import (
    PromptArgument,
    PromptDescriptor,
    ResourceDescriptor,
    ServerCapabilityFlags,
    ServerInfo,
    SessionState,
    ToolDescriptor,
    TransportType,
)
from mcp_client.adapter import to_plain
from mcp_client.errors import MCPConnectionError, NotConnectedError
from mcp_client.registry import CapabilityRegistry

logger = get_logger(__name__)


class MCPSession:
    """
    Connection to a single MCP server.

    Provides methods for:
    - Connecting over the configured transport and negotiating capabilities
    - Listing and invoking tools, listing and reading resources, listing prompts
    - Closing the transport

    Capability operations are only valid while connected; otherwise they
    raise ``NotConnectedError``. Concurrent ``connect`` calls on the same
    session are not supported.
    """

    def __init__(self, settings: MCPServerSettings) -> None:
        """
        Initialize the session.

        Args:
            settings: Server connection settings
        """
        self.settings = settings
        self.registry = CapabilityRegistry(self)

        self._state = SessionState.DISCONNECTED
        self._stack: Optional[AsyncExitStack] = None
        self._client: Optional[ClientSession] = None
        self._capabilities = ServerCapabilityFlags()
        self._server_info: Optional[ServerInfo] = None

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the session is connected."""
        return self._state == SessionState.CONNECTED

    @property
    def server_capabilities(self) -> ServerCapabilityFlags:
        """
        Capability flags advertised by the server.

        Raises:
            NotConnectedError: If the session is not connected
        """
        self._require_connected()
        return self._capabilities

    @property
    def server_version(self) -> Optional[ServerInfo]:
        """Name and version reported by the server, if connected."""
        return self._server_info

    async def __aenter__(self) -> "MCPSession":
        """Async context manager entry."""
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def _validate_transport(self) -> None:
        """Fail fast when the selected transport lacks its parameters."""
        transport = self.settings.transport_type
        if transport in (TransportType.STREAMABLE_HTTP, TransportType.SSE):
            if not self.settings.server_url:
                raise MCPConnectionError(f"server_url is required for {transport.value} transport")
        elif transport == TransportType.STDIO:
            if not self.settings.command:
                raise MCPConnectionError("command is required for stdio transport")

    async def _open_client(self, stack: AsyncExitStack) -> ClientSession:
        """Open the transport and wrap it in an MCP client session."""
        settings = self.settings
        timeout = settings.timeout_seconds

        if settings.transport_type == TransportType.STREAMABLE_HTTP:
            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(
                    settings.server_url,
                    headers=settings.headers or None,
                    **({"timeout": timeout} if timeout else {})
                )
            )
        elif settings.transport_type == TransportType.SSE:
            read_stream, write_stream = await stack.enter_async_context(
                sse_client(
                    settings.server_url,
                    headers=settings.headers or None,
                    **({"timeout": timeout} if timeout else {})
                )
            )
        else:
            params = StdioServerParameters(
                command=settings.command,
                args=settings.args,
                env=settings.env,
                cwd=settings.cwd,
            )
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params))

        return await stack.enter_async_context(
            ClientSession(
                read_stream,
                write_stream,
                read_timeout_seconds=timedelta(seconds=timeout) if timeout else None,
                client_info=Implementation(
                    name=settings.client_name,
                    version=settings.client_version
                ),
            )
        )

    async def connect(self) -> "MCPSession":
        """
        Connect, run the handshake and optionally load all capabilities.

        Returns:
            The session itself, for chaining

        Raises:
            MCPConnectionError: If transport parameters are missing or the
                handshake fails
        """
        if self.is_connected:
            logger.debug("Session already connected", server=self.settings.name)
            return self

        self._validate_transport()

        transport = self.settings.transport_type.value
        self._state = SessionState.CONNECTING
        stack = AsyncExitStack()

        try:
            client = await self._open_client(stack)
            result = await client.initialize()
        except BaseException as e:
            # Transports run in an anyio task group: a failing transport task
            # cancels the handshake and its real error surfaces on close.
            cleanup_error = await self._abort(stack)
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                self._state = SessionState.DISCONNECTED
                raise
            if not isinstance(e, (Exception, asyncio.CancelledError, BaseExceptionGroup)):
                raise

            cause = _root_cause(e) or _root_cause(cleanup_error)
            logger.error(
                "Failed to connect to MCP server",
                transport=transport,
                error=repr(cause) if cause else "connection closed"
            )
            if isinstance(cause, httpx.HTTPError):
                raise MCPConnectionError(
                    f"Cannot connect to MCP server at {self.settings.server_url}: {cause}"
                ) from cause
            if cause is None:
                raise MCPConnectionError(
                    f"MCP handshake failed over {transport}: connection closed by server"
                ) from e
            raise MCPConnectionError(f"MCP handshake failed over {transport}: {cause}") from cause

        self._stack = stack
        self._client = client
        self._capabilities = _capability_flags(getattr(result, "capabilities", None))
        info = getattr(result, "serverInfo", None)
        self._server_info = ServerInfo(name=info.name, version=info.version) if info else None
        self._state = SessionState.CONNECTED

        logger.info(
            "Connected to MCP server",
            server=self.settings.name,
            transport=transport,
            capabilities=self._capabilities.model_dump()
        )

        if self.settings.auto_load_capabilities:
            await self.registry.load_all()

        return self

    async def _abort(self, stack: AsyncExitStack) -> Optional[BaseException]:
        """Mark the session failed and close the transport, returning any close error."""
        self._state = SessionState.FAILED
        try:
            await stack.aclose()
        except BaseException as e:
            logger.debug("Transport cleanup after failed handshake raised", error=repr(e))
            return e
        return None

    async def close(self) -> None:
        """Release the transport; later capability calls raise NotConnectedError."""
        stack, self._stack = self._stack, None
        self._client = None
        self._server_info = None
        self.registry.clear()

        if stack is not None:
            try:
                await stack.aclose()
            finally:
                self._state = SessionState.DISCONNECTED
                logger.info("Disconnected from MCP server", server=self.settings.name)
        else:
            self._state = SessionState.DISCONNECTED

    def _require_connected(self) -> ClientSession:
        if self._state != SessionState.CONNECTED or self._client is None:
            raise NotConnectedError(
                f"MCP session '{self.settings.name}' is not connected (state: {self._state.value})"
            )
        return self._client

    async def _paginate(self, method: Callable[..., Awaitable[Any]], field: str) -> list[Any]:
        result = await method()
        items = list(getattr(result, field))
        while getattr(result, "nextCursor", None):
            result = await method(cursor=result.nextCursor)
            items.extend(getattr(result, field))
        return items

    async def list_tools(self) -> list[ToolDescriptor]:
        """List the tools declared by the server."""
        client = self._require_connected()
        tools = await self._paginate(client.list_tools, "tools")
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description,
                input_schema=tool.inputSchema or {}
            )
            for tool in tools
        ]

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> Any:
        """
        Invoke a tool on the server.

        Returns:
            The raw ``CallToolResult`` from the server
        """
        client = self._require_connected()
        logger.debug("Calling MCP tool", tool=name)
        return await client.call_tool(name, arguments or {})

    async def list_resources(self) -> list[ResourceDescriptor]:
        """List the resources declared by the server."""
        client = self._require_connected()
        resources = await self._paginate(client.list_resources, "resources")
        return [
            ResourceDescriptor(
                name=resource.name,
                uri=str(resource.uri),
                description=resource.description,
                mime_type=resource.mimeType
            )
            for resource in resources
        ]

    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        """Read one resource and return its contents as plain dicts."""
        client = self._require_connected()
        result = await client.read_resource(AnyUrl(uri))
        return [to_plain(content) for content in result.contents]

    async def list_prompts(self) -> list[PromptDescriptor]:
        """List the prompts declared by the server."""
        client = self._require_connected()
        prompts = await self._paginate(client.list_prompts, "prompts")
        return [
            PromptDescriptor(
                name=prompt.name,
                description=prompt.description,
                arguments=[
                    PromptArgument(
                        name=arg.name,
                        description=arg.description,
                        required=bool(arg.required)
                    )
                    for arg in prompt.arguments or []
                ]
            )
            for prompt in prompts
        ]


def _capability_flags(capabilities: Any) -> ServerCapabilityFlags:
    """Reduce the server's capability object to three booleans."""
    if capabilities is None:
        return ServerCapabilityFlags()
    return ServerCapabilityFlags(
        tools=getattr(capabilities, "tools", None) is not None,
        resources=getattr(capabilities, "resources", None) is not None,
        prompts=getattr(capabilities, "prompts", None) is not None,
    )


def _root_cause(error: Optional[BaseException]) -> Optional[BaseException]:
    """First error that is not a cancellation, looking inside exception groups."""
    if error is None or isinstance(error, asyncio.CancelledError):
        return None
    if isinstance(error, BaseExceptionGroup):
        for inner in error.exceptions:
            cause = _root_cause(inner)
            if cause is not None:
                return cause
        return None
    return error
