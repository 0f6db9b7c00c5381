"""Capability Registry - tools, resources and prompts of one session.

Holds three independent name-keyed mappings populated by discovery calls
against a connected session. Each discovery writes only its own mapping,
so the three may run concurrently. Errors local to one item (one tool,
one resource) are logged and recorded as warnings without affecting
siblings.

Name collisions follow a last-write-wins policy: a later descriptor with
the same name replaces the earlier one.
"""

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from pydantic import BaseModel

from shared.logging import get_logger
from shared.models import PromptDescriptor, RegisteredTool
from mcp_client.adapter import adapt_tool, wrap_local_tool
from mcp_client.errors import DiscoveryWarning

if TYPE_CHECKING:
    from mcp_client.session import MCPSession

logger = get_logger(__name__)


class CapabilityRegistry:
    """
    Registry of the capabilities discovered on an MCP session.

    Provides:
    - Discovery of tools, resources and prompts
    - Registration of local tools next to discovered ones
    - Read-only snapshots of each mapping
    """

    def __init__(self, session: "MCPSession") -> None:
        """
        Initialize the registry.

        Args:
            session: Session used for discovery and tool invocation
        """
        self._session = session
        self._tools: dict[str, RegisteredTool] = {}
        self._resources: dict[str, Any] = {}
        self._prompts: dict[str, PromptDescriptor] = {}
        self.warnings: list[DiscoveryWarning] = []

    def _warn(
        self,
        capability: str,
        message: str,
        item: Optional[str] = None,
        error: Optional[BaseException] = None
    ) -> None:
        self.warnings.append(DiscoveryWarning(capability, message, item))
        logger.warning(
            message,
            capability=capability,
            item=item,
            error=str(error) if error else None
        )

    def _store_tool(self, tool: RegisteredTool) -> None:
        if tool.name in self._tools:
            logger.warning("Overwriting registered tool", tool=tool.name)
        self._tools[tool.name] = tool

    async def discover_tools(self) -> list[RegisteredTool]:
        """
        Discover and register every tool the server declares.

        Returns:
            Registered tools of this discovery, one per unique name

        Raises:
            NotConnectedError: If the session is not connected
        """
        if not self._session.server_capabilities.tools:
            self._warn("tools", "Server does not support tools")
            return []

        try:
            descriptors = await self._session.list_tools()
        except Exception as e:
            self._warn("tools", "Error loading tools", error=e)
            return []

        logger.info("Loaded tools from server", count=len(descriptors))

        names: list[str] = []
        for descriptor in descriptors:
            try:
                tool = adapt_tool(descriptor, self._session)
            except Exception as e:
                self._warn("tools", "Error registering MCP tool", item=descriptor.name, error=e)
                continue
            self._store_tool(tool)
            if tool.name not in names:
                names.append(tool.name)

        return [self._tools[name] for name in names]

    async def discover_resources(self) -> dict[str, Any]:
        """
        Discover resources and read each one.

        Reads run concurrently; a resource that fails to load is skipped.

        Returns:
            Contents keyed by resource name for the resources loaded now

        Raises:
            NotConnectedError: If the session is not connected
        """
        if not self._session.server_capabilities.resources:
            self._warn("resources", "Server does not support resources")
            return {}

        try:
            resources = await self._session.list_resources()
        except Exception as e:
            self._warn("resources", "Error loading resources", error=e)
            return {}

        logger.info("Found resources on server", count=len(resources))

        results = await asyncio.gather(
            *(self._session.read_resource(resource.uri) for resource in resources),
            return_exceptions=True
        )

        loaded: dict[str, Any] = {}
        for resource, result in zip(resources, results):
            if isinstance(result, Exception):
                self._warn("resources", "Failed to load resource", item=resource.name, error=result)
                continue
            if isinstance(result, BaseException):
                raise result
            loaded[resource.name] = result

        self._resources.update(loaded)
        return loaded

    async def discover_prompts(self) -> dict[str, PromptDescriptor]:
        """
        Discover the prompts the server declares.

        Returns:
            Prompt descriptors keyed by name

        Raises:
            NotConnectedError: If the session is not connected
        """
        if not self._session.server_capabilities.prompts:
            self._warn("prompts", "Server does not support prompts")
            return {}

        try:
            prompts = await self._session.list_prompts()
        except Exception as e:
            self._warn("prompts", "Error loading prompts", error=e)
            return {}

        logger.info("Loaded prompts from server", count=len(prompts))

        loaded = {prompt.name: prompt for prompt in prompts}
        self._prompts.update(loaded)
        return loaded

    async def load_all(self) -> None:
        """Run the three discoveries concurrently and wait for all of them."""
        await asyncio.gather(
            self.discover_tools(),
            self.discover_resources(),
            self.discover_prompts()
        )
        logger.info(
            "Capabilities loaded",
            tools=len(self._tools),
            resources=len(self._resources),
            prompts=len(self._prompts),
            warnings=len(self.warnings)
        )

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: Union[type[BaseModel], dict[str, Any]],
        execute: Callable[..., Any]
    ) -> RegisteredTool:
        """
        Register a locally implemented tool.

        Args:
            name: Tool name exposed to the model
            description: Tool description exposed to the model
            parameters: Pydantic model or JSON Schema for the arguments
            execute: Sync or async callable receiving the validated arguments

        Returns:
            The registered tool
        """
        tool = wrap_local_tool(name, description, parameters, execute)
        self._store_tool(tool)
        return tool

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        """Get a registered tool by name."""
        return self._tools.get(name)

    def get_tools(self) -> dict[str, RegisteredTool]:
        """Get a copy of the registered tools."""
        return dict(self._tools)

    def get_resources(self) -> dict[str, Any]:
        """Get a copy of the loaded resources."""
        return dict(self._resources)

    def get_prompts(self) -> dict[str, PromptDescriptor]:
        """Get a copy of the loaded prompts."""
        return dict(self._prompts)

    def clear(self) -> None:
        """Drop everything discovered so far."""
        self._tools.clear()
        self._resources.clear()
        self._prompts.clear()
        self.warnings.clear()
