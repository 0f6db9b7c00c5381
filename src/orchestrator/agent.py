"""MCP Agent - session, capabilities and model loop in one object.

The agent coordinates:
- The MCP session and its capability registry
- Local tool registration next to discovered tools
- Prompt processing through the orchestration loop
"""

import asyncio
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from shared.config import AgentSettings, MCPServerSettings
from shared.logging import get_logger
from shared.models import (
    AgentResult,
    PromptDescriptor,
    RegisteredTool,
    ServerCapabilityFlags,
    ServerInfo,
)
from mcp_client.registry import CapabilityRegistry
from mcp_client.session import MCPSession
from orchestrator.llm import LLMProvider
from orchestrator.loop import OrchestrationLoop, StepCallback

logger = get_logger(__name__)


class MCPAgent:
    """
    Agent combining one MCP server with an LLM.

    Typical use::

        async with MCPAgent(server_settings, llm=provider) as agent:
            result = await agent.process("What are the latest AI news?")
    """

    def __init__(
        self,
        server: MCPServerSettings,
        llm: LLMProvider,
        settings: Optional[AgentSettings] = None,
        on_step_finish: Optional[StepCallback] = None
    ) -> None:
        """
        Initialize the agent.

        Args:
            server: Connection settings of the MCP server
            llm: LLM provider for completions
            settings: Loop and sampling settings
            on_step_finish: Optional callback invoked after every step
        """
        self.session = MCPSession(server)
        self.settings = settings or AgentSettings()
        self.loop = OrchestrationLoop(llm, self.settings, on_step_finish=on_step_finish)

    @property
    def registry(self) -> CapabilityRegistry:
        """Capability registry of the underlying session."""
        return self.session.registry

    async def __aenter__(self) -> "MCPAgent":
        """Async context manager entry."""
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def connect(self) -> "MCPAgent":
        """Connect to the server; capabilities load unless auto-loading is off."""
        await self.session.connect()
        logger.info(
            "Agent connected",
            server=self.session.settings.name,
            tools=len(self.registry.get_tools())
        )
        return self

    async def close(self) -> None:
        """Disconnect from the server."""
        await self.session.close()

    async def load_all_capabilities(self) -> "MCPAgent":
        """Discover tools, resources and prompts (again)."""
        await self.registry.load_all()
        return self

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: Union[type[BaseModel], dict[str, Any]],
        execute: Callable[..., Any]
    ) -> "MCPAgent":
        """Register a local tool available to the model."""
        self.registry.register_tool(name, description, parameters, execute)
        return self

    async def process(
        self,
        prompt: str,
        include_resources: Optional[bool] = None,
        abort_event: Optional[asyncio.Event] = None
    ) -> AgentResult:
        """
        Process a prompt using the LLM and the available tools.

        Args:
            prompt: User prompt
            include_resources: False to leave loaded resources out of the prompt
            abort_event: Optional cancellation signal

        Returns:
            Aggregated result of the run
        """
        return await self.loop.run(
            prompt,
            tools=self.registry.get_tools(),
            resource_context=self.registry.get_resources(),
            include_resources=include_resources,
            abort_event=abort_event
        )

    def get_tools(self) -> dict[str, RegisteredTool]:
        """Get all registered tools."""
        return self.registry.get_tools()

    def get_resources(self) -> dict[str, Any]:
        """Get all loaded resources."""
        return self.registry.get_resources()

    def get_prompts(self) -> dict[str, PromptDescriptor]:
        """Get all loaded prompts."""
        return self.registry.get_prompts()

    def get_server_capabilities(self) -> ServerCapabilityFlags:
        """Get the capability flags advertised by the server."""
        return self.session.server_capabilities

    def get_server_version(self) -> Optional[ServerInfo]:
        """Get the server name and version."""
        return self.session.server_version

    def health_check(self) -> dict[str, Any]:
        """Report session state and what has been discovered."""
        status: dict[str, Any] = {
            "session": self.session.state.value,
            "server": self.session.settings.name,
            "tool_count": len(self.registry.get_tools()),
            "resource_count": len(self.registry.get_resources()),
            "prompt_count": len(self.registry.get_prompts()),
            "warnings": [str(w) for w in self.registry.warnings],
        }
        if self.session.is_connected:
            status["capabilities"] = self.session.server_capabilities.model_dump()
        return status
