"""Orchestrator - FastAPI application and command line entry point.

The service exposes one MCP agent over HTTP:
- Prompt processing
- Discovered capabilities
- Health status

The command line entry point runs a single prompt against a server taken
from an ``mcpServers`` configuration file.
"""

import argparse
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from shared.config import MCPServerSettings, Settings, get_settings, load_server_configs
from shared.logging import get_logger, setup_logging
from shared.models import AgentResult
from mcp_client.errors import MCPConnectionError
from orchestrator.agent import MCPAgent
from orchestrator.llm import create_llm_provider
from orchestrator.loop import ModelInvocationError

logger = get_logger(__name__)


class ProcessRequest(BaseModel):
    """Prompt submitted for processing."""
    prompt: str = Field(..., min_length=1, description="User prompt")
    include_resources: Optional[bool] = Field(
        default=None,
        description="Set to false to leave loaded resources out of the prompt"
    )


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    session: str
    tool_count: int
    resource_count: int
    prompt_count: int


class CapabilitiesResponse(BaseModel):
    """Capabilities discovered on the connected server."""
    server: Optional[dict[str, Any]] = None
    capabilities: dict[str, bool]
    tools: list[dict[str, Any]]
    resources: list[str]
    prompts: list[dict[str, Any]]


# Global instances
_agent: Optional[MCPAgent] = None


def build_agent(settings: Settings, server: Optional[MCPServerSettings] = None) -> MCPAgent:
    """Create an agent from application settings."""
    return MCPAgent(
        server=server or settings.mcp_server,
        llm=create_llm_provider(settings.llm),
        settings=settings.agent
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _agent

    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.environment == "production")
    logger.info("Starting Orchestrator", server=settings.mcp_server.name)

    _agent = build_agent(settings)
    await _agent.connect()

    yield

    logger.info("Shutting down Orchestrator")
    await _agent.close()
    _agent = None


app = FastAPI(
    title="MCP Agent Bridge",
    description="LLM tool calling over Model Context Protocol servers",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def _require_agent() -> MCPAgent:
    if _agent is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Agent not initialized"
        )
    return _agent


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint."""
    agent = _require_agent()
    info = agent.health_check()

    return HealthResponse(
        status="healthy" if info["session"] == "connected" else "degraded",
        session=info["session"],
        tool_count=info["tool_count"],
        resource_count=info["resource_count"],
        prompt_count=info["prompt_count"]
    )


@app.get("/capabilities", response_model=CapabilitiesResponse, tags=["Capabilities"])
async def capabilities():
    """List what the connected server offers."""
    agent = _require_agent()
    if not agent.session.is_connected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="MCP session is not connected"
        )

    version = agent.get_server_version()
    return CapabilitiesResponse(
        server=version.model_dump() if version else None,
        capabilities=agent.get_server_capabilities().model_dump(),
        tools=[tool.to_function_definition()["function"] for tool in agent.get_tools().values()],
        resources=sorted(agent.get_resources()),
        prompts=[prompt.model_dump() for prompt in agent.get_prompts().values()]
    )


@app.post("/process", response_model=AgentResult, tags=["Agent"])
async def process(request: ProcessRequest):
    """Run one prompt through the tool calling loop."""
    agent = _require_agent()

    try:
        return await agent.process(request.prompt, include_resources=request.include_resources)
    except ModelInvocationError as e:
        logger.error("Prompt processing failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e)
        )


def main():
    """Run the Orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development"
    )


async def run_prompt(agent: MCPAgent, prompt: str) -> AgentResult:
    """Connect, process one prompt and disconnect."""
    async with agent:
        return await agent.process(prompt)


def cli(argv: Optional[list[str]] = None) -> int:
    """Process one prompt from the command line."""
    parser = argparse.ArgumentParser(description="Run a prompt against an MCP server")
    parser.add_argument("prompt", help="Prompt to process")
    parser.add_argument("--config", default="mcp-config.json", help="File with an mcpServers map")
    parser.add_argument("--server", default=None, help="Server name in the config file")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level)

    server = settings.mcp_server
    if args.server:
        servers = load_server_configs(args.config)
        if args.server not in servers:
            parser.error(f"server '{args.server}' not found in {args.config}")
        server = servers[args.server]

    try:
        result = asyncio.run(run_prompt(build_agent(settings, server), args.prompt))
    except (MCPConnectionError, ModelInvocationError) as e:
        logger.error("Run failed", error=str(e))
        return 1

    print(result.final_answer)
    for index, call in enumerate(result.tool_calls, start=1):
        print(f"Tool call {index}: {call.tool_name} {call.args}")
    return 0


if __name__ == "__main__":
    main()
