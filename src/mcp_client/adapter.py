"""Tool Adapter - wraps discovered tools as callables.

Each adapter is a stateless wrapper built per descriptor: it derives the
validated-input model from the tool's schema and forwards invocations to
the session. Failures are returned as ``{"error": ...}`` payloads so that
a broken tool degrades the model's context instead of aborting a run.
"""

import inspect
from typing import TYPE_CHECKING, Any, Callable, Union

from pydantic import BaseModel

from shared.logging import get_logger
from shared.models import RegisteredTool, ToolDescriptor
from shared.schema import build_input_model
from mcp_client.errors import ToolInvocationError

if TYPE_CHECKING:
    from mcp_client.session import MCPSession

logger = get_logger(__name__)


def to_plain(block: Any) -> Any:
    """Convert an SDK content block into plain JSON data."""
    if isinstance(block, BaseModel):
        return block.model_dump(mode="json", exclude_none=True)
    return block


def _error_text(result: Any) -> str:
    parts = [getattr(block, "text", None) for block in getattr(result, "content", None) or []]
    text = "\n".join(p for p in parts if p)
    return text or "tool reported an error"


def normalize_result(result: Any) -> Any:
    """
    Normalize a ``tools/call`` result.

    Returns the structured content when the server sent any, otherwise the
    unstructured content blocks as plain dicts.
    """
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured
    content = getattr(result, "content", None)
    if content is None:
        return to_plain(result)
    return [to_plain(block) for block in content]


def adapt_tool(descriptor: ToolDescriptor, session: "MCPSession") -> RegisteredTool:
    """
    Wrap a server-declared tool behind a callable signature.

    Args:
        descriptor: Tool as listed by the server
        session: Session used to invoke the tool

    Returns:
        Registered tool whose ``invoke`` never raises for tool failures
    """
    input_model = build_input_model(descriptor.name, descriptor.input_schema)

    async def invoke(arguments: dict[str, Any]) -> Any:
        try:
            result = await session.call_tool(descriptor.name, arguments)
            if getattr(result, "isError", False):
                raise ToolInvocationError(descriptor.name, _error_text(result))
            return normalize_result(result)
        except Exception as e:
            error = e if isinstance(e, ToolInvocationError) else ToolInvocationError(descriptor.name, e)
            logger.error("MCP tool call failed", tool=descriptor.name, error=str(error.cause))
            return {"error": str(error)}

    return RegisteredTool(
        name=descriptor.name,
        description=descriptor.description or f"MCP Tool: {descriptor.name}",
        input_model=input_model,
        parameters=descriptor.input_schema,
        invoke=invoke,
    )


def wrap_local_tool(
    name: str,
    description: str,
    parameters: Union[type[BaseModel], dict[str, Any]],
    execute: Callable[..., Any],
) -> RegisteredTool:
    """
    Wrap a locally implemented function as a registered tool.

    Args:
        name: Tool name exposed to the model
        description: Tool description exposed to the model
        parameters: Pydantic model or JSON Schema describing the arguments
        execute: Sync or async callable receiving the validated arguments dict

    Returns:
        Registered tool with the same error folding as MCP tools
    """
    if isinstance(parameters, dict):
        input_model = build_input_model(name, parameters)
        schema = parameters
    else:
        input_model = parameters
        schema = {}

    async def invoke(arguments: dict[str, Any]) -> Any:
        try:
            result = execute(arguments)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            error = ToolInvocationError(name, e)
            logger.error("Local tool call failed", tool=name, error=str(e))
            return {"error": str(error)}

    return RegisteredTool(
        name=name,
        description=description,
        input_model=input_model,
        parameters=schema,
        invoke=invoke,
    )
