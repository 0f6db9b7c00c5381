"""Core data models for the MCP agent bridge.

This module defines the shared data structures passed between the session,
the capability registry, the tool adapter and the orchestration loop.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.schema import validate_arguments


class TransportType(str, Enum):
    """Transport used to reach an MCP server."""
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"
    STDIO = "stdio"


class SessionState(str, Enum):
    """Lifecycle state of an MCP session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class FinishReason(str, Enum):
    """Why a model round ended."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FinishReason":
        """Map a provider-specific finish reason onto the known set."""
        if not value:
            return cls.STOP
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ServerCapabilityFlags(BaseModel):
    """Capability classes advertised by the server during the handshake."""
    tools: bool = False
    resources: bool = False
    prompts: bool = False


class ServerInfo(BaseModel):
    """Name and version reported by the server."""
    name: str
    version: str


class ToolDescriptor(BaseModel):
    """
    A tool as declared by the server.

    Descriptors are immutable once discovered; the input schema is kept
    verbatim so it can be handed to the model unchanged.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    input_schema: dict[str, Any] = Field(default_factory=dict)


class ResourceDescriptor(BaseModel):
    """A resource as listed by the server."""
    name: str
    uri: str
    description: Optional[str] = None
    mime_type: Optional[str] = None


class PromptArgument(BaseModel):
    """One argument accepted by a server prompt."""
    name: str
    description: Optional[str] = None
    required: bool = False


class PromptDescriptor(BaseModel):
    """A prompt template as declared by the server."""
    name: str
    description: Optional[str] = None
    arguments: list[PromptArgument] = Field(default_factory=list)


ToolExecutor = Callable[[dict[str, Any]], Awaitable[Any]]


class RegisteredTool(BaseModel):
    """
    A callable tool made available to the model.

    The input model is the validated-input contract derived from the tool's
    schema; ``invoke`` performs the actual call and never raises for tool
    level failures.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    input_model: type[BaseModel]
    parameters: dict[str, Any] = Field(default_factory=dict)
    invoke: ToolExecutor

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate raw arguments, returning only the keys that were supplied."""
        return validate_arguments(self.input_model, arguments)

    def to_function_definition(self) -> dict[str, Any]:
        """Render the tool in OpenAI function-calling format."""
        parameters = self.parameters or self.input_model.model_json_schema()
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class TokenUsage(BaseModel):
    """Token accounting for one or more model calls."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_dict(cls, usage: Optional[dict[str, Any]]) -> "TokenUsage":
        """Build usage from a provider usage mapping, tolerating gaps."""
        usage = usage or {}
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class ToolCallRecord(BaseModel):
    """A tool call requested by the model."""
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultRecord(BaseModel):
    """The outcome of one dispatched tool call."""
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    is_error: bool = False


class StepRecord(BaseModel):
    """One round of the orchestration loop."""
    step_number: int
    text: str = ""
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    tool_results: list[ToolResultRecord] = Field(default_factory=list)
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)


class AgentResult(BaseModel):
    """Aggregated outcome of an orchestration run."""
    final_answer: str = ""
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    tool_results: list[ToolResultRecord] = Field(default_factory=list)
    steps: list[StepRecord] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: FinishReason = FinishReason.STOP


class ConversationMessage(BaseModel):
    """A single message in a model conversation."""
    role: str = Field(..., description="Message role: user, assistant, system, tool")
    content: str = ""
    tool_calls: Optional[list[dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


class LLMResponse(BaseModel):
    """Response from the LLM layer."""
    content: Optional[str] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    finish_reason: str = "stop"
    usage: dict[str, int] = Field(default_factory=dict)
