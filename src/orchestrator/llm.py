"""LLM Integration Layer using LlamaIndex.

Supports multiple LLM providers via LlamaIndex-compatible packages:
- Azure OpenAI
- OpenAI
- A scripted mock provider for tests and offline runs

Providers only translate messages, tool definitions and sampling options
into one chat call; retries, timeouts and the tool loop live in the
orchestration loop.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel

from shared.config import AgentSettings, LLMSettings
from shared.logging import get_logger
from shared.models import ConversationMessage, LLMResponse

logger = get_logger(__name__)


class GenerationOptions(BaseModel):
    """Sampling parameters forwarded with every model call."""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    stop_sequences: Optional[list[str]] = None
    seed: Optional[int] = None
    headers: Optional[dict[str, str]] = None

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "GenerationOptions":
        """Resolve the options once from agent settings."""
        return cls(**settings.model_dump(include=set(cls.model_fields)))


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    LLM Integration Rules:
    - LLM receives only the registered tools and the conversation
    - LLM outputs text, tool calls, or both
    - LLM never calls MCP servers directly
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        options: Optional[GenerationOptions] = None
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history
            tools: Available tools in OpenAI function format
            options: Sampling parameters

        Returns:
            LLM response with content and/or tool calls
        """
        pass


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from either an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class LlamaIndexProvider(LLMProvider):
    """Base class for OpenAI-compatible providers built on LlamaIndex."""

    def __init__(self, settings: LLMSettings) -> None:
        self.settings = settings
        self._llm = None

    @abstractmethod
    def _build_llm(self) -> Any:
        """Create the LlamaIndex LLM instance."""
        pass

    def _get_llm(self) -> Any:
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def _convert_messages(self, messages: list[ConversationMessage]) -> list:
        """Convert internal messages to LlamaIndex format."""
        from llama_index.core.llms import ChatMessage, MessageRole

        role_map = {
            "user": MessageRole.USER,
            "assistant": MessageRole.ASSISTANT,
            "system": MessageRole.SYSTEM,
            "tool": MessageRole.TOOL,
        }

        result = []
        for msg in messages:
            additional_kwargs: dict[str, Any] = {}
            if msg.tool_calls:
                additional_kwargs["tool_calls"] = msg.tool_calls
            if msg.tool_call_id:
                additional_kwargs["tool_call_id"] = msg.tool_call_id
            if msg.name and msg.role == "tool":
                additional_kwargs["name"] = msg.name

            result.append(ChatMessage(
                role=role_map.get(msg.role, MessageRole.USER),
                content=msg.content,
                additional_kwargs=additional_kwargs,
            ))

        return result

    def _request_kwargs(self, options: Optional[GenerationOptions]) -> dict[str, Any]:
        """Map generation options onto chat completion arguments."""
        if options is None:
            return {}

        kwargs: dict[str, Any] = {}
        for name in ("max_tokens", "temperature", "top_p", "presence_penalty",
                     "frequency_penalty", "seed"):
            value = getattr(options, name)
            if value is not None:
                kwargs[name] = value
        if options.stop_sequences:
            kwargs["stop"] = options.stop_sequences
        if options.headers:
            kwargs["extra_headers"] = options.headers
        if options.top_k is not None:
            logger.debug("top_k is not supported by this provider", top_k=options.top_k)
        return kwargs

    @staticmethod
    def _parse_tool_calls(message: Any) -> Optional[list[dict[str, Any]]]:
        raw_calls = (_field(message, "additional_kwargs") or {}).get("tool_calls") or []
        tool_calls = []
        for call in raw_calls:
            function = _field(call, "function")
            arguments = _field(function, "arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            tool_calls.append({
                "id": _field(call, "id"),
                "type": "function",
                "function": {
                    "name": _field(function, "name"),
                    "arguments": arguments,
                },
            })
        return tool_calls or None

    @staticmethod
    def _parse_raw(raw: Any) -> tuple[Optional[str], dict[str, int]]:
        """Extract finish reason and token usage from the raw completion."""
        choices = _field(raw, "choices") or []
        finish_reason = _field(choices[0], "finish_reason") if choices else None

        usage = _field(raw, "usage")
        usage_dict = {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = _field(usage, key)
            if value is not None:
                usage_dict[key] = int(value)
        return finish_reason, usage_dict

    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        options: Optional[GenerationOptions] = None
    ) -> LLMResponse:
        """Generate a completion, with function calling when tools are given."""
        llm = self._get_llm()
        chat_messages = self._convert_messages(messages)
        kwargs = self._request_kwargs(options)
        if tools:
            kwargs["tools"] = tools

        try:
            response = await llm.achat(chat_messages, **kwargs)
        except Exception as e:
            logger.error("LLM completion failed", error=str(e))
            raise

        tool_calls = self._parse_tool_calls(response.message)
        finish_reason, usage = self._parse_raw(getattr(response, "raw", None))
        if finish_reason is None:
            finish_reason = "tool_calls" if tool_calls else "stop"

        return LLMResponse(
            content=response.message.content if response.message else None,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage
        )


class AzureOpenAIProvider(LlamaIndexProvider):
    """Azure OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            engine=self.settings.deployment_name or self.settings.model,
            model=self.settings.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            max_retries=0,
        )


class OpenAIProvider(LlamaIndexProvider):
    """OpenAI LLM provider using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.settings.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            max_retries=0,
        )


class MockLLMProvider(LLMProvider):
    """Scripted LLM provider for testing without API calls."""

    def __init__(self, settings: Optional[LLMSettings] = None) -> None:
        self.settings = settings
        self.call_history: list[dict[str, Any]] = []
        self._responses: list[LLMResponse] = []

    def set_next_response(self, response: LLMResponse) -> None:
        """Queue one response to return."""
        self._responses.append(response)

    def queue_responses(self, responses: list[LLMResponse]) -> None:
        """Queue several responses, returned in order."""
        self._responses.extend(responses)

    async def complete(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        options: Optional[GenerationOptions] = None
    ) -> LLMResponse:
        """Return the next queued response, or a plain default answer."""
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "options": options
        })

        if self._responses:
            return self._responses.pop(0)

        return LLMResponse(
            content="This is a mock response.",
            tool_calls=None,
            finish_reason="stop",
            usage={"prompt_tokens": 10, "completion_tokens": 5}
        )


def create_llm_provider(settings: LLMSettings) -> LLMProvider:
    """
    Factory function to create appropriate LLM provider.

    Supports:
    - azure_openai: Azure OpenAI Service
    - openai: OpenAI API
    - mock: Mock provider for testing

    Args:
        settings: LLM configuration settings

    Returns:
        Configured LLM provider

    Raises:
        ValueError: If provider is not supported
    """
    providers = {
        "azure_openai": AzureOpenAIProvider,
        "openai": OpenAIProvider,
        "mock": MockLLMProvider,
    }

    provider_class = providers.get(settings.provider)
    if not provider_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating LLM provider", provider=settings.provider, model=settings.model)
    return provider_class(settings)
