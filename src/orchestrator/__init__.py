"""Orchestrator - LLM providers, the tool calling loop and the agent.

Interfaces with the LLM via LlamaIndex, supplies the discovered tools and
resources, and runs the bounded tool calling loop.
"""

from orchestrator.llm import GenerationOptions, LLMProvider, create_llm_provider
from orchestrator.loop import ModelInvocationError, OrchestrationLoop
from orchestrator.agent import MCPAgent

__all__ = [
    "GenerationOptions",
    "LLMProvider",
    "create_llm_provider",
    "ModelInvocationError",
    "OrchestrationLoop",
    "MCPAgent",
]
