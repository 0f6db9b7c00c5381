"""Tests for orchestrator components."""

import asyncio
import json

import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from tenacity import wait_none

from shared.config import AgentSettings, LLMSettings, MCPServerSettings
from shared.models import (
    ConversationMessage,
    FinishReason,
    LLMResponse,
)
from mcp_client.adapter import wrap_local_tool


SEARCH_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string"},
        "count": {"type": "integer", "minimum": 1, "maximum": 20},
    },
    "required": ["query"],
}


def tool_call(name, arguments, call_id="call_1"):
    """Build a raw tool call as returned by the LLM layer."""
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def make_search_tool(execute=None):
    """Create a search tool recording its calls."""
    calls = []

    async def search(args):
        calls.append(args)
        if execute is not None:
            return execute(args)
        return {"results": [f"AI news about {args['query']}"]}

    tool = wrap_local_tool("search", "Search the web", SEARCH_SCHEMA, search)
    return tool, calls


def make_loop(llm, **settings):
    from orchestrator.loop import OrchestrationLoop

    loop = OrchestrationLoop(llm, AgentSettings(**settings))
    loop.retry_wait = wait_none()
    return loop


class TestLLMProvider:
    """Tests for LLM providers."""

    @pytest.mark.asyncio
    async def test_mock_provider(self):
        """Test mock LLM provider."""
        from orchestrator.llm import MockLLMProvider

        provider = MockLLMProvider()
        messages = [ConversationMessage(role="user", content="Hello")]

        response = await provider.complete(messages)

        assert response.content is not None
        assert response.finish_reason == "stop"
        assert len(provider.call_history) == 1

    @pytest.mark.asyncio
    async def test_mock_provider_with_preset_response(self):
        """Test mock provider with preset response."""
        from orchestrator.llm import MockLLMProvider

        provider = MockLLMProvider()
        provider.set_next_response(LLMResponse(
            content="Custom response",
            tool_calls=[tool_call("search", {"query": "x"})],
            finish_reason="tool_calls"
        ))

        messages = [ConversationMessage(role="user", content="Use a tool")]
        response = await provider.complete(messages)

        assert response.content == "Custom response"
        assert response.tool_calls is not None
        assert len(response.tool_calls) == 1

    def test_create_llm_provider_factory(self):
        """Test LLM provider factory."""
        from orchestrator.llm import MockLLMProvider, create_llm_provider

        provider = create_llm_provider(LLMSettings(provider="mock"))

        assert isinstance(provider, MockLLMProvider)

    def test_invalid_provider_raises(self):
        """Test that invalid provider raises error."""
        from orchestrator.llm import create_llm_provider

        settings = LLMSettings(provider="invalid_provider")

        with pytest.raises(ValueError, match="Unsupported"):
            create_llm_provider(settings)

    def test_generation_options_from_settings(self):
        """Sampling settings are carried into generation options."""
        from orchestrator.llm import GenerationOptions

        options = GenerationOptions.from_settings(AgentSettings(
            temperature=0.2, top_k=40, stop_sequences=["END"], max_steps=3
        ))

        assert options.temperature == 0.2
        assert options.top_k == 40
        assert options.stop_sequences == ["END"]
        assert options.max_tokens is None


class TestLlamaIndexProvider:
    """Tests for the LlamaIndex translation layer."""

    def _provider(self, chat_response):
        from orchestrator.llm import LlamaIndexProvider

        class FakeProvider(LlamaIndexProvider):
            def _build_llm(self):
                llm = MagicMock()
                llm.achat = AsyncMock(return_value=chat_response)
                return llm

        return FakeProvider(LLMSettings(provider="openai"))

    @pytest.mark.asyncio
    async def test_complete_with_tool_calls(self):
        """Tool calls, finish reason and usage are read from the response."""
        from orchestrator.llm import GenerationOptions

        response = SimpleNamespace(
            message=SimpleNamespace(
                content=None,
                additional_kwargs={"tool_calls": [SimpleNamespace(
                    id="call_9",
                    function=SimpleNamespace(name="search", arguments='{"query": "ai"}'),
                )]},
            ),
            raw={
                "choices": [{"finish_reason": "tool_calls"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16},
            },
        )
        provider = self._provider(response)
        options = GenerationOptions(temperature=0.1, stop_sequences=["END"], headers={"X-Trace": "1"})

        result = await provider.complete(
            [ConversationMessage(role="user", content="news?")],
            tools=[{"type": "function", "function": {"name": "search"}}],
            options=options
        )

        assert result.tool_calls == [tool_call("search", '{"query": "ai"}', "call_9")]
        assert result.finish_reason == "tool_calls"
        assert result.usage == {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16}

        kwargs = provider._get_llm().achat.call_args.kwargs
        assert kwargs["temperature"] == 0.1
        assert kwargs["stop"] == ["END"]
        assert kwargs["extra_headers"] == {"X-Trace": "1"}
        assert "tools" in kwargs

    @pytest.mark.asyncio
    async def test_complete_text_only(self):
        """A text answer without raw metadata finishes with stop."""
        response = SimpleNamespace(
            message=SimpleNamespace(content="Hello", additional_kwargs={}),
            raw=None,
        )
        provider = self._provider(response)

        result = await provider.complete([ConversationMessage(role="user", content="hi")])

        assert result.content == "Hello"
        assert result.tool_calls is None
        assert result.finish_reason == "stop"

    def test_convert_messages(self):
        """Tool metadata travels in additional_kwargs."""
        from llama_index.core.llms import MessageRole

        provider = self._provider(None)
        converted = provider._convert_messages([
            ConversationMessage(role="assistant", content="", tool_calls=[tool_call("search", {})]),
            ConversationMessage(role="tool", content="{}", tool_call_id="call_1", name="search"),
        ])

        assert converted[0].role == MessageRole.ASSISTANT
        assert converted[0].additional_kwargs["tool_calls"][0]["id"] == "call_1"
        assert converted[1].role == MessageRole.TOOL
        assert converted[1].additional_kwargs == {"tool_call_id": "call_1", "name": "search"}


class TestOrchestrationLoop:
    """Tests for the tool calling loop."""

    @pytest.mark.asyncio
    async def test_single_round(self):
        """A plain answer ends the run after one step."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.set_next_response(LLMResponse(content="Hello! How can I help you?", finish_reason="stop"))
        tool, calls = make_search_tool()

        result = await make_loop(llm).run("Hello", tools={"search": tool})

        assert result.final_answer == "Hello! How can I help you?"
        assert len(result.steps) == 1
        assert result.finish_reason == FinishReason.STOP
        assert result.tool_calls == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_search_round_trip(self):
        """The model calls a tool, reads the result and answers."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(
                content="",
                tool_calls=[tool_call("search", {"query": "AI", "count": 3})],
                finish_reason="tool_calls",
                usage={"prompt_tokens": 20, "completion_tokens": 5}
            ),
            LLMResponse(
                content="Here are the latest AI news.",
                finish_reason="stop",
                usage={"prompt_tokens": 40, "completion_tokens": 10}
            ),
        ])
        tool, calls = make_search_tool()

        result = await make_loop(llm).run("What are the latest AI news?", tools={"search": tool})

        assert len(result.steps) == 2
        assert result.final_answer == "Here are the latest AI news."
        assert calls == [{"query": "AI", "count": 3}]
        assert result.tool_calls[0].tool_name == "search"
        assert result.tool_results[0].result == {"results": ["AI news about AI"]}
        assert result.tool_results[0].is_error is False
        assert result.steps[0].finish_reason == FinishReason.TOOL_CALLS
        assert result.usage.prompt_tokens == 60
        assert result.usage.total_tokens == 75

        # The tool result is fed back to the model with its call id
        second_call = llm.call_history[1]["messages"]
        assert second_call[-1].role == "tool"
        assert second_call[-1].tool_call_id == "call_1"
        assert "AI news about AI" in second_call[-1].content

    @pytest.mark.asyncio
    async def test_max_steps(self):
        """A model that keeps calling tools stops after max_steps rounds."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[tool_call("search", {"query": "x"}, f"call_{i}")])
            for i in range(10)
        ])
        tool, calls = make_search_tool()

        result = await make_loop(llm, max_steps=3).run("Loop forever", tools={"search": tool})

        assert len(result.steps) == 3
        assert len(llm.call_history) == 3
        assert len(calls) == 3
        assert result.finish_reason == FinishReason.TOOL_CALLS

    @pytest.mark.asyncio
    async def test_multiple_calls_keep_order(self):
        """Several calls in one round are dispatched in the requested order."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[
                tool_call("search", {"query": "first"}, "call_a"),
                tool_call("search", {"query": "second"}, "call_b"),
            ]),
            LLMResponse(content="done"),
        ])
        tool, calls = make_search_tool()

        result = await make_loop(llm).run("Two searches", tools={"search": tool})

        assert [c["query"] for c in calls] == ["first", "second"]
        assert [r.tool_call_id for r in result.tool_results] == ["call_a", "call_b"]

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_reported(self):
        """Arguments failing validation are returned to the model as errors."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[tool_call("search", {"query": "x", "count": 25})]),
            LLMResponse(content="Sorry."),
        ])
        tool, calls = make_search_tool()

        result = await make_loop(llm).run("Search", tools={"search": tool})

        assert calls == []
        assert result.tool_results[0].is_error is True
        assert "count" in result.tool_results[0].result["error"]
        assert result.final_answer == "Sorry."

    @pytest.mark.asyncio
    async def test_unknown_tool_and_bad_json(self):
        """Unknown tools and unparsable arguments become error results."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[
                tool_call("missing", {}, "call_a"),
                tool_call("search", "{not json", "call_b"),
            ]),
            LLMResponse(content="ok"),
        ])
        tool, calls = make_search_tool()

        result = await make_loop(llm).run("Go", tools={"search": tool})

        assert calls == []
        assert [r.is_error for r in result.tool_results] == [True, True]
        assert "Unknown tool" in result.tool_results[0].result["error"]

    @pytest.mark.asyncio
    async def test_tool_failure_is_fed_back(self):
        """A failing tool does not abort the run."""
        from orchestrator.llm import MockLLMProvider

        def explode(args):
            raise RuntimeError("search backend down")

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[tool_call("search", {"query": "x"})]),
            LLMResponse(content="The search is unavailable."),
        ])
        tool, _ = make_search_tool(execute=explode)

        result = await make_loop(llm).run("Search", tools={"search": tool})

        assert result.tool_results[0].is_error is True
        assert "search backend down" in result.tool_results[0].result["error"]
        assert result.final_answer == "The search is unavailable."

    @pytest.mark.asyncio
    async def test_model_retries(self):
        """Transient model failures are retried."""
        llm = MagicMock()
        llm.complete = AsyncMock(side_effect=[
            RuntimeError("rate limited"),
            LLMResponse(content="Recovered"),
        ])

        result = await make_loop(llm, max_retries=2).run("Hi", tools={})

        assert result.final_answer == "Recovered"
        assert llm.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_model_failure_raises(self):
        """A model call that keeps failing raises ModelInvocationError."""
        from orchestrator.loop import ModelInvocationError

        llm = MagicMock()
        llm.complete = AsyncMock(side_effect=RuntimeError("service unavailable"))

        with pytest.raises(ModelInvocationError):
            await make_loop(llm, max_retries=2).run("Hi", tools={})

        assert llm.complete.await_count == 3

    @pytest.mark.asyncio
    async def test_model_timeout(self):
        """A model call exceeding its timeout counts as a failure."""
        from orchestrator.loop import ModelInvocationError

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return LLMResponse(content="late")

        llm = MagicMock()
        llm.complete = slow

        with pytest.raises(ModelInvocationError):
            await make_loop(llm, max_retries=0, model_timeout_seconds=0.01).run("Hi", tools={})

    @pytest.mark.asyncio
    async def test_resources_prefix_prompt(self):
        """Loaded resources are prepended as context."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        resources = {"readme": [{"text": "Project notes"}]}

        await make_loop(llm).run("Summarize", tools={}, resource_context=resources)

        content = llm.call_history[0]["messages"][-1].content
        assert content.startswith("Context Information:")
        assert "Project notes" in content
        assert content.endswith("User Query:\nSummarize")
        assert llm.call_history[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_resources_can_be_excluded(self):
        """include_resources=False sends the prompt unchanged."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()

        await make_loop(llm).run(
            "Summarize",
            tools={},
            resource_context={"readme": "notes"},
            include_resources=False
        )

        assert llm.call_history[0]["messages"][-1].content == "Summarize"

    @pytest.mark.asyncio
    async def test_system_message(self):
        """A configured system message leads the conversation."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()

        await make_loop(llm, system="You are terse.").run("Hi", tools={})

        messages = llm.call_history[0]["messages"]
        assert messages[0].role == "system"
        assert messages[0].content == "You are terse."

    @pytest.mark.asyncio
    async def test_abort(self):
        """A set abort event cancels the run before the model is called."""
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(asyncio.CancelledError):
            await make_loop(llm).run("Hi", tools={}, abort_event=abort)

        assert llm.call_history == []

    @pytest.mark.asyncio
    async def test_abort_during_model_call(self):
        """Aborting while the model call is suspended cancels that call."""
        started = asyncio.Event()
        finished = []

        async def slow(*args, **kwargs):
            started.set()
            await asyncio.sleep(3)
            finished.append(True)
            return LLMResponse(content="late")

        llm = MagicMock()
        llm.complete = slow
        abort = asyncio.Event()
        loop = make_loop(llm)

        async def trigger():
            await started.wait()
            abort.set()

        trigger_task = asyncio.ensure_future(trigger())
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(loop.run("Hi", tools={}, abort_event=abort), timeout=2)
        await trigger_task

        assert finished == []

    @pytest.mark.asyncio
    async def test_abort_stops_retries(self):
        """An abort raised between attempts ends the retry schedule."""
        abort = asyncio.Event()

        async def failing(*args, **kwargs):
            abort.set()
            raise RuntimeError("rate limited")

        llm = MagicMock()
        llm.complete = AsyncMock(side_effect=failing)

        with pytest.raises(asyncio.CancelledError):
            await make_loop(llm, max_retries=3).run("Hi", tools={}, abort_event=abort)

        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_step_callback(self):
        """The step callback sees every finished step."""
        from orchestrator.llm import MockLLMProvider
        from orchestrator.loop import OrchestrationLoop

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[tool_call("search", {"query": "x"})]),
            LLMResponse(content="done"),
        ])
        tool, _ = make_search_tool()
        seen = []

        async def on_step(step):
            seen.append(step.step_number)

        loop = OrchestrationLoop(llm, AgentSettings(), on_step_finish=on_step)
        await loop.run("Go", tools={"search": tool})

        assert seen == [1, 2]


class TestMCPAgent:
    """Tests for the agent facade."""

    @pytest.mark.asyncio
    async def test_process_with_local_tool(self):
        """Local tools are offered to the model alongside discovered ones."""
        from orchestrator.agent import MCPAgent
        from orchestrator.llm import MockLLMProvider

        llm = MockLLMProvider()
        llm.queue_responses([
            LLMResponse(content="", tool_calls=[tool_call("add", {"a": 2, "b": 3})]),
            LLMResponse(content="2 + 3 = 5"),
        ])
        agent = MCPAgent(MCPServerSettings(server_url="http://localhost:9000/mcp"), llm=llm)
        agent.register_tool(
            "add",
            "Add two integers",
            {
                "type": "object",
                "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
                "required": ["a", "b"],
            },
            lambda args: args["a"] + args["b"]
        )

        result = await agent.process("What is 2 + 3?")

        assert result.tool_results[0].result == 5
        assert result.final_answer == "2 + 3 = 5"
        assert llm.call_history[0]["tools"][0]["function"]["name"] == "add"

    def test_health_check_disconnected(self):
        """Health reports the session state without requiring a connection."""
        from orchestrator.agent import MCPAgent
        from orchestrator.llm import MockLLMProvider

        agent = MCPAgent(MCPServerSettings(name="search"), llm=MockLLMProvider())

        health = agent.health_check()

        assert health["session"] == "disconnected"
        assert health["server"] == "search"
        assert health["tool_count"] == 0
        assert "capabilities" not in health
