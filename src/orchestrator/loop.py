"""Orchestration Loop - bounded multi-step tool calling.

Implements the tool calling loop:
1. Call the LLM with the conversation and the tool definitions
2. If the LLM requests tool calls, dispatch them in the requested order
3. Append the tool results to the conversation
4. Repeat until the LLM stops asking for tools or max_steps rounds ran

Tool failures never abort a round; they are fed back to the model as
error payloads. Only a model call that keeps failing after its retries
ends the run, with ``ModelInvocationError``.
"""

import asyncio
import inspect
import json
import uuid
from typing import Any, Callable, Optional

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from shared.config import AgentSettings
from shared.logging import bind_context, clear_context, get_logger
from shared.models import (
    AgentResult,
    ConversationMessage,
    FinishReason,
    LLMResponse,
    RegisteredTool,
    StepRecord,
    TokenUsage,
    ToolCallRecord,
    ToolResultRecord,
)
from shared.schema import format_validation_errors
from orchestrator.llm import GenerationOptions, LLMProvider

logger = get_logger(__name__)


class ModelInvocationError(Exception):
    """The model call failed after exhausting its retries."""
    pass


StepCallback = Callable[[StepRecord], Any]


def build_prompt(prompt: str, resources: Optional[dict[str, Any]]) -> str:
    """Prefix the user prompt with the loaded resources as context."""
    if not resources:
        return prompt
    context = json.dumps(resources, indent=2, default=str)
    return f"Context Information:\n{context}\n\nUser Query:\n{prompt}"


def _format_tool_result(result: Any) -> str:
    """Format a tool result for the conversation."""
    if result is None:
        return "Tool executed successfully."
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, default=str)


def _is_error_payload(result: Any) -> bool:
    return isinstance(result, dict) and set(result) == {"error"}


class OrchestrationLoop:
    """
    Drives one bounded model interaction over a set of tools.

    The loop owns no tools; it references the registered tools passed to
    ``run`` for the duration of that run.
    """

    retry_wait = wait_exponential(multiplier=0.5, min=0.5, max=8)

    def __init__(
        self,
        llm: LLMProvider,
        settings: Optional[AgentSettings] = None,
        on_step_finish: Optional[StepCallback] = None
    ) -> None:
        """
        Initialize the loop.

        Args:
            llm: LLM provider for completions
            settings: Step limit, retries, timeouts and sampling options
            on_step_finish: Optional sync or async callback per finished step
        """
        self.llm = llm
        self.settings = settings or AgentSettings()
        self.on_step_finish = on_step_finish
        self.options = GenerationOptions.from_settings(self.settings)

    async def run(
        self,
        prompt: str,
        tools: dict[str, RegisteredTool],
        resource_context: Optional[dict[str, Any]] = None,
        include_resources: Optional[bool] = None,
        abort_event: Optional[asyncio.Event] = None
    ) -> AgentResult:
        """
        Run the loop for one prompt.

        Args:
            prompt: User prompt
            tools: Registered tools keyed by name
            resource_context: Loaded resources offered as context
            include_resources: Per-call override; False disables the context
            abort_event: Set to cancel the run before the next model or tool call

        Returns:
            Final answer, every tool call and result, per-step records,
            summed usage and the terminal finish reason

        Raises:
            ModelInvocationError: If a model call fails after its retries
            asyncio.CancelledError: If the abort event is set
        """
        run_id = str(uuid.uuid4())
        bind_context(run_id=run_id)
        try:
            return await self._run(prompt, tools, resource_context, include_resources, abort_event)
        finally:
            clear_context("run_id")

    async def _run(
        self,
        prompt: str,
        tools: dict[str, RegisteredTool],
        resource_context: Optional[dict[str, Any]],
        include_resources: Optional[bool],
        abort_event: Optional[asyncio.Event]
    ) -> AgentResult:
        use_resources = (
            include_resources is not False
            and self.settings.include_resources
            and bool(resource_context)
        )

        messages: list[ConversationMessage] = []
        if self.settings.system:
            messages.append(ConversationMessage(role="system", content=self.settings.system))
        messages.append(ConversationMessage(
            role="user",
            content=build_prompt(prompt, resource_context if use_resources else None)
        ))

        definitions = [tool.to_function_definition() for tool in tools.values()] or None

        logger.info(
            "Processing prompt",
            tools=len(tools),
            resources=len(resource_context or {}) if use_resources else 0,
            max_steps=self.settings.max_steps
        )

        result = AgentResult()
        for step_number in range(1, self.settings.max_steps + 1):
            self._check_abort(abort_event)

            response = await self._call_model(messages, definitions, abort_event)
            step_usage = TokenUsage.from_dict(response.usage)
            calls = self._parse_tool_calls(response, step_number)
            finish_reason = FinishReason.parse(response.finish_reason)
            if calls:
                finish_reason = FinishReason.TOOL_CALLS

            messages.append(ConversationMessage(
                role="assistant",
                content=response.content or "",
                tool_calls=self._raw_tool_calls(calls) if calls else None
            ))

            step = StepRecord(
                step_number=step_number,
                text=response.content or "",
                tool_calls=[call for call, _ in calls],
                finish_reason=finish_reason,
                usage=step_usage
            )

            if calls:
                logger.debug("LLM requested tool calls", count=len(calls), step=step_number)

            for call, parse_error in calls:
                self._check_abort(abort_event)
                tool_result = await self._dispatch(call, parse_error, tools)
                step.tool_results.append(tool_result)
                messages.append(ConversationMessage(
                    role="tool",
                    content=_format_tool_result(tool_result.result),
                    tool_call_id=call.tool_call_id,
                    name=call.tool_name
                ))

            result.steps.append(step)
            result.tool_calls.extend(step.tool_calls)
            result.tool_results.extend(step.tool_results)
            result.usage = result.usage + step_usage
            result.finish_reason = finish_reason
            result.final_answer = step.text

            await self._notify(step)

            if finish_reason != FinishReason.TOOL_CALLS:
                break
        else:
            logger.warning("Max steps reached", steps=self.settings.max_steps)

        logger.info(
            "Prompt processed",
            steps=len(result.steps),
            tool_calls=len(result.tool_calls),
            finish_reason=result.finish_reason.value,
            total_tokens=result.usage.total_tokens
        )
        return result

    def _check_abort(self, abort_event: Optional[asyncio.Event]) -> None:
        if abort_event is not None and abort_event.is_set():
            logger.info("Run aborted")
            raise asyncio.CancelledError("orchestration run aborted")

    async def _complete_once(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]],
        abort_event: Optional[asyncio.Event] = None
    ) -> LLMResponse:
        self._check_abort(abort_event)
        call = self.llm.complete(messages=list(messages), tools=tools, options=self.options)
        timeout = self.settings.model_timeout_seconds
        if timeout:
            call = asyncio.wait_for(call, timeout=timeout)
        if abort_event is None:
            return await call

        # Race the model call against the abort signal
        request = asyncio.ensure_future(call)
        aborted = asyncio.ensure_future(abort_event.wait())
        try:
            await asyncio.wait({request, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (request, aborted):
                if not task.done():
                    task.cancel()
        self._check_abort(abort_event)
        return request.result()

    async def _call_model(
        self,
        messages: list[ConversationMessage],
        tools: Optional[list[dict[str, Any]]],
        abort_event: Optional[asyncio.Event] = None
    ) -> LLMResponse:
        """Call the model, retrying failures and timeouts up to max_retries."""
        stop = stop_after_attempt(self.settings.max_retries + 1)
        retry_options: dict[str, Any] = {}
        if abort_event is not None:
            stop = stop | stop_when_event_set(abort_event)

            async def sleep(seconds: float) -> None:
                # Backoff ends early when the run is aborted
                try:
                    await asyncio.wait_for(abort_event.wait(), timeout=seconds)
                except TimeoutError:
                    pass

            retry_options["sleep"] = sleep

        retrying = AsyncRetrying(
            stop=stop,
            wait=self.retry_wait,
            retry=retry_if_exception_type(Exception),
            reraise=True,
            **retry_options
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning("Retrying model call", attempt=attempt.retry_state.attempt_number)
                    response = await self._complete_once(messages, tools, abort_event)
        except Exception as e:
            self._check_abort(abort_event)
            logger.error("Model invocation failed", error=str(e) or type(e).__name__)
            raise ModelInvocationError(f"Model call failed: {e!r}") from e
        return response

    def _parse_tool_calls(
        self,
        response: LLMResponse,
        step_number: int
    ) -> list[tuple[ToolCallRecord, Optional[str]]]:
        """Turn raw tool calls into records, keeping argument parse errors."""
        parsed = []
        for index, raw in enumerate(response.tool_calls or []):
            function = raw.get("function", {})
            call_id = raw.get("id") or f"call_{step_number}_{index}"
            arguments = function.get("arguments", "{}")
            parse_error = None

            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments) if arguments.strip() else {}
                except json.JSONDecodeError as e:
                    parse_error = f"Invalid tool call arguments: {e}"
                    arguments = {}
            if not isinstance(arguments, dict):
                parse_error = parse_error or "Tool call arguments must be a JSON object"
                arguments = {}

            record = ToolCallRecord(
                tool_call_id=call_id,
                tool_name=function.get("name", ""),
                args=arguments
            )
            parsed.append((record, parse_error))
        return parsed

    @staticmethod
    def _raw_tool_calls(calls: list[tuple[ToolCallRecord, Optional[str]]]) -> list[dict[str, Any]]:
        return [
            {
                "id": call.tool_call_id,
                "type": "function",
                "function": {"name": call.tool_name, "arguments": json.dumps(call.args)},
            }
            for call, _ in calls
        ]

    async def _dispatch(
        self,
        call: ToolCallRecord,
        parse_error: Optional[str],
        tools: dict[str, RegisteredTool]
    ) -> ToolResultRecord:
        """Validate and execute a single tool call."""

        def failed(message: str) -> ToolResultRecord:
            logger.warning("Tool call rejected", tool=call.tool_name, error=message)
            return ToolResultRecord(
                tool_call_id=call.tool_call_id,
                tool_name=call.tool_name,
                args=call.args,
                result={"error": message},
                is_error=True
            )

        if parse_error:
            return failed(parse_error)

        tool = tools.get(call.tool_name)
        if tool is None:
            return failed(f"Unknown tool: {call.tool_name}")

        try:
            arguments = tool.validate_arguments(call.args)
        except ValidationError as e:
            details = "; ".join(format_validation_errors(e))
            return failed(f"Invalid arguments for tool {call.tool_name}: {details}")

        logger.info("Executing tool", tool=call.tool_name)
        output = await tool.invoke(arguments)
        is_error = _is_error_payload(output)
        logger.info("Tool executed", tool=call.tool_name, error=is_error)

        return ToolResultRecord(
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            args=arguments,
            result=output,
            is_error=is_error
        )

    async def _notify(self, step: StepRecord) -> None:
        if self.on_step_finish is None:
            return
        outcome = self.on_step_finish(step)
        if inspect.isawaitable(outcome):
            await outcome
