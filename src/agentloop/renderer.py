import json
import logging

from agentloop.cancellation import CancellationToken
from agentloop.context import BuildPromptContext
from agentloop.conversation import TextPart, ToolCallRound, ToolResult, Turn
from agentloop.errors import PromptBudgetExceededError
from agentloop.instrumentation import record_error, record_tool_result, tool_span
from agentloop.message import AssistantMessage, Message, ToolMessage, system, user
from agentloop.prompt import (
    SUMMARY_KEY,
    TOOL_INPUT_FAILURE_KEY,
    TOOL_RESULTS_KEY,
    ApproximateTokenizer,
    PromptRenderer,
    RenderOptions,
    RenderResult,
    Tokenizer,
    ToolResultMetadata,
)
from agentloop.streaming import ToolCall
from agentloop.tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

OMITTED_ROUNDS_SUMMARY = "Earlier tool call rounds were omitted to fit the prompt budget."


class TranscriptPromptRenderer(PromptRenderer):
    """Renders a plain chat transcript and executes pending tool calls.

    Tool calls from the latest rounds that have no stored result are run
    through the registry during rendering, so their results are part of
    the prompt.  A round carrying a summary replaces everything before it.

    Args:
        system_prompt: Sent first in every prompt.
        registry: Where tools are looked up.
        max_prompt_tokens: Budget for the rendered messages; ``None``
            disables the check.
        tokenizer: Used for the budget check.
    """

    def __init__(
        self,
        system_prompt: str,
        registry: ToolRegistry,
        max_prompt_tokens: int | None = None,
        tokenizer: Tokenizer | None = None,
    ):
        self.system_prompt = system_prompt
        self.registry = registry
        self.max_prompt_tokens = max_prompt_tokens
        self.tokenizer = tokenizer or ApproximateTokenizer()

    async def render(
        self,
        context: BuildPromptContext,
        token: CancellationToken,
        options: RenderOptions | None = None,
    ) -> RenderResult:
        options = options or RenderOptions()
        metadata: dict = {TOOL_RESULTS_KEY: []}

        messages: list[Message] = [system(self.system_prompt)]
        if options.minimal:
            logger.info("Rendering a minimal prompt without earlier turns")
        else:
            if context.additional_hook_context:
                messages.append(system(context.additional_hook_context))
            for turn in context.history:
                messages.extend(self._render_history_turn(turn))

        rounds = list(context.tool_call_rounds)
        if options.trigger_summarize and len(rounds) > 1:
            logger.info(f"Omitting {len(rounds) - 1} rounds to fit the budget")
            rounds = [rounds[-1].with_summary(OMITTED_ROUNDS_SUMMARY)]
            metadata[SUMMARY_KEY] = OMITTED_ROUNDS_SUMMARY

        summarized_at = max(
            (i for i, r in enumerate(rounds) if r.summary), default=None
        )
        turn = context.conversation.latest_turn
        if turn.is_continuation and not context.has_stop_hook_query:
            messages.append(user(context.query))
        else:
            messages.append(user(turn.request))
        if summarized_at is not None:
            messages.append(user(f"Summary of earlier work:\n{rounds[summarized_at].summary}"))
            rounds = rounds[summarized_at:]

        for r in rounds:
            messages.extend(await self._render_round(r, context, token, metadata))

        if self.max_prompt_tokens is not None:
            used = await self.tokenizer.count_messages_tokens(messages)
            if used > self.max_prompt_tokens:
                raise PromptBudgetExceededError(
                    f"Prompt uses {used} tokens, budget is {self.max_prompt_tokens}",
                    metadata=metadata,
                )

        return RenderResult(messages=messages, metadata=metadata)

    def _render_history_turn(self, turn: Turn) -> list[Message]:
        rendered: list[Message] = [user(turn.request)]
        if turn.rounds:
            rendered.append(AssistantMessage(content=turn.rounds[-1].response))
        return rendered

    async def _render_round(
        self,
        r: ToolCallRound,
        context: BuildPromptContext,
        token: CancellationToken,
        metadata: dict,
    ) -> list[Message]:
        rendered: list[Message] = [
            AssistantMessage(
                content=r.response,
                tool_calls=list(r.tool_calls),
                thinking=r.thinking,
            )
        ]
        for call in r.tool_calls:
            result = context.tool_call_results.get(call.id)
            if result is None:
                result = await self._execute(call, context, token, metadata)
            metadata[TOOL_RESULTS_KEY].append(ToolResultMetadata(call.id, result))
            rendered.append(ToolMessage(
                tool_call_id=call.id, content=result.text_content,
            ))
        if r.hook_context:
            rendered.append(user(r.hook_context))
        return rendered

    async def _execute(
        self,
        call: ToolCall,
        context: BuildPromptContext,
        token: CancellationToken,
        metadata: dict,
    ) -> ToolResult:
        if token.cancelled:
            return ToolResult(content=[TextPart("Tool call cancelled")], is_cancelled=True)

        tool_obj = self.registry.get(call.name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {call.name}")
            return ToolResult.text(f"Error: tool '{call.name}' not found", is_error=True)

        try:
            params = json.loads(call.arguments or "{}")
            if not isinstance(params, dict):
                raise ValueError("arguments must be a JSON object")
        except ValueError as e:
            logger.warning(f"Invalid JSON in arguments for {call.name}: {e}")
            metadata[TOOL_INPUT_FAILURE_KEY] = True
            return ToolResult.text(f"Error: invalid arguments: {e}", is_error=True)

        if context.sink is not None:
            context.sink.progress(f"Running {call.name}")
        return await self._invoke(tool_obj, call, params, context)

    async def _invoke(
        self,
        tool_obj: Tool,
        call: ToolCall,
        params: dict,
        context: BuildPromptContext,
    ) -> ToolResult:
        logger.info(f"Calling {call.name} with {params}")
        if tool_obj.wants_context:
            params["context"] = context

        async with tool_span(call.name, call.external_id) as span:
            try:
                outcome = await tool_obj(**params)
            except TypeError as e:
                record_error(span, e)
                logger.warning(f"Tool {call.name} rejected its arguments: {e}")
                return ToolResult.text(f"Error calling {call.name}: {e}", is_error=True)
            except Exception as e:
                record_error(span, e)
                logger.error(f"Tool {call.name} raised: {e}")
                return ToolResult.text(f"Error calling {call.name}: {e}", is_error=True)

            output = outcome.output
            if isinstance(output, ToolResult):
                result = output
            else:
                if not isinstance(output, str):
                    output = json.dumps(output)
                result = ToolResult.text(output)
            record_tool_result(span, result)
            return result
