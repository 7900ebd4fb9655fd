"""The tool-calling loop.

A :class:`ToolCallingLoop` repeatedly renders a prompt, streams a model
response, collects the tool calls it asks for and decides whether to go
round again.  Tools are executed by the prompt renderer on the next
iteration, so the loop itself only tracks rounds and results.

Subclasses supply :meth:`ToolCallingLoop.build_prompt`,
:meth:`ToolCallingLoop.get_available_tools` and
:meth:`ToolCallingLoop.fetch`.  :class:`DefaultToolCallingLoop` wires them
to a :class:`~agentloop.prompt.PromptRenderer`, a
:class:`~agentloop.provider.ChatTransport` and a
:class:`~agentloop.tools.ToolRegistry`.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Generic, TypeVar

from agentloop.accumulator import FinishedCallback
from agentloop.cancellation import NONE, CancellationToken
from agentloop.config import LoopSettings, ToolCallLimitBehavior
from agentloop.context import BuildPromptContext
from agentloop.conversation import (
    PULL_REQUEST_MIME_TYPE,
    Conversation,
    ToolCallRound,
    ToolResultStore,
    Turn,
    TurnStatus,
)
from agentloop.dispatcher import (
    ResponseDispatcher,
    ResponseProcessor,
    ResponseStreamParticipant,
)
from agentloop.errors import (
    AgentLoopError,
    CancellationError,
    EmptyPromptError,
    PromptBudgetExceededError,
    ToolCallCancelledError,
)
from agentloop.events import DisplaySink, PullRequestEvent
from agentloop.hooks import (
    HookKind,
    HookService,
    NoHooks,
    format_hook_context,
    run_stop_hook,
    run_subagent_start_hook,
)
from agentloop.instrumentation import loop_span, record_error, record_loop_result
from agentloop.message import (
    AssistantMessage,
    Message,
    MessageRole,
    ToolMessage,
    system,
    to_wire,
    user,
)
from agentloop.prompt import (
    SUMMARY_KEY,
    TOOL_INPUT_FAILURE_KEY,
    TOOL_RESULTS_KEY,
    ApproximateTokenizer,
    PromptRenderer,
    RenderResult,
    Tokenizer,
    render_with_fallback,
)
from agentloop.provider import ChatTransport, FetchCancelled, FetchResult, FetchSuccess
from agentloop.streaming import ResponseDelta, ThinkingData, ToolCall, ToolCallId
from agentloop.summarizer import (
    BackgroundSummarizationState,
    BackgroundSummarizer,
    SummarizationResult,
    SummarizationWork,
)
from agentloop.telemetry import TelemetrySession
from agentloop.tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

MAX_TOOL_CALLS_EXCEEDED_KEY = "max_tool_calls_exceeded"
CONTINUE_QUERY = "Please continue"

SUMMARIZATION_PROMPT = (
    "Summarize the conversation so far for your own later use. Keep every "
    "decision, file name, tool result and open task that is needed to "
    "continue the work. Reply with the summary only."
)

T = TypeVar("T")


# ----------------------------------------------------------------------
# Options and results
# ----------------------------------------------------------------------


@dataclass
class LoopRequest:
    """Who is asking.  Subagent requests run the subagent hooks."""

    subagent_invocation_id: str | None = None
    subagent_name: str | None = None

    @property
    def is_subagent(self) -> bool:
        return self.subagent_invocation_id is not None


@dataclass
class LoopOptions:
    """Per-turn configuration of a :class:`ToolCallingLoop`.

    Args:
        conversation: The loop answers its latest turn.
        tool_call_limit: Iterations allowed after the first before the
            limit policy applies.
        tool_call_limit_behavior: ``CONFIRM`` asks the user whether to
            raise the limit, ``STOP`` only records it.
        yield_requested: Polled between iterations; returning true stops
            the loop without marking the limit.
        response_processor: Renders the live response; defaults to the
            dispatcher's pass-through processor.
        stream_participants: Sink wrappers applied in order.
        max_stop_hook_blocks: Consecutive stop hook blocks honoured
            before the loop stops regardless.
        request: Subagent identity, if any.
    """

    conversation: Conversation
    tool_call_limit: int = 15
    tool_call_limit_behavior: ToolCallLimitBehavior = ToolCallLimitBehavior.CONFIRM
    yield_requested: Callable[[], bool] | None = None
    response_processor: ResponseProcessor | None = None
    stream_participants: Sequence[ResponseStreamParticipant] = ()
    max_stop_hook_blocks: int = 8
    request: LoopRequest = field(default_factory=LoopRequest)

    @classmethod
    def from_settings(
        cls, conversation: Conversation, settings: LoopSettings, **kwargs: Any,
    ) -> LoopOptions:
        return cls(
            conversation=conversation,
            tool_call_limit=settings.tool_call_limit,
            tool_call_limit_behavior=settings.tool_call_limit_behavior,
            max_stop_hook_blocks=settings.max_stop_hook_blocks,
            **kwargs,
        )


@dataclass
class FetchOptions:
    messages: list[Message]
    finished_cb: FinishedCallback
    tools: list[Tool] = field(default_factory=list)
    iteration: int = 0


@dataclass
class SingleIterationResult:
    response: FetchResult
    round: ToolCallRound
    processor_result: Any = None
    had_ignored_files: bool = False
    last_request_messages: list[Message] = field(default_factory=list)
    available_tools: list[Tool] = field(default_factory=list)


@dataclass
class LoopResult:
    """The last iteration plus everything the turn accumulated."""

    last: SingleIterationResult
    tool_call_rounds: list[ToolCallRound]
    tool_call_results: ToolResultStore

    @property
    def response(self) -> FetchResult:
        return self.last.response

    @property
    def round(self) -> ToolCallRound:
        return self.last.round


@dataclass
class DidBuildPromptEvent:
    result: RenderResult
    tools: list[Tool]
    prompt_tokens: int
    tool_tokens: int


@dataclass
class DidReceiveResponseEvent:
    response: FetchResult
    tool_calls: list[ToolCall]
    iteration: int


class Emitter(Generic[T]):
    """Listener list.  Call it to subscribe; returns an unsubscribe function."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def __call__(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def fire(self, event: T) -> None:
        for listener in list(self._listeners):
            listener(event)


class PermissionUpgradeService(ABC):
    """Decides whether calls to some tools need a broader permission grant.

    When :meth:`should_request_upgrade` is true after a response that
    calls one of :attr:`tool_names`, the loop shows the upgrade request
    and aborts the iteration with :class:`ToolCallCancelledError`.
    """

    tool_names: frozenset[str] = frozenset()

    @abstractmethod
    async def should_request_upgrade(self) -> bool:
        ...

    @abstractmethod
    async def show_upgrade(self, sink: DisplaySink, turn: Turn) -> None:
        ...


# ----------------------------------------------------------------------
# Message sanitization
# ----------------------------------------------------------------------


def strip_internal_tool_call_ids(messages: Sequence[Message]) -> list[Message]:
    """Drop loop-assigned disambiguators so only provider ids go out."""
    stripped: list[Message] = []
    for m in messages:
        if isinstance(m, AssistantMessage) and m.tool_calls:
            m = m.model_copy(update={
                "tool_calls": [replace(tc, id=tc.id.stripped()) for tc in m.tool_calls],
            })
        elif isinstance(m, ToolMessage):
            m = m.model_copy(update={"tool_call_id": m.tool_call_id.stripped()})
        stripped.append(m)
    return stripped


def validate_tool_messages(
    messages: Sequence[Message],
) -> tuple[list[Message], list[str]]:
    """Remove tool messages that do not answer the preceding assistant message.

    Returns the kept messages and one reason per dropped message:
    ``noPreviousAssistantMessage``, ``noToolCalls`` or ``toolCallNotFound``.
    """
    kept: list[Message] = []
    reasons: list[str] = []
    previous: AssistantMessage | None = None
    for m in messages:
        if isinstance(m, AssistantMessage):
            previous = m
        elif isinstance(m, ToolMessage):
            reason = None
            if previous is None:
                reason = "noPreviousAssistantMessage"
            elif not previous.tool_calls:
                reason = "noToolCalls"
            elif not any(tc.id == m.tool_call_id for tc in previous.tool_calls):
                reason = "toolCallNotFound"
            if reason is not None:
                reasons.append(reason)
                continue
        kept.append(m)
    return kept, reasons


# ----------------------------------------------------------------------
# The loop
# ----------------------------------------------------------------------


@dataclass
class _Capture:
    tool_calls: list[ToolCall] = field(default_factory=list)
    stateful_marker: str | None = None
    thinking: ThinkingData | None = None


class ToolCallingLoop(ABC):
    """Drives one turn through as many model round-trips as it needs.

    One instance handles one turn.  Rounds are appended to the latest
    turn of ``options.conversation``; tool results go to the
    conversation's ``tool_call_results`` so later turns can see them.

    Args:
        options: Turn configuration.
        hooks: Consulted before stopping.
        tokenizer: Used for prompt and tool token accounting.
        permission_service: Optional permission escalation check.
        telemetry: Receives diagnostics events.
    """

    # Shared by every loop so ids stay unique across turns.
    _tool_call_id_counter = itertools.count(int(time.time() * 1000))

    def __init__(
        self,
        options: LoopOptions,
        hooks: HookService | None = None,
        tokenizer: Tokenizer | None = None,
        permission_service: PermissionUpgradeService | None = None,
        telemetry: TelemetrySession | None = None,
    ):
        self.options = options
        self.turn = options.conversation.latest_turn
        self.hooks = hooks or NoHooks()
        self.tokenizer = tokenizer or ApproximateTokenizer()
        self.permission_service = permission_service
        self.telemetry = telemetry or TelemetrySession()
        self.tool_call_results = options.conversation.tool_call_results
        self.on_did_build_prompt: Emitter[DidBuildPromptEvent] = Emitter()
        self.on_did_receive_response: Emitter[DidReceiveResponseEvent] = Emitter()
        self._stop_hook_reason: str | None = None
        self._additional_hook_context: str | None = None
        self._stop_hook_blocks = 0

    @property
    def tool_call_rounds(self) -> list[ToolCallRound]:
        return self.turn.rounds

    @abstractmethod
    async def build_prompt(
        self, context: BuildPromptContext, sink: DisplaySink,
        token: CancellationToken,
    ) -> RenderResult:
        ...

    @abstractmethod
    async def get_available_tools(
        self, sink: DisplaySink, token: CancellationToken,
    ) -> list[Tool]:
        ...

    @abstractmethod
    async def fetch(
        self, options: FetchOptions, token: CancellationToken,
    ) -> FetchResult:
        ...

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(
        self, sink: DisplaySink, token: CancellationToken = NONE,
    ) -> LoopResult:
        """Iterate until the model stops calling tools or a limit applies.

        Raises:
            CancellationError: Cancelled before any iteration completed.
            EmptyPromptError: The renderer produced no messages.
        """
        async with loop_span(
            type(self).__name__, self.turn.id, self.options.request.subagent_name,
        ) as span:
            try:
                result = await self._run(sink, token)
            except Exception as e:
                record_error(span, e)
                raise
            record_loop_result(span, self.turn, len(result.tool_call_rounds))
            return result

    async def _run(
        self, sink: DisplaySink, token: CancellationToken,
    ) -> LoopResult:
        request = self.options.request
        if request.is_subagent:
            await self._run_subagent_start_hook(token)

        i = 0
        last: SingleIterationResult | None = None
        stop_hook_active = False
        while True:
            if last is not None:
                if i >= self.options.tool_call_limit:
                    self._hit_tool_call_limit(sink)
                    break
                i += 1
                if self._yield_requested():
                    logger.info("Yield requested, stopping before next iteration")
                    break

            try:
                result = await self.run_one(sink, i, token)
            except CancellationError:
                if last is None:
                    raise
                logger.info("Iteration cancelled, keeping the previous result")
                break

            if last is not None and last.had_ignored_files:
                result = replace(result, had_ignored_files=True)
            last = result
            self.tool_call_rounds.append(result.round)
            if result.round.tool_calls and isinstance(result.response, FetchSuccess):
                self._stop_hook_blocks = 0
                continue

            if await self._stop_hook_blocked(sink, stop_hook_active, token):
                stop_hook_active = True
                last = replace(last, round=self.tool_call_rounds[-1])
                continue
            break

        self._emit_pull_request_events(sink, last)
        if self.turn.status == TurnStatus.PENDING:
            self.turn.status = _turn_status(last.response)
        logger.info(
            f"Turn {self.turn.id} finished after {len(self.tool_call_rounds)} "
            f"round(s): {self.turn.status.value}"
        )
        return LoopResult(
            last=last,
            tool_call_rounds=list(self.tool_call_rounds),
            tool_call_results=self.tool_call_results,
        )

    def _yield_requested(self) -> bool:
        check = self.options.yield_requested
        return check is not None and check()

    def _hit_tool_call_limit(self, sink: DisplaySink) -> None:
        limit = self.options.tool_call_limit
        logger.info(f"Tool call limit of {limit} reached")
        if self.options.tool_call_limit_behavior == ToolCallLimitBehavior.CONFIRM:
            sink.confirmation(
                "Continue to iterate?",
                "The agent has been working on this problem for a while. It "
                "can continue to iterate, or you can send a new message to "
                "refine your prompt.",
                {"requested_round_limit": int(limit * 3 / 2 + 0.5)},
                ["Continue", "Cancel"],
            )
        self.turn.set_metadata(MAX_TOOL_CALLS_EXCEEDED_KEY, True)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _run_subagent_start_hook(self, token: CancellationToken) -> None:
        request = self.options.request
        context = await run_subagent_start_hook(
            self.hooks,
            {
                "agent_id": request.subagent_invocation_id,
                "agent_type": request.subagent_name or "default",
            },
            token,
        )
        if context:
            logger.info(f"SubagentStart hook added {len(context)} chars of context")
            self._additional_hook_context = context

    async def _stop_hook_blocked(
        self, sink: DisplaySink, stop_hook_active: bool, token: CancellationToken,
    ) -> bool:
        """Run the stop hook; on a block, queue its reasons and return True."""
        request = self.options.request
        if request.is_subagent:
            kind = HookKind.SUBAGENT_STOP
            hook_input = {
                "agent_id": request.subagent_invocation_id,
                "agent_type": request.subagent_name or "default",
                "stop_hook_active": stop_hook_active,
            }
        else:
            kind = HookKind.STOP
            hook_input = {"stop_hook_active": stop_hook_active}

        result = await run_stop_hook(self.hooks, kind, hook_input, token)
        if not (result.should_continue and result.reasons):
            return False

        if self._stop_hook_blocks >= self.options.max_stop_hook_blocks:
            logger.warning(
                f"{kind.value} hook blocked {self._stop_hook_blocks} times in a "
                f"row, stopping anyway"
            )
            sink.warning(
                f"Stopping after {self._stop_hook_blocks} consecutive stop hook blocks"
            )
            return False

        self._stop_hook_blocks += 1
        logger.info(f"{kind.value} hook blocked stopping: {result.reasons}")
        self._show_stop_hook_blocked(sink, kind, result.reasons)
        self._stop_hook_reason = "; ".join(result.reasons)
        self.tool_call_rounds[-1] = self.tool_call_rounds[-1].with_hook_context(
            format_hook_context(result.reasons)
        )
        return True

    def _show_stop_hook_blocked(
        self, sink: DisplaySink, kind: HookKind, reasons: list[str],
    ) -> None:
        if kind == HookKind.SUBAGENT_STOP:
            sink.markdown(f"\n\n**Subagent stop hook:** {'; '.join(reasons)}\n\n")
        elif len(reasons) == 1:
            sink.warning(f"Stop hook: {reasons[0]}")
        else:
            listed = "\n".join(f"{i + 1}. {r}" for i, r in enumerate(reasons))
            sink.warning(f"Stop hooks:\n{listed}")

    # ------------------------------------------------------------------
    # Single iteration
    # ------------------------------------------------------------------

    def create_prompt_context(
        self, available_tools: list[Tool], sink: DisplaySink,
    ) -> BuildPromptContext:
        is_continuation = self.turn.is_continuation or bool(self._stop_hook_reason)
        has_stop_hook_query = False
        if self._stop_hook_reason:
            query = format_hook_context([self._stop_hook_reason])
            self._stop_hook_reason = None
            has_stop_hook_query = True
        elif is_continuation:
            query = CONTINUE_QUERY
        else:
            query = self.turn.request

        return BuildPromptContext(
            request_id=self.turn.id,
            query=query,
            history=self.options.conversation.history(),
            conversation=self.options.conversation,
            tool_call_rounds=list(self.tool_call_rounds),
            tool_call_results=self.tool_call_results,
            available_tools=available_tools,
            is_continuation=is_continuation,
            has_stop_hook_query=has_stop_hook_query,
            additional_hook_context=self._additional_hook_context,
            sink=sink,
        )

    async def run_one(
        self, sink: DisplaySink, iteration: int, token: CancellationToken,
    ) -> SingleIterationResult:
        """Render, fetch and capture one round.

        The round is returned, not appended; :meth:`run` appends it.
        """
        logger.debug(f"Starting iteration {iteration} of turn {self.turn.id}")
        available_tools = await self.get_available_tools(sink, token)
        context = self.create_prompt_context(available_tools, sink)
        build = await self._build_prompt_and_store_results(context, sink, token)
        self._throw_if_cancelled(token)

        self.turn.references.extend(build.references)
        available_tools = await self.get_available_tools(sink, token)
        tool_input_failure = bool(build.metadata.get(TOOL_INPUT_FAILURE_KEY))
        if build.metadata.get(SUMMARY_KEY):
            self.turn.set_metadata(SUMMARY_KEY, build.metadata[SUMMARY_KEY])

        prompt_tokens = await self.tokenizer.count_messages_tokens(build.messages)
        tool_tokens = await self.tokenizer.count_tool_tokens(available_tools)
        self._throw_if_cancelled(token)
        self.on_did_build_prompt.fire(DidBuildPromptEvent(
            result=build,
            tools=available_tools,
            prompt_tokens=prompt_tokens,
            tool_tokens=tool_tokens,
        ))
        logger.debug(f"Prompt uses {prompt_tokens} tokens, tools {tool_tokens}")

        if iteration > 0 and self._yield_requested():
            raise CancellationError()

        dispatcher = ResponseDispatcher(
            sink,
            self.options.response_processor,
            self.options.stream_participants,
            token,
        )
        if not build.messages:
            dispatcher.source.resolve()
            await dispatcher.close()
            await dispatcher.finalize_streams()
            raise EmptyPromptError()

        capture = _Capture()

        async def finished_cb(text: str, index: int, delta: ResponseDelta) -> int | None:
            for call in delta.tool_calls:
                capture.tool_calls.append(ToolCall(
                    id=ToolCallId(
                        call.external_id, next(ToolCallingLoop._tool_call_id_counter),
                    ),
                    name=call.name,
                    arguments=call.arguments or "{}",
                ))
            if delta.stateful_marker:
                capture.stateful_marker = delta.stateful_marker
            if delta.thinking is not None:
                capture.thinking = ThinkingData.create_or_update(
                    capture.thinking, delta.thinking,
                )
            return await dispatcher.on_delta(text, index, delta)

        try:
            response = await self.fetch(
                FetchOptions(
                    messages=self._sanitize(build.messages),
                    finished_cb=finished_cb,
                    tools=available_tools,
                    iteration=iteration,
                ),
                token,
            )
            processor_result = await dispatcher.close()

            if isinstance(response, FetchSuccess) and response.usage is not None:
                usage = response.usage
                sink.usage(
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    {"cached_tokens": usage.cached_tokens},
                )

            if await self._needs_permission_upgrade(capture.tool_calls):
                logger.info("Tool call requires a permission upgrade")
                await self.permission_service.show_upgrade(sink, self.turn)
                raise ToolCallCancelledError(CancellationError())
        finally:
            dispatcher.source.resolve()
            await dispatcher.finalize_streams()

        self.on_did_receive_response.fire(DidReceiveResponseEvent(
            response=response, tool_calls=capture.tool_calls, iteration=iteration,
        ))

        previous = self.tool_call_rounds[-1] if self.tool_call_rounds else None
        retry = (previous.tool_input_retry if previous else 0) + 1 if tool_input_failure else 0
        if isinstance(response, FetchSuccess):
            round_ = ToolCallRound(
                response=response.value,
                tool_calls=tuple(capture.tool_calls),
                tool_input_retry=retry,
                thinking=capture.thinking,
                stateful_marker=capture.stateful_marker,
            )
        else:
            logger.info(f"Fetch did not succeed: {response}")
            round_ = ToolCallRound(
                response="",
                tool_calls=tuple(capture.tool_calls),
                tool_input_retry=retry,
            )

        return SingleIterationResult(
            response=response,
            round=round_,
            processor_result=processor_result,
            had_ignored_files=build.has_ignored_files,
            last_request_messages=build.messages,
            available_tools=available_tools,
        )

    async def _build_prompt_and_store_results(
        self, context: BuildPromptContext, sink: DisplaySink,
        token: CancellationToken,
    ) -> RenderResult:
        result = await self.build_prompt(context, sink, token)
        cancelled = False
        for metadata in result.tool_results:
            self.tool_call_results.set(metadata.tool_call_id, metadata.result)
            cancelled = cancelled or metadata.is_cancelled
        if cancelled:
            raise CancellationError()
        return result

    def _throw_if_cancelled(self, token: CancellationToken) -> None:
        if token.cancelled:
            self.turn.status = TurnStatus.CANCELLED
        token.raise_if_cancelled()

    def _sanitize(self, messages: list[Message]) -> list[Message]:
        kept, reasons = validate_tool_messages(strip_internal_tool_call_ids(messages))
        if reasons:
            logger.warning(
                f"Filtered {len(reasons)} invalid tool message(s): {', '.join(reasons)}"
            )
            self.telemetry.send(
                "toolCalling.invalidToolMessages",
                {"filterReasons": ",".join(reasons)},
                {"filterCount": len(reasons)},
            )
        return kept

    async def _needs_permission_upgrade(self, tool_calls: list[ToolCall]) -> bool:
        service = self.permission_service
        if service is None:
            return False
        if not any(tc.name in service.tool_names for tc in tool_calls):
            return False
        return await service.should_request_upgrade()

    def _emit_pull_request_events(
        self, sink: DisplaySink, last: SingleIterationResult,
    ) -> None:
        for message in last.last_request_messages:
            if not isinstance(message, ToolMessage):
                continue
            result = self.tool_call_results.get(message.tool_call_id)
            if result is None:
                continue
            for part in result.data_parts(PULL_REQUEST_MIME_TYPE):
                if "user" not in part.audience:
                    continue
                try:
                    data = part.data
                    if isinstance(data, (str, bytes)):
                        data = json.loads(data)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed pull request data: {e}")
                    continue
                if not isinstance(data, dict):
                    continue
                sink.push(PullRequestEvent(
                    uri=data.get("uri", ""),
                    title=data.get("title", ""),
                    description=data.get("description", ""),
                    author=data.get("author", ""),
                    link_tag=data.get("linkTag", ""),
                ))


def _turn_status(response: FetchResult) -> TurnStatus:
    if isinstance(response, FetchSuccess):
        return TurnStatus.SUCCESS
    if isinstance(response, FetchCancelled):
        return TurnStatus.CANCELLED
    return TurnStatus.ERROR


# ----------------------------------------------------------------------
# Default composition
# ----------------------------------------------------------------------


class DefaultToolCallingLoop(ToolCallingLoop):
    """Loop over a prompt renderer, a chat transport and a tool registry.

    When a summarizer is given, a background summary of the turn is
    started once a rendered prompt passes ``summarization_threshold`` of
    the model's prompt budget, and applied to the matching round at the
    next prompt build.
    """

    def __init__(
        self,
        options: LoopOptions,
        renderer: PromptRenderer,
        transport: ChatTransport,
        registry: ToolRegistry,
        hooks: HookService | None = None,
        summarizer: BackgroundSummarizer | None = None,
        tokenizer: Tokenizer | None = None,
        permission_service: PermissionUpgradeService | None = None,
        telemetry: TelemetrySession | None = None,
        settings: LoopSettings | None = None,
    ):
        super().__init__(
            options,
            hooks=hooks,
            tokenizer=tokenizer,
            permission_service=permission_service,
            telemetry=telemetry,
        )
        settings = settings or LoopSettings()
        self.renderer = renderer
        self.transport = transport
        self.registry = registry
        self.summarizer = summarizer
        self.summarization_enabled = settings.summarization_enabled
        self.summarization_threshold = settings.summarization_threshold

    async def get_available_tools(
        self, sink: DisplaySink, token: CancellationToken,
    ) -> list[Tool]:
        return await self.registry.get_available_tools()

    async def build_prompt(
        self, context: BuildPromptContext, sink: DisplaySink,
        token: CancellationToken,
    ) -> RenderResult:
        self._apply_summary(context)
        try:
            result = await self.renderer.render(context, token)
        except PromptBudgetExceededError as e:
            logger.info(f"Prompt over budget: {e}")
            for metadata in e.metadata.get(TOOL_RESULTS_KEY, []):
                self.tool_call_results.set(metadata.tool_call_id, metadata.result)
            if (
                self.summarizer is not None
                and self.summarizer.state == BackgroundSummarizationState.IN_PROGRESS
            ):
                logger.info("Waiting for background summarization")
                await self.summarizer.wait_for_completion()
                self._apply_summary(context)
            return await render_with_fallback(
                self.renderer, context, token, self.summarization_enabled,
            )

        await self._maybe_start_summarization(result)
        return result

    async def fetch(
        self, options: FetchOptions, token: CancellationToken,
    ) -> FetchResult:
        request_options: dict = {}
        if options.tools:
            request_options["tools"] = [t.model_dump() for t in options.tools]
        self.telemetry.send(
            "toolCallingLoop.fetch",
            {
                "requestOptionsId": self.telemetry.request_options_id(request_options),
                "lastMessageId": self.telemetry.message_id(to_wire(options.messages[-1:])),
                "model": self.transport.model,
            },
            {"iteration": options.iteration, "messageCount": len(options.messages)},
        )
        return await self.transport.fetch(
            options.messages, options.finished_cb, request_options, token,
        )

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    def _apply_summary(self, context: BuildPromptContext) -> None:
        if self.summarizer is None:
            return
        summary = self.summarizer.consume_and_reset()
        if summary is None:
            return
        for i, r in enumerate(self.tool_call_rounds):
            if r.id == summary.tool_call_round_id:
                self.tool_call_rounds[i] = r.with_summary(summary.summary)
                self.turn.set_metadata(SUMMARY_KEY, summary.summary)
                context.tool_call_rounds = list(self.tool_call_rounds)
                logger.info(f"Applied background summary to round {r.id}")
                return
        logger.debug(f"Summarized round {summary.tool_call_round_id} is gone")

    async def _maybe_start_summarization(self, result: RenderResult) -> None:
        if (
            not self.summarization_enabled
            or self.summarizer is None
            or not self.tool_call_rounds
        ):
            return
        used = await self.tokenizer.count_messages_tokens(result.messages)
        threshold = self.summarization_threshold * self.summarizer.model_max_prompt_tokens
        if used <= threshold:
            return
        logger.info(f"Prompt uses {used} tokens (threshold {threshold:.0f})")
        self.summarizer.start(
            self._summarization_work(result.messages, self.tool_call_rounds[-1].id)
        )

    def _summarization_work(
        self, messages: list[Message], round_id: str,
    ) -> SummarizationWork:
        prompt = [
            system(SUMMARIZATION_PROMPT),
            *[m for m in self._sanitize(messages) if m.role != MessageRole.SYSTEM],
            user("Summarize the conversation above."),
        ]

        async def work(token: CancellationToken) -> SummarizationResult:
            response = await self.transport.fetch(prompt, None, None, token)
            if not isinstance(response, FetchSuccess):
                raise AgentLoopError(f"Summarization request failed: {response}")
            return SummarizationResult(
                summary=response.value, tool_call_round_id=round_id,
            )

        return work
