import json
import re
from dataclasses import dataclass, field

import pytest

from agentloop.accumulator import ChoiceStream
from agentloop.cancellation import NONE
from agentloop.context import BuildPromptContext
from agentloop.conversation import Conversation, ToolResult
from agentloop.events import RecordingSink
from agentloop.hooks import HookKind, HookResult, HookService
from agentloop.message import AssistantMessage, Message, ToolMessage, system, user
from agentloop.prompt import (
    TOOL_INPUT_FAILURE_KEY,
    TOOL_RESULTS_KEY,
    PromptRenderer,
    RenderOptions,
    RenderResult,
    ToolResultMetadata,
)
from agentloop.provider import (
    ChatTransport,
    FetchCancelled,
    FetchFailed,
    FetchSuccess,
    InvalidAuth,
    RateLimited,
)
from agentloop.streaming import ChoiceChunk, ResponseDelta, ThinkingDelta, ToolCall, ToolCallId, Usage
from agentloop.tools import tool


# ---------------------------------------------------------------------------
# Mock responses
# ---------------------------------------------------------------------------

@dataclass
class MockResponse:
    """Scripted model answer, streamed through a real ChoiceStream."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    thinking: str | None = None


def make_text_response(content: str, usage: Usage | None = None) -> MockResponse:
    """Fake model response with text only (no tool calls)."""
    return MockResponse(content=content, usage=usage)


def make_tool_call_response(
    name: str,
    args: dict | str,
    call_id: str = "call_1",
    content: str = "",
) -> MockResponse:
    """Fake model response containing a single tool call.

    *args* may be a raw string to simulate malformed arguments.
    """
    arguments = args if isinstance(args, str) else json.dumps(args)
    return MockResponse(
        content=content,
        tool_calls=[ToolCall(id=ToolCallId(call_id), name=name, arguments=arguments)],
    )


def make_multi_tool_call_response(
    calls: list[tuple[str, dict, str]],
    content: str = "",
) -> MockResponse:
    """Fake model response containing multiple tool calls.

    Each item in *calls* is ``(func_name, args_dict, call_id)``.
    """
    return MockResponse(
        content=content,
        tool_calls=[
            ToolCall(id=ToolCallId(call_id), name=name, arguments=json.dumps(args))
            for name, args, call_id in calls
        ],
    )


# ---------------------------------------------------------------------------
# Mock transport
# ---------------------------------------------------------------------------

_FETCH_RESULTS = (FetchSuccess, RateLimited, InvalidAuth, FetchCancelled, FetchFailed)


class MockTransport(ChatTransport):
    """Transport that returns pre-queued responses. No network calls.

    ``MockResponse`` entries are split into chunks and pushed through a
    ``ChoiceStream`` so the caller's finished callback runs as it would
    for a real provider.  Queued fetch results (e.g. ``FetchFailed``)
    are returned as is.
    """

    system = "mock"
    model = "mock-model"

    def __init__(self):
        self.responses: list = []
        self.call_log: list[dict] = []

    async def fetch(self, messages, finished_cb=None, request_options=None, token=NONE):
        self.call_log.append({"messages": messages, "request_options": request_options})
        response = self.responses.pop(0)
        if isinstance(response, _FETCH_RESULTS):
            return response

        stream = ChoiceStream(
            _chunks(response), finished_cb, request_id="req-1", cancel_token=token,
        )
        choices = [c async for c in stream]
        if token.cancelled or not choices:
            return FetchCancelled(request_id="req-1")
        choice = choices[0]
        return FetchSuccess(
            value=choice.completion_text,
            tool_calls=choice.tool_calls,
            usage=response.usage,
            request_id="req-1",
            finish_reason=choice.finish_reason,
        )


async def _chunks(response: MockResponse):
    if response.thinking:
        yield ChoiceChunk(delta=ResponseDelta(
            thinking=ThinkingDelta(id="thinking_0", text=response.thinking),
        ))
    for piece in re.findall(r".{1,8}", response.content, re.S):
        yield ChoiceChunk(text=piece, delta=ResponseDelta(text=piece))
    if response.tool_calls:
        yield ChoiceChunk(delta=ResponseDelta(
            tool_calls=[
                ToolCall(id=tc.id, name=tc.name, arguments=tc.arguments)
                for tc in response.tool_calls
            ],
        ))
    yield ChoiceChunk(
        finish_reason="tool_calls" if response.tool_calls else "stop",
        delta=ResponseDelta(usage=response.usage),
    )


# ---------------------------------------------------------------------------
# Mock hook service
# ---------------------------------------------------------------------------

class MockHookService(HookService):
    """Hook service returning queued results per hook kind."""

    def __init__(self):
        self.results: dict[HookKind, list[list[HookResult]]] = {}
        self.call_log: list[tuple[HookKind, dict]] = []
        self.error: Exception | None = None

    def queue(self, kind: HookKind, *results: HookResult) -> None:
        self.results.setdefault(kind, []).append(list(results))

    async def execute_hook(self, kind, input, token):
        self.call_log.append((kind, dict(input)))
        if self.error is not None:
            raise self.error
        queued = self.results.get(kind)
        if not queued:
            return []
        return queued.pop(0)


def block(reason: str) -> HookResult:
    return HookResult(success=True, output={"decision": "block", "reason": reason})


# ---------------------------------------------------------------------------
# Scripted renderer
# ---------------------------------------------------------------------------

class ScriptedRenderer(PromptRenderer):
    """Renders a minimal transcript and records every context it saw.

    Tool results come from ``tool_results`` (by external id) instead of
    executing anything.  Renders whose 0-based index is in
    ``tool_input_failure_at`` report a tool input failure, and those in
    ``ignored_files_at`` report ignored files.
    """

    def __init__(self, system_prompt: str = "You are helpful."):
        self.system_prompt = system_prompt
        self.contexts: list[BuildPromptContext] = []
        self.tool_results: dict[str, ToolResult] = {}
        self.tool_input_failure_at: set[int] = set()
        self.ignored_files_at: set[int] = set()
        self.empty = False

    async def render(self, context, token, options: RenderOptions | None = None):
        self.contexts.append(context)
        if self.empty:
            return RenderResult(messages=[])
        messages: list[Message] = [system(self.system_prompt), user(context.query)]
        tool_results = []
        for r in context.tool_call_rounds:
            messages.append(AssistantMessage(content=r.response, tool_calls=list(r.tool_calls)))
            for call in r.tool_calls:
                result = self.tool_results.get(call.external_id, ToolResult.text("ok"))
                tool_results.append(ToolResultMetadata(call.id, result))
                messages.append(ToolMessage(tool_call_id=call.id, content=result.text_content))
        metadata = {TOOL_RESULTS_KEY: tool_results}
        if len(self.contexts) - 1 in self.tool_input_failure_at:
            metadata[TOOL_INPUT_FAILURE_KEY] = True
        return RenderResult(
            messages=messages,
            metadata=metadata,
            has_ignored_files=len(self.contexts) - 1 in self.ignored_files_at,
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def mock_hooks():
    return MockHookService()


@pytest.fixture
def scripted_renderer():
    return ScriptedRenderer()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def conversation():
    conv = Conversation()
    conv.add_turn("Fix the bug")
    return conv


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet


@pytest.fixture
def sample_context_tool():
    @tool
    def stateful(context: BuildPromptContext, query: str):
        """Tool that uses context."""
        return f"turn={context.request_id}, query={query}"
    return stateful
