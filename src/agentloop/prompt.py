"""Prompt rendering contracts.

A :class:`PromptRenderer` turns a
:class:`~agentloop.context.BuildPromptContext` into wire messages.
Renderers report side information through ``RenderResult.metadata``
under the ``*_KEY`` constants below.
"""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from agentloop.cancellation import CancellationToken
from agentloop.context import BuildPromptContext
from agentloop.conversation import ToolResult
from agentloop.errors import CancellationError, PromptBudgetExceededError
from agentloop.message import Message, to_wire
from agentloop.streaming import ToolCallId
from agentloop.tools import ToolDescriptor

logger = logging.getLogger(__name__)

TOOL_RESULTS_KEY = "tool_results"
"""``list[ToolResultMetadata]`` for every tool result in the prompt."""

TOOL_INPUT_FAILURE_KEY = "tool_input_failure"
"""``True`` when a tool call in the prompt had arguments that did not parse."""

SUMMARY_KEY = "conversation_summary"
"""Summary text the renderer applied, if any."""


@dataclass
class ToolResultMetadata:
    tool_call_id: ToolCallId
    result: ToolResult

    @property
    def is_cancelled(self) -> bool:
        return self.result.is_cancelled


@dataclass
class RenderOptions:
    """Knobs for the fallback render path."""

    trigger_summarize: bool = False
    minimal: bool = False
    """Leave out earlier turns and hook context."""


@dataclass
class RenderResult:
    messages: list[Message]
    metadata: dict[str, Any] = field(default_factory=dict)
    references: list[Any] = field(default_factory=list)
    has_ignored_files: bool = False

    @property
    def tool_results(self) -> list[ToolResultMetadata]:
        return self.metadata.get(TOOL_RESULTS_KEY, [])


class PromptRenderer(ABC):
    @abstractmethod
    async def render(
        self,
        context: BuildPromptContext,
        token: CancellationToken,
        options: RenderOptions | None = None,
    ) -> RenderResult:
        """Render *context* into messages.

        Raises:
            PromptBudgetExceededError: The prompt does not fit.  The
                error carries whatever metadata was produced.
        """


async def render_with_fallback(
    renderer: PromptRenderer,
    context: BuildPromptContext,
    token: CancellationToken,
    summarization_enabled: bool = True,
) -> RenderResult:
    """Render, retrying with summarization and then a minimal prompt.

    Tool results carried by a budget error are merged into the context
    before the retry so they are not executed twice.
    """
    try:
        return await renderer.render(context, token, RenderOptions())
    except PromptBudgetExceededError as e:
        if not summarization_enabled:
            raise
        logger.debug(f"Budget exceeded, triggering summarization ({e})")
        for metadata in e.metadata.get(TOOL_RESULTS_KEY, []):
            context.tool_call_results.set(metadata.tool_call_id, metadata.result)

    try:
        return await renderer.render(
            context, token, RenderOptions(trigger_summarize=True)
        )
    except CancellationError:
        raise
    except Exception as e:
        logger.error(f"Summarization render failed: {e}")

    return await renderer.render(
        context, token, RenderOptions(minimal=True)
    )


class Tokenizer(ABC):
    @abstractmethod
    async def count_messages_tokens(self, messages: Sequence[Message]) -> int:
        ...

    @abstractmethod
    async def count_tool_tokens(self, tools: Sequence[ToolDescriptor]) -> int:
        ...


class ApproximateTokenizer(Tokenizer):
    """Estimates tokens as serialized characters over ``chars_per_token``."""

    def __init__(self, chars_per_token: float = 4.0):
        self.chars_per_token = chars_per_token

    def _estimate(self, payload: Any) -> int:
        return math.ceil(len(json.dumps(payload)) / self.chars_per_token)

    async def count_messages_tokens(self, messages: Sequence[Message]) -> int:
        return self._estimate(to_wire(list(messages)))

    async def count_tool_tokens(self, tools: Sequence[ToolDescriptor]) -> int:
        if not tools:
            return 0
        return self._estimate([t.model_dump() for t in tools])
