"""Conversation state the loop reads and appends to.

A :class:`Conversation` is an ordered list of :class:`Turn` records.  The
loop only ever touches the latest turn: it appends
:class:`ToolCallRound` records to it and sets its status.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from agentloop.streaming import ThinkingData, ToolCall, ToolCallId

logger = logging.getLogger(__name__)

PULL_REQUEST_MIME_TYPE = "application/pull-request+json"


class TurnStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"
    PROMPT_FILTERED = "prompt_filtered"


@dataclass(frozen=True)
class ToolCallRound:
    """One model response and the tool calls it asked for.

    Rounds are never mutated once appended; use :meth:`with_hook_context`
    to derive a replacement.
    """

    response: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_input_retry: int = 0
    hook_context: str | None = None
    thinking: ThinkingData | None = None
    stateful_marker: str | None = None
    summary: str | None = None
    id: str = field(default_factory=lambda: f"round_{uuid.uuid4().hex}")

    def with_hook_context(self, hook_context: str) -> ToolCallRound:
        return replace(self, hook_context=hook_context)

    def with_summary(self, summary: str) -> ToolCallRound:
        return replace(self, summary=summary)


@dataclass
class TextPart:
    text: str


@dataclass
class DataPart:
    """Structured payload attached to a tool result.

    ``audience`` lists who the part is for (``"user"``, ``"assistant"``).
    """

    mime_type: str
    data: Any
    audience: list[str] = field(default_factory=lambda: ["assistant"])


@dataclass
class ToolResult:
    content: list[TextPart | DataPart] = field(default_factory=list)
    is_error: bool = False
    is_cancelled: bool = False

    @classmethod
    def text(cls, text: str, is_error: bool = False) -> ToolResult:
        return cls(content=[TextPart(text)], is_error=is_error)

    @property
    def text_content(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    def data_parts(self, mime_type: str) -> list[DataPart]:
        return [
            p for p in self.content
            if isinstance(p, DataPart) and p.mime_type == mime_type
        ]


class ToolResultStore(Mapping[ToolCallId, ToolResult]):
    """Write-once mapping of tool call id to result.

    Setting an id that is already present keeps the first value.
    """

    def __init__(self) -> None:
        self._results: dict[ToolCallId, ToolResult] = {}

    def __getitem__(self, key: ToolCallId) -> ToolResult:
        return self._results[key]

    def __iter__(self) -> Iterator[ToolCallId]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def set(self, key: ToolCallId, result: ToolResult) -> bool:
        """Store *result* unless *key* is already present.

        Returns whether the store changed.
        """
        if key in self._results:
            logger.debug(f"Tool result for {key} already recorded")
            return False
        self._results[key] = result
        return True

    def update(self, results: Mapping[ToolCallId, ToolResult]) -> None:
        for key, result in results.items():
            self.set(key, result)


@dataclass
class Turn:
    """One user request and everything the agent did to answer it."""

    request: str
    status: TurnStatus = TurnStatus.PENDING
    rounds: list[ToolCallRound] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    references: list[Any] = field(default_factory=list)
    is_continuation: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)


@dataclass
class Conversation:
    """Turns of one session plus every tool result produced in it.

    ``tool_call_results`` outlives the per-turn loops so earlier outputs
    stay referenceable by call id.
    """

    turns: list[Turn] = field(default_factory=list)
    tool_call_results: ToolResultStore = field(default_factory=ToolResultStore)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def latest_turn(self) -> Turn:
        if not self.turns:
            raise IndexError("Conversation has no turns")
        return self.turns[-1]

    def add_turn(self, request: str, is_continuation: bool = False) -> Turn:
        turn = Turn(request=request, is_continuation=is_continuation)
        self.turns.append(turn)
        return turn

    def history(self) -> list[Turn]:
        """Turns before the latest one, minus prompt-filtered ones."""
        return [
            t for t in self.turns[:-1]
            if t.status != TurnStatus.PROMPT_FILTERED
        ]
