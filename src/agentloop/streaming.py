"""Streaming primitives for provider responses.

Provider adapters turn raw events into :class:`ChoiceChunk` records,
each carrying a :class:`ResponseDelta`.  The :class:`ToolCallAccumulator`
reassembles tool calls whose arguments arrive in fragments across
multiple chunks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallId:
    """Identifier of a tool call as seen by the loop.

    ``external_id`` is what the provider issued and what goes back on the
    wire.  ``disambiguator`` is assigned by the loop because some
    providers reuse ids across rounds; it never leaves the process.
    """

    external_id: str
    disambiguator: int | None = None

    def stripped(self) -> ToolCallId:
        if self.disambiguator is None:
            return self
        return ToolCallId(self.external_id)

    def __str__(self) -> str:
        if self.disambiguator is None:
            return self.external_id
        return f"{self.external_id}#{self.disambiguator}"


@dataclass
class ToolCall:
    """A resolved tool call ready for the transcript."""

    id: ToolCallId = field(default_factory=lambda: ToolCallId(""))
    name: str = ""
    arguments: str = ""

    @property
    def external_id(self) -> str:
        return self.id.external_id


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class BeginToolCall:
    """Announces that the model started emitting a tool call."""

    name: str
    id: str | None = None


@dataclass
class ThinkingDelta:
    """A piece of model reasoning.

    Redacted blocks carry only the opaque ``encrypted`` blob and must be
    round-tripped untouched.
    """

    id: str
    text: str = ""
    encrypted: str | None = None
    redacted: bool = False


@dataclass
class ThinkingData:
    """Reasoning accumulated over a response, kept for round-tripping."""

    id: str
    text: str = ""
    encrypted: str | None = None
    redacted: bool = False

    @classmethod
    def create_or_update(
        cls, existing: ThinkingData | None, delta: ThinkingDelta,
    ) -> ThinkingData:
        if existing is None or existing.id != delta.id:
            if existing is not None:
                logger.debug(
                    f"Replacing thinking {existing.id} with {delta.id}"
                )
            return cls(
                id=delta.id, text=delta.text,
                encrypted=delta.encrypted, redacted=delta.redacted,
            )
        existing.text += delta.text
        if delta.encrypted:
            existing.encrypted = delta.encrypted
        existing.redacted = existing.redacted or delta.redacted
        return existing


@dataclass
class StreamError:
    """Error reported by the provider inside an otherwise healthy stream."""

    message: str
    code: str = "unknown"
    type: str = "error"
    agent: str | None = None


@dataclass
class Usage:
    """Token accounting for one response."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    cache_creation_tokens: int = 0


@dataclass
class ResponseDelta:
    """Everything a single chunk contributed to a choice."""

    text: str = ""
    index: int = 0
    begin_tool_calls: list[BeginToolCall] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    thinking: ThinkingDelta | None = None
    stateful_marker: str | None = None
    errors: list[StreamError] = field(default_factory=list)
    usage: Usage | None = None
    finished: bool = False

    @property
    def has_structured_payload(self) -> bool:
        return bool(
            self.begin_tool_calls
            or self.tool_calls
            or self.thinking is not None
            or self.stateful_marker
            or self.errors
            or self.usage is not None
        )


@dataclass
class ChoiceChunk:
    """Normalised streaming chunk for one choice index."""

    index: int = 0
    text: str = ""
    finish_reason: str | None = None
    delta: ResponseDelta = field(default_factory=ResponseDelta)
    annotations: dict | None = None


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Arguments are buffered per tool-call index; a :class:`ToolCall` is
    only produced by :meth:`stop` (or :meth:`finalize` at stream end).
    """

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def __contains__(self, index: int) -> bool:
        return index in self._pending

    def begin(self, index: int, call_id: str, name: str) -> None:
        self._pending[index] = ToolCall(id=ToolCallId(call_id), name=name)

    def append(self, index: int, arguments_delta: str) -> None:
        tc = self._pending.get(index)
        if tc is None:
            logger.warning(f"Argument delta for unknown tool call {index}")
            return
        tc.arguments += arguments_delta

    def stop(self, index: int) -> ToolCall | None:
        return self._pending.pop(index, None)

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self.begin(fragment.index, fragment.call_id or "", fragment.name or "")
        tc = self._pending[fragment.index]
        if fragment.call_id:
            tc.id = ToolCallId(fragment.call_id)
        if fragment.name:
            tc.name = fragment.name
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return remaining tool calls in index order and clear them."""
        calls = [self._pending[i] for i in sorted(self._pending)]
        self._pending.clear()
        return calls
