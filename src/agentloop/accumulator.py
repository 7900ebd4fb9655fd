"""Conversion of a chunk stream into finalized per-choice completions.

A :class:`ChoiceStream` pulls :class:`ChoiceChunk` records from an
adapter, accumulates them per choice index, consults a *finished
callback* at segmentation points, and produces at most one
:class:`APIChoice` per index.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Union

from agentloop.cancellation import CancellationToken
from agentloop.streaming import ChoiceChunk, ResponseDelta, ToolCall, Usage

logger = logging.getLogger(__name__)


@dataclass
class SolutionDecision:
    """Full-form answer of a finished callback."""

    yield_solution: bool
    continue_streaming: bool
    finish_offset: int | None = None


FinishedCallbackResult = Union[SolutionDecision, int, None]

FinishedCallback = Callable[
    [str, int, ResponseDelta],
    Union[FinishedCallbackResult, Awaitable[FinishedCallbackResult]],
]


@dataclass
class APIChoice:
    """Finalized completion for one choice index."""

    choice_index: int
    completion_text: str
    finish_reason: str = "stop"
    tokens: list[str] = field(default_factory=list)
    block_finished: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)
    annotations: dict = field(default_factory=dict)
    usage: Usage | None = None
    request_id: str = ""
    client_completion_id: str = field(
        default_factory=lambda: str(uuid.uuid4())
    )

    @property
    def num_tokens(self) -> int:
        return len(self.tokens)


@dataclass
class CompletionAccumulator:
    """Accumulated state of one choice index."""

    index: int
    response_so_far: str = ""
    chunks: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    annotations: dict = field(default_factory=dict)
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    is_finished: bool = False
    stopped_early: bool = False
    yielded: bool = False
    unreported: str = ""

    def append(self, chunk: ChoiceChunk) -> None:
        if chunk.text:
            self.response_so_far += chunk.text
            self.chunks.append(chunk.text)
            self.unreported += chunk.text
        if chunk.annotations:
            self.annotations.update(chunk.annotations)
        self.tool_calls.extend(chunk.delta.tool_calls)
        if chunk.delta.usage is not None:
            self.usage = chunk.delta.usage

    def take_unreported(self) -> str:
        """Text appended since the finished callback last saw this choice."""
        text, self.unreported = self.unreported, ""
        return text


class _Done:
    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()
"""Returned by :meth:`ChoiceStream.next` once every choice is out."""


class ChoiceStream:
    """Pull-based accumulator over one in-flight request.

    Call :meth:`next` until it returns :data:`DONE`, or iterate with
    ``async for``.  The upstream chunk iterator is closed on every exit
    path.

    Args:
        chunks: Normalised chunks from a provider adapter.
        finished_cb: Consulted at segmentation points; see
            :class:`SolutionDecision`.  The delta it receives carries all
            text appended since its previous call for that choice.
        request_id: Copied onto every produced :class:`APIChoice`.
        cancel_token: Stops the stream (without yielding) once cancelled.
        expected_choices: When known, reading stops once this many
            choices have finished and at least one of them was cut short
            by the finished callback, instead of waiting for upstream end.
    """

    _STREAMING = "streaming"
    _FLUSHING = "flushing"
    _DONE = "done"

    def __init__(
        self,
        chunks: AsyncIterator[ChoiceChunk],
        finished_cb: FinishedCallback | None = None,
        request_id: str = "",
        cancel_token: CancellationToken | None = None,
        expected_choices: int | None = None,
    ):
        self._chunks = chunks
        self._finished_cb = finished_cb
        self._request_id = request_id
        self._cancel_token = cancel_token
        self._expected_choices = expected_choices
        self._completions: dict[int, CompletionAccumulator] = {}
        self._ready: deque[APIChoice] = deque()
        self._flush_queue: list[int] = []
        self._phase = self._STREAMING
        self._closed = False

    def __aiter__(self) -> ChoiceStream:
        return self

    async def __anext__(self) -> APIChoice:
        choice = await self.next()
        if choice is DONE:
            raise StopAsyncIteration
        return choice

    @property
    def completions(self) -> dict[int, CompletionAccumulator]:
        return self._completions

    async def next(self) -> APIChoice | _Done:
        while True:
            if self._ready:
                return self._ready.popleft()
            if self._phase == self._DONE:
                return DONE
            if self._is_cancelled():
                logger.debug("Choice stream cancelled")
                await self.aclose()
                continue

            if self._phase == self._STREAMING:
                try:
                    chunk = await self._chunks.__anext__()
                except StopAsyncIteration:
                    self._begin_flush()
                    continue
                except BaseException:
                    await self.aclose()
                    raise
                try:
                    await self._process(chunk)
                except BaseException:
                    await self.aclose()
                    raise
                if self._should_stop_reading():
                    self._begin_flush()
            elif self._flush_queue:
                index = self._flush_queue.pop(0)
                try:
                    await self._flush(index)
                except BaseException:
                    await self.aclose()
                    raise
            else:
                await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._phase = self._DONE
        close = getattr(self._chunks, "aclose", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.debug(f"Error closing upstream stream: {e}")

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _process(self, chunk: ChoiceChunk) -> None:
        acc = self._completions.get(chunk.index)
        if acc is None:
            acc = self._completions[chunk.index] = CompletionAccumulator(
                index=chunk.index
            )
        elif acc.is_finished:
            return

        acc.append(chunk)
        has_finish = bool(chunk.finish_reason)
        if has_finish:
            acc.finish_reason = chunk.finish_reason

        decision: FinishedCallbackResult = None
        if has_finish or "\n" in chunk.text or chunk.delta.has_structured_payload:
            delta = replace(
                chunk.delta,
                text=acc.take_unreported(),
                index=chunk.index,
                finished=has_finish,
            )
            decision = await self._invoke_callback(
                acc.response_so_far, chunk.index, delta
            )
            if self._is_cancelled():
                return

        if has_finish:
            if isinstance(decision, SolutionDecision):
                decision = replace(
                    decision, yield_solution=True, continue_streaming=False
                )
            else:
                decision = SolutionDecision(
                    yield_solution=True,
                    continue_streaming=False,
                    finish_offset=decision if isinstance(decision, int) else None,
                )

        if decision is None:
            return
        if isinstance(decision, int):
            decision = SolutionDecision(
                yield_solution=True,
                continue_streaming=False,
                finish_offset=decision,
            )
        if not decision.yield_solution:
            return

        if not decision.continue_streaming:
            acc.is_finished = True
            acc.stopped_early = not has_finish
        self._emit(acc, decision.finish_offset)

    async def _flush(self, index: int) -> None:
        acc = self._completions[index]
        if acc.is_finished:
            return
        acc.is_finished = True
        await self._invoke_callback(
            acc.response_so_far,
            index,
            ResponseDelta(text=acc.take_unreported(), index=index, finished=True),
        )
        if self._is_cancelled():
            return
        self._emit(acc, None)

    def _emit(self, acc: CompletionAccumulator, finish_offset: int | None) -> None:
        if acc.yielded:
            return
        acc.yielded = True
        text = acc.response_so_far
        if finish_offset is not None:
            text = text[:finish_offset]
        self._ready.append(APIChoice(
            choice_index=acc.index,
            completion_text=text,
            finish_reason=acc.finish_reason or "stop",
            tokens=list(acc.chunks),
            block_finished=finish_offset is not None,
            tool_calls=list(acc.tool_calls),
            annotations=dict(acc.annotations),
            usage=acc.usage,
            request_id=self._request_id,
        ))

    async def _invoke_callback(
        self, text: str, index: int, delta: ResponseDelta,
    ) -> FinishedCallbackResult:
        if self._finished_cb is None:
            return None
        result = self._finished_cb(text, index, delta)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _begin_flush(self) -> None:
        self._phase = self._FLUSHING
        self._flush_queue = sorted(self._completions)

    def _should_stop_reading(self) -> bool:
        if self._expected_choices is None:
            return False
        finished = [c for c in self._completions.values() if c.is_finished]
        return (
            len(finished) >= self._expected_choices
            and any(c.stopped_early for c in finished)
        )

    def _is_cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.cancelled
