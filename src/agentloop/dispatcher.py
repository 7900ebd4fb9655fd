"""Live display of a streaming response.

The :class:`ResponseDispatcher` sits between the transport's finished
callback and the display sink.  Deltas are pushed into a
:class:`FetchStreamSource`; a :class:`ResponseProcessor` consumes the
source in a background task and renders to the sink.  If the processor
returns before the model is done, the dispatcher asks the transport to
stop early.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from agentloop.cancellation import NONE, CancellationToken
from agentloop.events import DisplaySink
from agentloop.streaming import ResponseDelta

logger = logging.getLogger(__name__)


@dataclass
class ResponsePart:
    """Accumulated text at the time of a delta, plus the delta itself."""

    text: str
    delta: ResponseDelta


class FetchStreamSource:
    """Single-consumer async source of :class:`ResponsePart` records."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ResponsePart | None] = asyncio.Queue()
        self._resolved = False

    @property
    def resolved(self) -> bool:
        return self._resolved

    def update(self, text: str, delta: ResponseDelta) -> None:
        if self._resolved:
            return
        self._queue.put_nowait(ResponsePart(text=text, delta=delta))

    def resolve(self) -> None:
        if self._resolved:
            return
        self._resolved = True
        self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[ResponsePart]:
        while True:
            part = await self._queue.get()
            if part is None:
                return
            yield part


class ResponseProcessor(ABC):
    """Consumes response parts and renders them to a sink.

    Returning before the source is exhausted signals that the processor
    needs nothing more from the model.
    """

    @abstractmethod
    async def process(
        self,
        parts: AsyncIterator[ResponsePart],
        sink: DisplaySink,
        token: CancellationToken,
    ) -> Any:
        ...


class PseudoStopStartResponseProcessor(ResponseProcessor):
    """Forwards text as markdown and reasoning as thinking.

    Args:
        stop_markers: Strings that end the response.  Text from the first
            marker on is not shown and the processor returns immediately.
    """

    def __init__(self, stop_markers: Sequence[str] = ()):
        self.stop_markers = [m for m in stop_markers if m]
        self._holdback = max((len(m) for m in self.stop_markers), default=1) - 1

    async def process(
        self,
        parts: AsyncIterator[ResponsePart],
        sink: DisplaySink,
        token: CancellationToken,
    ) -> Any:
        text = ""
        emitted = 0
        async for part in parts:
            if token.cancelled:
                return None
            delta = part.delta
            if delta.thinking is not None and delta.thinking.text:
                sink.thinking(delta.thinking.text)
            if not delta.text:
                continue
            text += delta.text

            stop_at = self._find_marker(text, emitted)
            if stop_at is not None:
                if stop_at > emitted:
                    sink.markdown(text[emitted:stop_at])
                logger.debug(f"Stop marker found at offset {stop_at}")
                return text[:stop_at]

            # A marker may straddle two deltas.
            safe = len(text) - self._holdback
            if safe > emitted:
                sink.markdown(text[emitted:safe])
                emitted = safe

        if len(text) > emitted:
            sink.markdown(text[emitted:])
        return text

    def _find_marker(self, text: str, start: int) -> int | None:
        begin = max(0, start - self._holdback)
        found = [
            i for i in (text.find(m, begin) for m in self.stop_markers)
            if i != -1
        ]
        return min(found) if found else None


ResponseStreamParticipant = Callable[[DisplaySink], DisplaySink]
"""Wraps a sink in another sink; participants compose outwards."""


class ResponseDispatcher:
    """Routes the live response through participants to a display sink.

    Args:
        sink: The innermost display sink.
        processor: Renders parts to the outermost sink; defaults to
            :class:`PseudoStopStartResponseProcessor`.
        participants: Applied in order, each wrapping the previous sink.
        token: Passed through to the processor.
    """

    def __init__(
        self,
        sink: DisplaySink,
        processor: ResponseProcessor | None = None,
        participants: Sequence[ResponseStreamParticipant] = (),
        token: CancellationToken = NONE,
    ):
        self.sinks: list[DisplaySink] = [sink]
        for participant in participants:
            self.sinks.append(participant(self.sinks[-1]))
        self.processor = processor or PseudoStopStartResponseProcessor()
        self.source = FetchStreamSource()
        self.text = ""
        self._finalized = False
        self._task = asyncio.create_task(
            self.processor.process(self.source.stream(), self.sink, token)
        )

    @property
    def sink(self) -> DisplaySink:
        return self.sinks[-1]

    @property
    def finished(self) -> bool:
        return self._task.done()

    async def on_delta(
        self, text: str, index: int, delta: ResponseDelta,
    ) -> int | None:
        """Feed one delta; returns an early-stop offset once finished."""
        self.text += delta.text
        self.source.update(text, delta)
        # Let the processor see the part before deciding.
        await asyncio.sleep(0)
        return self.stop_offset(text)

    def stop_offset(self, text: str) -> int | None:
        if self.finished:
            return len(text)
        return None

    async def close(self) -> Any:
        """Resolve the source and wait for the processor's result."""
        self.source.resolve()
        return await self._task

    async def finalize_streams(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        for sink in reversed(self.sinks):
            await sink.finalize()
