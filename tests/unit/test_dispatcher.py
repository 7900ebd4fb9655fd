import pytest

from agentloop.cancellation import CancellationTokenSource
from agentloop.dispatcher import PseudoStopStartResponseProcessor, ResponseDispatcher
from agentloop.events import MarkdownEvent, RecordingSink, SinkParticipant, ThinkingEvent
from agentloop.streaming import ResponseDelta, ThinkingDelta


class UpperCaseSink(SinkParticipant):
    def push(self, event):
        if isinstance(event, MarkdownEvent):
            event = MarkdownEvent(content=event.content.upper())
        self.inner.push(event)


async def feed(dispatcher, *pieces):
    text = ""
    offsets = []
    for piece in pieces:
        text += piece
        offsets.append(await dispatcher.on_delta(text, 0, ResponseDelta(text=piece)))
    return offsets


# ---------------------------------------------------------------------------
# Default processor
# ---------------------------------------------------------------------------


class TestDefaultProcessor:
    @pytest.mark.asyncio
    async def test_forwards_text_as_markdown(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(sink)

        offsets = await feed(dispatcher, "Hello ", "world")
        result = await dispatcher.close()

        assert offsets == [None, None]
        assert result == "Hello world"
        assert sink.text == "Hello world"
        assert dispatcher.text == "Hello world"

    @pytest.mark.asyncio
    async def test_forwards_thinking(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(sink)

        await dispatcher.on_delta("", 0, ResponseDelta(
            thinking=ThinkingDelta(id="t", text="pondering"),
        ))
        await dispatcher.close()

        assert [e.content for e in sink.of_type(ThinkingEvent)] == ["pondering"]

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_rendering(self):
        sink = RecordingSink()
        cts = CancellationTokenSource()
        dispatcher = ResponseDispatcher(sink, token=cts.token)

        await feed(dispatcher, "first ")
        cts.cancel()
        await feed(dispatcher, "second")
        result = await dispatcher.close()

        assert result is None
        assert sink.text == "first "


# ---------------------------------------------------------------------------
# Stop markers
# ---------------------------------------------------------------------------


class TestStopMarkers:
    @pytest.mark.asyncio
    async def test_marker_in_one_delta(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(
            sink, processor=PseudoStopStartResponseProcessor(["STOP"]),
        )

        offsets = await feed(dispatcher, "keep this STOP drop this")
        result = await dispatcher.close()

        assert offsets == [len("keep this STOP drop this")]
        assert result == "keep this "
        assert sink.text == "keep this "

    @pytest.mark.asyncio
    async def test_marker_straddling_deltas_is_never_shown(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(
            sink, processor=PseudoStopStartResponseProcessor(["<STOP>"]),
        )

        offsets = await feed(dispatcher, "ab<ST", "OP>zz")
        result = await dispatcher.close()

        assert offsets == [None, 10]
        assert result == "ab"
        assert sink.text == "ab"
        assert "<ST" not in sink.text

    @pytest.mark.asyncio
    async def test_held_back_text_flushed_at_end(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(
            sink, processor=PseudoStopStartResponseProcessor(["<STOP>"]),
        )

        await feed(dispatcher, "no marker <S")
        result = await dispatcher.close()

        assert result == "no marker <S"
        assert sink.text == "no marker <S"


# ---------------------------------------------------------------------------
# Participants and finalize
# ---------------------------------------------------------------------------


class TestParticipants:
    @pytest.mark.asyncio
    async def test_participant_wraps_sink(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(sink, participants=[UpperCaseSink])

        await feed(dispatcher, "quiet")
        await dispatcher.close()

        assert sink.text == "QUIET"
        assert dispatcher.sinks[0] is sink
        assert isinstance(dispatcher.sink, UpperCaseSink)

    @pytest.mark.asyncio
    async def test_finalize_runs_once(self):
        sink = RecordingSink()
        dispatcher = ResponseDispatcher(sink, participants=[UpperCaseSink])
        await dispatcher.close()

        await dispatcher.finalize_streams()
        await dispatcher.finalize_streams()

        assert sink.finalize_count == 1
