import asyncio

import pytest

from agentloop.summarizer import (
    BackgroundSummarizationState,
    BackgroundSummarizer,
    SummarizationResult,
)


def returning(result):
    async def work(token):
        return result
    return work


def gated(event, result, calls=None):
    async def work(token):
        if calls is not None:
            calls.append(token)
        await event.wait()
        return result
    return work


@pytest.fixture
def summarizer():
    return BackgroundSummarizer(model_max_prompt_tokens=1000)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_starts_idle(self, summarizer):
        assert summarizer.state == BackgroundSummarizationState.IDLE
        assert summarizer.consume_and_reset() is None

    @pytest.mark.asyncio
    async def test_completes_and_consumes(self, summarizer):
        result = SummarizationResult("short", "round_1")
        summarizer.start(returning(result))
        assert summarizer.state == BackgroundSummarizationState.IN_PROGRESS

        await summarizer.wait_for_completion()

        assert summarizer.state == BackgroundSummarizationState.COMPLETED
        assert summarizer.consume_and_reset() == result
        assert summarizer.state == BackgroundSummarizationState.IDLE
        assert summarizer.consume_and_reset() is None

    @pytest.mark.asyncio
    async def test_start_while_in_progress_is_ignored(self, summarizer):
        gate = asyncio.Event()
        calls = []
        summarizer.start(gated(gate, SummarizationResult("a", "r"), calls))
        await asyncio.sleep(0)

        summarizer.start(gated(gate, SummarizationResult("b", "r"), calls))
        gate.set()
        await summarizer.wait_for_completion()

        assert len(calls) == 1
        assert summarizer.consume_and_reset().summary == "a"

    @pytest.mark.asyncio
    async def test_start_when_completed_is_ignored(self, summarizer):
        summarizer.start(returning(SummarizationResult("first", "r")))
        await summarizer.wait_for_completion()

        summarizer.start(returning(SummarizationResult("second", "r")))

        assert summarizer.state == BackgroundSummarizationState.COMPLETED
        assert summarizer.consume_and_reset().summary == "first"

    @pytest.mark.asyncio
    async def test_consume_while_in_progress_leaves_state(self, summarizer):
        gate = asyncio.Event()
        summarizer.start(gated(gate, SummarizationResult("s", "r")))

        assert summarizer.consume_and_reset() is None
        assert summarizer.state == BackgroundSummarizationState.IN_PROGRESS

        gate.set()
        await summarizer.wait_for_completion()
        assert summarizer.consume_and_reset().summary == "s"


# ---------------------------------------------------------------------------
# Failure and cancellation
# ---------------------------------------------------------------------------


class TestFailureAndCancel:
    @pytest.mark.asyncio
    async def test_failure_then_retry(self, summarizer):
        async def failing(token):
            raise RuntimeError("model down")

        summarizer.start(failing)
        await summarizer.wait_for_completion()

        assert summarizer.state == BackgroundSummarizationState.FAILED
        assert isinstance(summarizer.error, RuntimeError)

        summarizer.start(returning(SummarizationResult("ok", "r")))
        assert summarizer.error is None
        await summarizer.wait_for_completion()
        assert summarizer.state == BackgroundSummarizationState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_signals_token_and_resets(self, summarizer):
        gate = asyncio.Event()
        tokens = []
        summarizer.start(gated(gate, SummarizationResult("s", "r"), tokens))
        await asyncio.sleep(0)

        summarizer.cancel()

        assert tokens[0].cancelled
        assert summarizer.state == BackgroundSummarizationState.IDLE
        assert summarizer.token is None
        gate.set()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_stale_result_is_discarded(self, summarizer):
        gate = asyncio.Event()
        summarizer.start(gated(gate, SummarizationResult("stale", "r1")))
        await asyncio.sleep(0)
        summarizer.cancel()

        summarizer.start(returning(SummarizationResult("fresh", "r2")))
        await summarizer.wait_for_completion()

        gate.set()
        for _ in range(3):
            await asyncio.sleep(0)

        assert summarizer.state == BackgroundSummarizationState.COMPLETED
        assert summarizer.consume_and_reset() == SummarizationResult("fresh", "r2")

    @pytest.mark.asyncio
    async def test_stale_failure_is_discarded(self, summarizer):
        gate = asyncio.Event()

        async def failing_later(token):
            await gate.wait()
            raise RuntimeError("late")

        summarizer.start(failing_later)
        await asyncio.sleep(0)
        summarizer.cancel()

        gate.set()
        for _ in range(3):
            await asyncio.sleep(0)

        assert summarizer.state == BackgroundSummarizationState.IDLE
        assert summarizer.error is None
