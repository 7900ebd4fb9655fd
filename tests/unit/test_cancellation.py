import pytest

from agentloop.cancellation import NONE, CancellationTokenSource
from agentloop.errors import CancellationError, ToolCallCancelledError


class TestCancellationTokenSource:
    def test_cancel(self):
        cts = CancellationTokenSource()
        assert not cts.token.cancelled
        cts.cancel()
        assert cts.token.cancelled

    def test_raise_if_cancelled(self):
        cts = CancellationTokenSource()
        cts.token.raise_if_cancelled()
        cts.cancel()
        with pytest.raises(CancellationError):
            cts.token.raise_if_cancelled()

    def test_parent_cancels_child(self):
        parent = CancellationTokenSource()
        child = CancellationTokenSource(parent.token)
        parent.cancel()
        assert child.token.cancelled

    def test_child_does_not_cancel_parent(self):
        parent = CancellationTokenSource()
        child = CancellationTokenSource(parent.token)
        child.cancel()
        assert not parent.token.cancelled

    def test_disposed_source_ignores_cancel(self):
        cts = CancellationTokenSource()
        cts.dispose()
        cts.cancel()
        assert cts.disposed
        assert not cts.token.cancelled

    def test_listeners(self):
        cts = CancellationTokenSource()
        calls = []
        cts.token.on_cancelled(lambda: calls.append("before"))
        cts.cancel()
        cts.cancel()
        cts.token.on_cancelled(lambda: calls.append("after"))
        assert calls == ["before", "after"]

    def test_failing_listener_does_not_stop_others(self):
        cts = CancellationTokenSource()
        calls = []

        def failing():
            raise RuntimeError("listener")

        cts.token.on_cancelled(failing)
        cts.token.on_cancelled(lambda: calls.append("ran"))
        cts.cancel()
        assert calls == ["ran"]


class TestNoneToken:
    def test_never_cancelled(self):
        NONE._cancel()
        assert not NONE.cancelled


class TestErrors:
    def test_tool_call_cancelled_is_cancellation(self):
        cause = CancellationError()
        error = ToolCallCancelledError(cause)
        assert isinstance(error, CancellationError)
        assert error.cause is cause
