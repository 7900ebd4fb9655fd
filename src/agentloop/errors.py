"""Exceptions raised by the tool-calling core.

Only conditions that cannot be handled where they occur are raised.
Transport failures, hook failures and malformed tool input travel as
data (see :mod:`agentloop.provider` and :mod:`agentloop.hooks`).
"""

from __future__ import annotations

from typing import Any


class AgentLoopError(Exception):
    """Base class for all agentloop exceptions."""


class CancellationError(AgentLoopError):
    """Cooperative cancellation was observed at a checkpoint."""

    def __init__(self, message: str = "Canceled"):
        super().__init__(message)


class ToolCallCancelledError(CancellationError):
    """A tool invocation requires the user to act before it can proceed.

    Raised when the loop short-circuits an iteration to escalate to the
    user (e.g. a broader permission grant is needed).
    """

    def __init__(self, cause: BaseException | None = None):
        super().__init__("Tool call cancelled")
        self.cause = cause


class EmptyPromptError(AgentLoopError):
    """The rendered prompt contained no messages."""

    def __init__(self):
        super().__init__("Empty prompt")


class PromptBudgetExceededError(AgentLoopError):
    """The prompt renderer could not fit the prompt into its token budget.

    Args:
        message: Human-readable description.
        metadata: Whatever render metadata was produced before the
            budget was exceeded.
    """

    def __init__(self, message: str = "Prompt budget exceeded",
                 metadata: dict[str, Any] | None = None):
        super().__init__(message)
        self.metadata = metadata or {}


class StreamParseError(AgentLoopError):
    """A streamed chunk could not be decoded."""

    def __init__(self, raw: str, cause: BaseException | None = None):
        super().__init__(f"Malformed stream chunk: {raw[:200]!r}")
        self.raw = raw
        self.cause = cause
