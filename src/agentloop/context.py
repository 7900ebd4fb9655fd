from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentloop.conversation import Conversation, ToolCallRound, ToolResultStore, Turn
    from agentloop.events import DisplaySink
    from agentloop.tools import Tool


@dataclass
class BuildPromptContext:
    """Everything a prompt renderer needs for one iteration.

    The loop creates a fresh context per iteration.  Renderers that
    execute tools pass it to tools that declare a ``context`` parameter.

    Args:
        request_id: Id of the turn being answered.
        query: The user-facing message for this iteration.  A pending
            stop hook reason or ``"Please continue"`` replaces the
            original request.
        history: Earlier turns, minus prompt-filtered ones.
        conversation: The whole conversation.
        tool_call_rounds: Rounds of the current turn, oldest first.
        tool_call_results: Results gathered so far, keyed by call id.
        available_tools: Tools the model may call this iteration.
        is_continuation: Whether this iteration continues earlier work.
        has_stop_hook_query: ``query`` came from a stop hook.
        additional_hook_context: Context provided by SubagentStart hooks.
        sink: Where renderers report progress and references.
    """

    request_id: str
    query: str
    history: list[Turn]
    conversation: Conversation
    tool_call_rounds: list[ToolCallRound]
    tool_call_results: ToolResultStore
    available_tools: list[Tool] = field(default_factory=list)
    is_continuation: bool = False
    has_stop_hook_query: bool = False
    additional_hook_context: str | None = None
    sink: DisplaySink | None = None
