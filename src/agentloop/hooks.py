"""Hooks that can veto the loop's decision to stop.

Raw hook output is parsed once, at :func:`parse_hook_result`, into one of
:class:`HookBlocked`, :class:`HookNotBlocked` or :class:`HookFailed`.
Nothing downstream inspects raw payloads.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from agentloop.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class HookKind(Enum):
    STOP = "Stop"
    SUBAGENT_START = "SubagentStart"
    SUBAGENT_STOP = "SubagentStop"


@dataclass
class HookResult:
    """What a hook service reports for one hook.

    ``output`` is a mapping (or JSON text) when ``success`` is true, and
    an error message otherwise.
    """

    success: bool
    output: Any = None


class HookOutput(BaseModel):
    decision: str | None = None
    reason: str | None = None
    additional_context: str | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @classmethod
    def from_raw(cls, raw: Any) -> HookOutput:
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise ValueError(f"Hook output must be an object, got {type(raw).__name__}")
        if "additionalContext" in raw and "additional_context" not in raw:
            raw = {**raw, "additional_context": raw["additionalContext"]}
        return cls.model_validate(raw)


@dataclass(frozen=True)
class HookBlocked:
    reason: str


@dataclass(frozen=True)
class HookNotBlocked:
    additional_context: str | None = None


@dataclass(frozen=True)
class HookFailed:
    message: str


ParsedHookResult = Union[HookBlocked, HookNotBlocked, HookFailed]


def parse_hook_result(result: HookResult) -> ParsedHookResult:
    if not result.success:
        message = result.output if isinstance(result.output, str) else "Unknown error"
        return HookFailed(message)
    try:
        output = HookOutput.from_raw(result.output)
    except (ValueError, ValidationError) as e:
        logger.debug(f"Discarding malformed hook output: {e}")
        return HookNotBlocked()
    if output.decision == "block" and output.reason:
        return HookBlocked(output.reason)
    return HookNotBlocked(additional_context=output.additional_context)


@dataclass
class StopHookResult:
    should_continue: bool = False
    reasons: list[str] = field(default_factory=list)


class HookService(ABC):
    @abstractmethod
    async def execute_hook(
        self, kind: HookKind, input: dict, token: CancellationToken,
    ) -> list[HookResult]:
        ...


class NoHooks(HookService):
    """Hook service with no hooks configured."""

    async def execute_hook(
        self, kind: HookKind, input: dict, token: CancellationToken,
    ) -> list[HookResult]:
        return []


async def run_stop_hook(
    service: HookService, kind: HookKind, input: dict,
    token: CancellationToken,
) -> StopHookResult:
    """Run a Stop or SubagentStop hook and collect blocking reasons.

    Reasons are deduplicated, first occurrence wins.  A failing hook, or
    a hook service that raises, never blocks.
    """
    try:
        results = await service.execute_hook(kind, input, token)
    except Exception:
        logger.exception(f"Error executing {kind.value} hook")
        return StopHookResult()

    reasons: dict[str, None] = {}
    for parsed in map(parse_hook_result, results):
        if isinstance(parsed, HookBlocked):
            logger.debug(f"{kind.value} hook blocked: {parsed.reason}")
            reasons.setdefault(parsed.reason)
        elif isinstance(parsed, HookFailed):
            logger.error(f"{kind.value} hook error: {parsed.message}")
    if reasons:
        return StopHookResult(should_continue=True, reasons=list(reasons))
    return StopHookResult()


async def run_subagent_start_hook(
    service: HookService, input: dict, token: CancellationToken,
) -> str | None:
    """Return the joined additional context from SubagentStart hooks."""
    try:
        results = await service.execute_hook(HookKind.SUBAGENT_START, input, token)
    except Exception:
        logger.exception("Error executing SubagentStart hook")
        return None

    contexts = []
    for parsed in map(parse_hook_result, results):
        if isinstance(parsed, HookNotBlocked) and parsed.additional_context:
            logger.debug(
                f"SubagentStart hook provided context: "
                f"{parsed.additional_context[:100]}..."
            )
            contexts.append(parsed.additional_context)
        elif isinstance(parsed, HookFailed):
            logger.error(f"SubagentStart hook error: {parsed.message}")
    return "\n".join(contexts) if contexts else None


def format_hook_context(reasons: Sequence[str]) -> str:
    """Turn blocking reasons into a message the model must address."""
    if len(reasons) == 1:
        return (
            "You were about to complete but a hook blocked you with the "
            f'following message: "{reasons[0]}". Please address this '
            "requirement before completing."
        )
    formatted = "\n".join(f"{i + 1}. {r}" for i, r in enumerate(reasons))
    return (
        "You were about to complete but multiple hooks blocked you with "
        f"the following messages:\n{formatted}\n\n"
        "Please address all of these requirements before completing."
    )
