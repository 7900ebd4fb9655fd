"""Background conversation summarization.

Lifecycle::

    IDLE -> IN_PROGRESS -> COMPLETED / FAILED
                              |           |
                  (consume_and_reset -> IDLE)
                                FAILED -> IN_PROGRESS (retry)

Any state goes back to IDLE on :meth:`BackgroundSummarizer.cancel`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from agentloop.cancellation import CancellationToken, CancellationTokenSource

logger = logging.getLogger(__name__)


class BackgroundSummarizationState(Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SummarizationResult:
    summary: str
    tool_call_round_id: str


SummarizationWork = Callable[[CancellationToken], Awaitable[SummarizationResult]]


class BackgroundSummarizer:
    """Tracks a single background summarization pass for one conversation.

    The work runs as an ``asyncio`` task.  Every :meth:`start` and
    :meth:`cancel` bumps an epoch; a task only commits its outcome if the
    epoch it was started under is still current, so a late result from a
    cancelled pass never leaks into a newer state.

    Args:
        model_max_prompt_tokens: Prompt budget of the model the summary
            is for.  Callers use it to decide when to start a pass.
    """

    def __init__(self, model_max_prompt_tokens: int):
        self.model_max_prompt_tokens = model_max_prompt_tokens
        self._state = BackgroundSummarizationState.IDLE
        self._result: SummarizationResult | None = None
        self._error: BaseException | None = None
        self._task: asyncio.Task | None = None
        self._cts: CancellationTokenSource | None = None
        self._epoch = 0
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> BackgroundSummarizationState:
        return self._state

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def token(self) -> CancellationToken | None:
        return self._cts.token if self._cts else None

    def start(self, work: SummarizationWork) -> None:
        if self._state not in (
            BackgroundSummarizationState.IDLE,
            BackgroundSummarizationState.FAILED,
        ):
            logger.debug(f"Summarization already {self._state.value}, not starting")
            return

        self._epoch += 1
        self._state = BackgroundSummarizationState.IN_PROGRESS
        self._error = None
        self._cts = CancellationTokenSource()
        self._task = asyncio.create_task(
            self._run(work, self._cts.token, self._epoch)
        )
        self._background_tasks.add(self._task)
        self._task.add_done_callback(self._background_tasks.discard)
        logger.info("Background summarization started")

    async def _run(
        self, work: SummarizationWork, token: CancellationToken, epoch: int,
    ) -> None:
        try:
            result = await work(token)
        except Exception as e:
            if epoch != self._epoch:
                logger.debug("Discarding failure of a stale summarization")
                return
            logger.warning(f"Background summarization failed: {e}")
            self._error = e
            self._state = BackgroundSummarizationState.FAILED
            return
        if epoch != self._epoch:
            logger.debug("Discarding result of a stale summarization")
            return
        self._result = result
        self._state = BackgroundSummarizationState.COMPLETED
        logger.info("Background summarization completed")

    async def wait_for_completion(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    def consume_and_reset(self) -> SummarizationResult | None:
        """Take the finished result and go back to IDLE.

        Returns ``None`` without touching anything while a pass is still
        running.
        """
        if self._state == BackgroundSummarizationState.IN_PROGRESS:
            return None
        result = self._result
        self._reset()
        return result

    def cancel(self) -> None:
        if self._cts is not None:
            self._cts.cancel()
        self._epoch += 1
        self._reset()

    def _reset(self) -> None:
        if self._cts is not None:
            self._cts.dispose()
        self._cts = None
        self._state = BackgroundSummarizationState.IDLE
        self._result = None
        self._error = None
        self._task = None
