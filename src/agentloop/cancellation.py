"""Cooperative cancellation shared by prompt building, fetch and tools."""

from __future__ import annotations

import logging
from collections.abc import Callable

from agentloop.errors import CancellationError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Read side of a cancellation signal.

    Tokens never raise on their own; code checks ``cancelled`` at its
    checkpoints or calls :meth:`raise_if_cancelled`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError()

    def on_cancelled(self, listener: Callable[[], None]) -> None:
        """Register *listener*; runs immediately if already cancelled."""
        if self._cancelled:
            listener()
            return
        self._listeners.append(listener)

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Cancellation listener raised")


class _NeverCancelled(CancellationToken):
    def _cancel(self) -> None:
        pass


NONE = _NeverCancelled()
"""A token that is never cancelled."""


class CancellationTokenSource:
    """Owns a :class:`CancellationToken` and can cancel it.

    Args:
        parent: Optional parent token; cancelling the parent cancels
            this source too.
    """

    def __init__(self, parent: CancellationToken | None = None):
        self._token = CancellationToken()
        self._disposed = False
        if parent is not None:
            parent.on_cancelled(self.cancel)

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def disposed(self) -> bool:
        return self._disposed

    def cancel(self) -> None:
        if not self._disposed:
            self._token._cancel()

    def dispose(self) -> None:
        self._disposed = True
