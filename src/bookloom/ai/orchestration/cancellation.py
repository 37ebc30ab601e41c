"""Cancellation handles for whole tasks and single turns.

A task owns one root :class:`CancellationToken`. Each turn derives a child
token from it so that a turn can be aborted (for example when the stream
validator spots a violation) without cancelling the task, while cancelling
the task always reaches the in-flight turn.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

from .errors import TaskCancelled

__all__ = ["CancellationToken", "TurnCancelled", "run_cancellable"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TurnCancelled(Exception):
    """Raised by :func:`run_cancellable` when the token fired first."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class CancellationToken:
    """Cooperative cancellation flag backed by an :class:`asyncio.Event`."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._parent = parent
        self._children: list[CancellationToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "parent cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def parent(self) -> CancellationToken | None:
        return self._parent

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token and every token derived from it."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        LOGGER.debug("Cancellation requested: %s", reason)
        for child in list(self._children):
            child.cancel(reason)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop receiving cancellation from the parent."""
        if self._parent is not None:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass
            self._parent = None

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self, *, chunk_index: int | None = None, last_status: str | None = None) -> None:
        if self.cancelled:
            raise TaskCancelled(
                self._reason or "cancelled",
                chunk_index=chunk_index,
                last_status=last_status,
            )


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    The awaitable runs as its own task; when the token wins, that task is
    cancelled and awaited before :class:`TurnCancelled` is raised. Exceptions
    raised by the awaitable propagate unchanged.
    """

    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TurnCancelled(token.reason or "cancelled")

    work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        watcher.cancel()
        raise

    if work in done:
        watcher.cancel()
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception:  # abandoned turn
        LOGGER.debug("Cancelled work raised while unwinding", exc_info=True)
    raise TurnCancelled(token.reason or "cancelled")
