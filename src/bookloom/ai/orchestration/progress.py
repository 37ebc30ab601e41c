"""Progress reporting and the accumulated result ledger.

Both objects are owned by a single task for its whole lifetime. Progress
sinks are fire-and-forget: a failing or slow sink never aborts the task.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Mapping, Protocol, runtime_checkable

from .types import TaskStatus

__all__ = ["ProgressSink", "ProgressEmitter", "ResultLedger"]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class ProgressSink(Protocol):
    """Receives streamed text as the task runs.

    Sinks may additionally implement ``on_unit_result(unit_id, text)``,
    ``on_title(text)`` and ``on_status(chunk_index, status)``. Methods may be
    plain functions or coroutines.
    """

    def on_thinking(self, text: str) -> Any:
        ...

    def on_output(self, text: str) -> Any:
        ...


class ProgressEmitter:
    """Forwards events to an optional sink, swallowing and logging its failures."""

    def __init__(self, sink: ProgressSink | None = None) -> None:
        self._sink = sink
        self._pending: set[asyncio.Future[Any]] = set()

    @property
    def sink(self) -> ProgressSink | None:
        return self._sink

    def thinking(self, text: str) -> None:
        if text:
            self._emit("on_thinking", text)

    def output(self, text: str) -> None:
        if text:
            self._emit("on_output", text)

    def unit_result(self, unit_id: str, text: str) -> None:
        self._emit("on_unit_result", unit_id, text)

    def title(self, text: str) -> None:
        self._emit("on_title", text)

    def status(self, chunk_index: int, status: TaskStatus) -> None:
        self._emit("on_status", chunk_index, status.value)

    async def drain(self) -> None:
        """Wait for scheduled coroutine callbacks to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _emit(self, method: str, *args: Any) -> None:
        if self._sink is None:
            return
        callback = getattr(self._sink, method, None)
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            LOGGER.debug("Progress sink %s failed", method, exc_info=True)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._settle)

    def _settle(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            LOGGER.debug("Progress sink callback failed: %s", exc)


class ResultLedger:
    """Unit id to latest text, with last-write-wins semantics.

    Entries are only ever added or overwritten. A write that does not change
    the stored text is not reported downstream, so resubmitting the same pair
    is idempotent while a genuine change is always reported.
    """

    def __init__(self, emitter: ProgressEmitter | None = None, initial: Mapping[str, str] | None = None) -> None:
        self._emitter = emitter or ProgressEmitter()
        self._results: dict[str, str] = dict(initial or {})
        self._title: str | None = None
        self.notifications = 0

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._results

    def __len__(self) -> int:
        return len(self._results)

    @property
    def title(self) -> str | None:
        return self._title

    def get(self, unit_id: str) -> str | None:
        return self._results.get(unit_id)

    def snapshot(self) -> dict[str, str]:
        return dict(self._results)

    def view(self) -> Mapping[str, str]:
        return self._results

    def record(self, unit_id: str, text: str) -> bool:
        """Store ``text`` for ``unit_id``; return True when the value changed."""
        if not text or not text.strip():
            return False
        if self._results.get(unit_id) == text:
            return False
        self._results[unit_id] = text
        self.notifications += 1
        self._emitter.unit_result(unit_id, text)
        return True

    def record_title(self, text: str) -> bool:
        if not text or not text.strip() or self._title == text:
            return False
        self._title = text
        self._emitter.title(text)
        return True
