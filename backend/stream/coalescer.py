"""Batch streamed text deltas into a bounded number of visible updates.

A fast model produces a text delta every few milliseconds. Publishing each
one to the views would mean one re-render per token, so ``DeltaCoalescer``
appends deltas to a private buffer and schedules a single flush per frame
interval. Whatever arrived in between becomes visible in one update.

The scheduling primitive is pluggable:

- ``LoopFrameScheduler`` uses ``loop.call_later`` on the running event loop
- ``ManualFrameScheduler`` runs callbacks only on an explicit ``tick()``
"""

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

FlushCallback = Callable[[str], None]


class FrameScheduler(Protocol):
    """Something that can run a callback "on the next frame" and cancel it."""

    def schedule(self, callback: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class LoopFrameScheduler:
    """Schedule flushes on the running asyncio loop."""

    def __init__(self, interval_seconds: float = 0.016) -> None:
        self.interval_seconds = interval_seconds

    def schedule(self, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(self.interval_seconds, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()


class ManualFrameScheduler:
    """Collect callbacks and run them when ``tick()`` is called."""

    def __init__(self) -> None:
        self._pending: dict[int, Callable[[], None]] = {}
        self._next_handle = 0

    def schedule(self, callback: Callable[[], None]) -> int:
        self._next_handle += 1
        self._pending[self._next_handle] = callback
        return self._next_handle

    def cancel(self, handle: int) -> None:
        self._pending.pop(handle, None)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def tick(self) -> int:
        """Run every scheduled callback; returns how many ran."""
        callbacks = list(self._pending.values())
        self._pending.clear()
        for callback in callbacks:
            callback()
        return len(callbacks)


class DeltaCoalescer:
    """Owned text buffer with an ``append``/``flush`` contract.

    At most one flush is pending at any time. ``finish`` cancels it and
    flushes synchronously so the last delta is never lost.

    Attributes:
        visible: Text last published through ``on_flush``.
        flush_count: Number of flushes performed.
    """

    def __init__(
        self,
        on_flush: FlushCallback | None = None,
        scheduler: FrameScheduler | None = None,
    ) -> None:
        self._on_flush = on_flush
        self._scheduler: FrameScheduler = scheduler or LoopFrameScheduler()
        self._buffer: list[str] = []
        self._pending: Any = None
        self.visible = ""
        self.flush_count = 0

    @property
    def pending(self) -> bool:
        """Whether a flush is scheduled."""
        return self._pending is not None

    @property
    def buffered(self) -> str:
        return "".join(self._buffer)

    def append(self, delta: str) -> None:
        """Add a delta; schedule a flush unless one is already pending."""
        self._buffer.append(delta)
        if self._pending is None:
            self._pending = self._scheduler.schedule(self.flush)

    def request_flush(self) -> None:
        """Schedule a flush without adding text (e.g. after a tool call)."""
        if self._pending is None:
            self._pending = self._scheduler.schedule(self.flush)

    def flush(self) -> None:
        """Copy the buffer into ``visible`` and publish it."""
        self._pending = None
        self.visible = "".join(self._buffer)
        self.flush_count += 1
        if self._on_flush is not None:
            self._on_flush(self.visible)

    def finish(self) -> None:
        """Cancel any pending flush and flush synchronously."""
        if self._pending is not None:
            self._scheduler.cancel(self._pending)
            self._pending = None
        self.flush()

    def reset(self) -> None:
        """Drop buffered text, e.g. when a new turn starts."""
        if self._pending is not None:
            self._scheduler.cancel(self._pending)
            self._pending = None
        self._buffer.clear()
        self.visible = ""
