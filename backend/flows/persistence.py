"""Debounced, serialized persistence of flow edits.

Rapid edits (dragging a node, typing in the editor) must not turn into one
HTTP write each. ``DebouncedWriter`` keeps only the most recent payload per
flow, waits for the edits to settle, and never has more than one write in
flight for the same flow id. A payload scheduled while a write is in flight
replaces any older waiting payload and goes out once the in-flight write
finishes.
"""

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

import structlog

from errors import StudioError
from models.schemas import FlowPatch

logger = structlog.get_logger(__name__)

FlowWriteFn = Callable[[str, FlowPatch], Awaitable[Any]]


class DebouncedWriter:
    """Collapse bursts of flow writes into one request per settled burst.

    Attributes:
        delay_seconds: Debounce window; the timer restarts on every schedule.
        write_count: Number of writes that completed successfully.
        failure_count: Number of writes that failed.
        last_error: Message of the most recent failed write, if any.
    """

    def __init__(self, write: FlowWriteFn, delay_seconds: float) -> None:
        """Initialize the writer.

        Args:
            write: Coroutine function performing the actual write.
            delay_seconds: Quiet period required before a write is issued.
        """
        self._write = write
        self.delay_seconds = delay_seconds
        self._pending: dict[str, FlowPatch] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self.write_count = 0
        self.failure_count = 0
        self.last_error: str | None = None

    @property
    def pending_flow_ids(self) -> list[str]:
        """Flows with a payload waiting to be written."""
        return sorted(self._pending)

    def is_idle(self, flow_id: str) -> bool:
        return (
            flow_id not in self._pending
            and flow_id not in self._timers
            and flow_id not in self._inflight
        )

    def schedule(self, flow_id: str, payload: FlowPatch) -> None:
        """Replace the waiting payload for a flow and restart its timer.

        Must be called from within a running event loop.
        """
        self._pending[flow_id] = payload
        timer = self._timers.pop(flow_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[flow_id] = loop.call_later(self.delay_seconds, self._on_timer, flow_id)
        logger.debug("flow_save_scheduled", flow_id=flow_id, delay_seconds=self.delay_seconds)

    def _on_timer(self, flow_id: str) -> None:
        self._timers.pop(flow_id, None)
        if flow_id in self._inflight:
            # The in-flight write picks up the newer payload when it finishes
            return
        self._start_write(flow_id)

    def _start_write(self, flow_id: str) -> None:
        payload = self._pending.pop(flow_id, None)
        if payload is None:
            return
        task = asyncio.create_task(
            self._write_one(flow_id, payload),
            name=f"flow_save_{flow_id}",
        )
        self._inflight[flow_id] = task
        task.add_done_callback(partial(self._on_write_done, flow_id))

    async def _write_one(self, flow_id: str, payload: FlowPatch) -> None:
        try:
            await self._write(flow_id, payload)
        except StudioError as e:
            self.failure_count += 1
            self.last_error = str(e)
            logger.warning("flow_save_failed", flow_id=flow_id, error=str(e))
            return
        self.write_count += 1
        self.last_error = None
        logger.info("flow_saved", flow_id=flow_id)

    def _on_write_done(self, flow_id: str, task: asyncio.Task[None]) -> None:
        self._inflight.pop(flow_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "flow_save_crashed",
                flow_id=flow_id,
                error=str(task.exception()),
            )
        # A payload that arrived during the write and whose timer already
        # fired is written now
        if flow_id in self._pending and flow_id not in self._timers:
            self._start_write(flow_id)

    async def flush(self, flow_id: str) -> None:
        """Write any waiting payload for a flow immediately and wait for it."""
        timer = self._timers.pop(flow_id, None)
        if timer is not None:
            timer.cancel()
        while True:
            task = self._inflight.get(flow_id)
            if task is not None:
                await asyncio.wait({task})
                continue
            if flow_id not in self._pending:
                return
            self._start_write(flow_id)

    async def flush_all(self) -> None:
        """Flush every flow with pending or in-flight work."""
        flow_ids = set(self._pending) | set(self._inflight) | set(self._timers)
        for flow_id in sorted(flow_ids):
            await self.flush(flow_id)

    def cancel_all(self) -> None:
        """Drop waiting payloads and timers; in-flight writes are cancelled."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()
        for task in self._inflight.values():
            task.cancel()
        logger.info("flow_saves_cancelled", inflight=len(self._inflight))
