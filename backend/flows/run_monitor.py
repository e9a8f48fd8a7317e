"""Live run events of one flow.

The server streams run events for a flow on ``GET /flows/{id}/runs/live``
using the same event-stream framing as conversations; the event type is the
frame type (``run_started``, ``node_started``, ...) and the payload is a
JSON ``RunEvent``.

The monitor keeps a bounded log of recent events and derives a per-node run
status used to highlight nodes in the graph:

- ``run_started`` clears every status
- ``node_started`` / ``node_completed`` / ``node_failed`` set
  ``running`` / ``completed`` / ``failed`` on the node
- ``run_completed`` / ``run_failed`` schedule clearing all statuses after
  ``run_status_clear_seconds``
"""

import asyncio
import contextlib
import json
from collections import deque
from collections.abc import Callable

import structlog
from pydantic import ValidationError

from config import settings
from errors import StudioError
from events.types import StreamFrame
from models.schemas import RunEvent
from remote.client import StudioClient
from stream.decoder import iter_frames

logger = structlog.get_logger(__name__)

RUN_EVENT_TYPES = frozenset(
    {
        "run_started",
        "node_started",
        "node_completed",
        "node_failed",
        "run_completed",
        "run_failed",
        "log",
    }
)

_NODE_STATUS = {
    "node_started": "running",
    "node_completed": "completed",
    "node_failed": "failed",
}

StatusListener = Callable[[dict[str, str]], None]


class RunMonitor:
    """Follow the live run stream of a flow.

    Attributes:
        flow_id: Flow being monitored.
        events: Most recent run events, oldest first.
        node_status: Current run status per node id.
        connected: Whether the live stream is open.
    """

    def __init__(
        self,
        client: StudioClient,
        flow_id: str,
        *,
        max_events: int | None = None,
        clear_after_seconds: float | None = None,
        on_status: StatusListener | None = None,
    ) -> None:
        self.client = client
        self.flow_id = flow_id
        self.events: deque[RunEvent] = deque(
            maxlen=max_events if max_events is not None else settings.max_run_events
        )
        self.node_status: dict[str, str] = {}
        self.connected = False
        self.clear_after_seconds = (
            clear_after_seconds
            if clear_after_seconds is not None
            else settings.run_status_clear_seconds
        )
        self._on_status = on_status
        self._clear_handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None

    def handle_frame(self, frame: StreamFrame) -> RunEvent | None:
        """Parse one frame of the live stream; unknown or malformed frames are dropped."""
        if frame.event_type not in RUN_EVENT_TYPES:
            return None
        try:
            data = json.loads(frame.payload)
            if not isinstance(data, dict):
                raise ValueError("run event payload is not an object")
            data.setdefault("event_type", frame.event_type)
            event = RunEvent.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.debug(
                "run_event_unparseable",
                flow_id=self.flow_id,
                event_type=frame.event_type,
                error=str(e),
            )
            return None
        self.handle_event(event)
        return event

    def handle_event(self, event: RunEvent) -> None:
        self.events.append(event)
        changed = False

        if event.event_type == "run_started":
            self._cancel_clear()
            changed = bool(self.node_status)
            self.node_status.clear()
            logger.info("flow_run_started", flow_id=self.flow_id, run_id=event.run_id)

        status = _NODE_STATUS.get(event.event_type)
        if status is not None and event.node_id:
            changed = changed or self.node_status.get(event.node_id) != status
            self.node_status[event.node_id] = status

        if event.event_type in ("run_completed", "run_failed"):
            logger.info(
                "flow_run_finished",
                flow_id=self.flow_id,
                run_id=event.run_id,
                event_type=event.event_type,
            )
            self._schedule_clear()

        if changed:
            self._publish_status()

    def clear_events(self) -> None:
        self.events.clear()

    def clear_status(self) -> None:
        self._clear_handle = None
        if self.node_status:
            self.node_status.clear()
            self._publish_status()

    def _schedule_clear(self) -> None:
        self._cancel_clear()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous use): clear immediately
            self.clear_status()
            return
        self._clear_handle = loop.call_later(self.clear_after_seconds, self.clear_status)

    def _cancel_clear(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None

    def _publish_status(self) -> None:
        if self._on_status is not None:
            self._on_status(dict(self.node_status))

    # -----------------------------------------------------------------
    # Live stream
    # -----------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._follow(), name=f"run_monitor_{self.flow_id}")
        return self._task

    async def stop(self) -> None:
        self._cancel_clear()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _follow(self) -> None:
        try:
            async with self.client.open_run_events(self.flow_id) as chunks:
                self.connected = True
                logger.info("run_monitor_connected", flow_id=self.flow_id)
                async for frame in iter_frames(chunks):
                    self.handle_frame(frame)
            logger.info("run_monitor_stream_closed", flow_id=self.flow_id)
        except asyncio.CancelledError:
            logger.debug("run_monitor_stopped", flow_id=self.flow_id)
            raise
        except StudioError as e:
            logger.warning("run_monitor_failed", flow_id=self.flow_id, error=str(e))
        finally:
            self.connected = False
