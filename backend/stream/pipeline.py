"""The shared decode -> fold -> coalesce pipeline for one stream.

A freshly started turn (``POST /agents/{id}/chat``) and a reconnect
(``GET /agents/{id}/sessions/{sid}/chat/stream``) deliver the same framing and
are processed identically by ``TranscriptStream``. Each stream is owned by one
asyncio task, which doubles as its cancellation token.

State machine::

    idle -> connecting -> streaming -> done
                      \\            \\-> error
                       \\-> error

Aborting a stream (``cancel``) stops frame delivery immediately but still
runs the done path: the pending flush is cancelled, a final synchronous flush
is performed and the state leaves ``streaming``.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from enum import StrEnum

import structlog

from errors import StudioError
from events.types import StreamFrame
from stream.coalescer import DeltaCoalescer, FrameScheduler
from stream.decoder import FrameDecoder
from stream.transcript import TranscriptBuilder

logger = structlog.get_logger(__name__)

StreamOpener = Callable[[], AbstractAsyncContextManager[AsyncIterator[bytes]]]


class StreamState(StrEnum):
    """Lifecycle of one stream."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


class TranscriptStream:
    """Feed one byte stream into a transcript builder.

    Attributes:
        builder: Transcript the frames are folded into.
        coalescer: Batches visible updates; its text is the turn's streamed text.
        state: Current lifecycle state.
        error: The error that ended the stream, if any.
        aborted: Whether the stream was cancelled.
        frames_received: Number of frames delivered to the builder.
    """

    def __init__(
        self,
        builder: TranscriptBuilder,
        *,
        on_update: Callable[["TranscriptStream"], None] | None = None,
        scheduler: FrameScheduler | None = None,
        label: str = "stream",
    ) -> None:
        self.builder = builder
        self.label = label
        self.state = StreamState.IDLE
        self.error: StudioError | None = None
        self.aborted = False
        self.frames_received = 0
        self._on_update = on_update
        self._abort_requested = False
        self._task: asyncio.Task[StreamState] | None = None
        self.coalescer = DeltaCoalescer(on_flush=self._on_flush, scheduler=scheduler)

    @property
    def is_streaming(self) -> bool:
        return self.state in (StreamState.CONNECTING, StreamState.STREAMING)

    @property
    def streaming_text(self) -> str:
        """Text visible to the views (updated once per flush)."""
        return self.coalescer.visible

    @property
    def task(self) -> asyncio.Task[StreamState] | None:
        return self._task

    def start(self, opener: StreamOpener) -> asyncio.Task[StreamState]:
        """Run the stream in its own task and return it."""
        if self._task is not None:
            raise RuntimeError("stream already started")
        # Counts as streaming from here, before the task takes its first step
        self._set_state(StreamState.CONNECTING)
        self._task = asyncio.create_task(self.run(opener), name=f"transcript_{self.label}")
        self._task.add_done_callback(self._on_task_done)
        return self._task

    def cancel(self) -> bool:
        """Abort the stream. Returns False if it had already finished."""
        if self.state in (StreamState.DONE, StreamState.ERROR):
            return False
        self._abort_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("stream_abort_requested", label=self.label)
        return True

    async def run(self, opener: StreamOpener) -> StreamState:
        """Open the stream and process it to completion."""
        if self.state == StreamState.IDLE:
            self._set_state(StreamState.CONNECTING)
        try:
            async with opener() as chunks:
                self._set_state(StreamState.STREAMING)
                decoder = FrameDecoder()
                async for chunk in chunks:
                    for frame in decoder.feed(chunk):
                        if self._abort_requested:
                            break
                        self._deliver(frame)
                    if self._abort_requested:
                        break
                else:
                    for frame in decoder.finish():
                        self._deliver(frame)
            self.state = StreamState.DONE
        except asyncio.CancelledError:
            self.aborted = True
            self.state = StreamState.DONE
            logger.info("stream_aborted", label=self.label, frames=self.frames_received)
            raise
        except StudioError as e:
            self.error = e
            self.state = StreamState.ERROR
            logger.warning(
                "stream_failed",
                label=self.label,
                error=str(e),
                frames=self.frames_received,
            )
        finally:
            if self._abort_requested:
                self.aborted = True
            self.coalescer.finish()
            logger.debug(
                "stream_finished",
                label=self.label,
                state=self.state.value,
                frames=self.frames_received,
            )
        return self.state

    def _on_task_done(self, task: asyncio.Task[StreamState]) -> None:
        if self.state in (StreamState.DONE, StreamState.ERROR):
            return
        # Cancelled before its first step, or failed outside the studio taxonomy
        if task.cancelled():
            self.aborted = True
            self.state = StreamState.DONE
        else:
            logger.error("stream_crashed", label=self.label, error=str(task.exception()))
            self.state = StreamState.ERROR
        self.coalescer.finish()

    def _deliver(self, frame: StreamFrame) -> None:
        self.frames_received += 1
        before = self._turn_text()
        changed = self.builder.fold(frame)
        after = self._turn_text()
        if len(after) > len(before) and after.startswith(before):
            self.coalescer.append(after[len(before) :])
        elif changed:
            self.coalescer.request_flush()

    def _turn_text(self) -> str:
        message = self.builder.in_progress
        return message.text if message is not None else ""

    def _set_state(self, state: StreamState) -> None:
        self.state = state
        if self._on_update is not None:
            self._on_update(self)

    def _on_flush(self, _text: str) -> None:
        if self._on_update is not None:
            self._on_update(self)
