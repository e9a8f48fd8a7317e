"""Conversation with one agent session.

A ``Conversation`` owns the transcript of a session and at most one active
stream: either a turn it started (``send``) or a reconnect to a turn that
was already running (``attach``). It is the unit the websocket layer talks
to; every visible change is pushed to subscribers as a ``TranscriptResponse``
snapshot, at most once per coalescer flush.

Stopping a stream comes in two flavors:

- ``cancel`` is the user pressing stop: the stream is aborted, the server is
  asked to stop the turn and the partial answer is committed and cached
- ``detach`` is the view going away: the stream is aborted locally only; the
  server keeps running and a later ``attach`` replays the turn, so the
  in-flight answer is neither committed nor cached

Cache policy: the user's message is cached when it is sent, the full
transcript when a turn completes. A reconnect that fails midway never
touches the cache.
"""

import asyncio
import contextlib
from collections.abc import Callable
from typing import Literal

import structlog

from config import settings
from errors import ConflictError, StudioError, user_message
from models.database import TranscriptCache
from models.schemas import TranscriptResponse
from remote.client import StudioClient
from sessions.reconnect import ReconnectController
from stream.coalescer import FrameScheduler, LoopFrameScheduler
from stream.pipeline import StreamState, TranscriptStream
from stream.transcript import EntryStyle, ResultMeta, TranscriptBuilder, lines_to_messages

logger = structlog.get_logger(__name__)

StreamKind = Literal["turn", "reconnect"]
TranscriptListener = Callable[[TranscriptResponse], None]


class Conversation:
    """Transcript plus the active stream of one session.

    Attributes:
        agent_id: Agent the session belongs to.
        session_id: Session this conversation talks to.
        builder: The session transcript.
        partial: Whether the last reconnect failed after a partial rebuild.
    """

    def __init__(
        self,
        client: StudioClient,
        agent_id: str,
        session_id: str,
        cache: TranscriptCache | None = None,
        *,
        scheduler: FrameScheduler | None = None,
        flow_id: str | None = None,
        node_id: str | None = None,
    ) -> None:
        self.client = client
        self.agent_id = agent_id
        self.session_id = session_id
        self.cache = cache
        self.flow_id = flow_id
        self.node_id = node_id
        self.builder = TranscriptBuilder()
        self.partial = False
        self._scheduler = scheduler
        self._stream: TranscriptStream | None = None
        self._detach_requested = False
        self._reconnect = ReconnectController(client, agent_id, session_id)
        self._listeners: list[TranscriptListener] = []
        self._pending_saves: set[asyncio.Task[None]] = set()
        self._save_lock = asyncio.Lock()
        self._reconnect_base: int | None = None

    # -----------------------------------------------------------------
    # Observation
    # -----------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._stream.state if self._stream is not None else StreamState.IDLE

    @property
    def is_streaming(self) -> bool:
        return self._stream is not None and self._stream.is_streaming

    @property
    def stream(self) -> TranscriptStream | None:
        return self._stream

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> TranscriptResponse:
        meta = self.builder.result_meta
        return TranscriptResponse(
            session_id=self.session_id,
            state=self.state.value,
            is_streaming=self.is_streaming,
            partial=self.partial,
            messages=self.builder.to_dicts(),
            streaming_text=self._stream.streaming_text if self._stream is not None else "",
            result_meta=meta.to_dict() if meta is not None else None,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(
                    "transcript_listener_error",
                    session_id=self.session_id,
                    error=str(e),
                )

    # -----------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------

    async def load(self, *, from_log: bool = False) -> int:
        """Populate the transcript before any stream runs.

        Args:
            from_log: Rebuild from the server's session log instead of the
                local cache (flow-run sessions have no cached transcript).

        Returns:
            Number of messages loaded.
        """
        if self.is_streaming:
            raise RuntimeError("cannot load while a stream is active")

        if from_log:
            try:
                lines = await self.client.get_session_log(self.agent_id, self.session_id)
            except StudioError as e:
                logger.warning("session_log_load_failed", session_id=self.session_id, error=str(e))
                return 0
            messages, meta = lines_to_messages(lines)
            self.builder.messages = messages
            self.builder.result_meta = meta
        elif self.cache is not None:
            cached = await self.cache.load(self.session_id)
            if not cached:
                return 0
            self.builder.messages = TranscriptBuilder.from_dicts(cached).messages
            meta = await self.cache.load_meta(self.session_id)
            if meta and meta.get("result_meta"):
                self.builder.result_meta = ResultMeta(**meta["result_meta"])
        else:
            return 0

        logger.info(
            "transcript_loaded",
            session_id=self.session_id,
            source="log" if from_log else "cache",
            message_count=len(self.builder.messages),
        )
        self._notify()
        return len(self.builder.messages)

    # -----------------------------------------------------------------
    # Streams
    # -----------------------------------------------------------------

    async def send(self, prompt: str) -> TranscriptStream | None:
        """Start a new turn.

        Returns:
            The running stream, or None if a stream is already active (an
            informational entry is added instead).
        """
        if self.is_streaming:
            logger.info("send_while_streaming", session_id=self.session_id)
            self.builder.add_notice("Previous message still processing. Please wait.")
            self._notify()
            return None

        # The stream must own the slot before the first await.
        self.builder.begin_turn(prompt)
        self.partial = False
        self._reconnect_base = None
        stream = self._new_stream("turn")
        stream.start(
            lambda: self.client.open_chat_stream(
                self.agent_id,
                prompt,
                self.session_id,
                flow_id=self.flow_id,
                node_id=self.node_id,
            )
        )
        self._track(stream, "turn")
        logger.info("turn_started", agent_id=self.agent_id, session_id=self.session_id)
        await self._save()
        return stream

    async def attach(self) -> bool:
        """Reconnect to a turn already running on the server.

        Returns:
            Whether a reconnect stream was started.
        """
        if self.is_streaming:
            return False

        def make_stream() -> TranscriptStream | None:
            # A send may have taken the slot while the status was queried.
            if self.is_streaming:
                return None
            if self.partial and self._reconnect_base is not None:
                # The replay restarts from the beginning of the turn.
                del self.builder.messages[self._reconnect_base :]
            self._reconnect_base = len(self.builder.messages)
            self.builder.begin_turn()
            return self._new_stream("reconnect")

        stream = await self._reconnect.attach(make_stream)
        if stream is None:
            return False
        self._track(stream, "reconnect")
        return True

    async def cancel(self) -> bool:
        """Stop the running turn on the server and keep its partial answer."""
        stream = self._stream
        if stream is None or not stream.is_streaming:
            return False
        stream.cancel()
        try:
            await self.client.stop_chat(self.agent_id, self.session_id)
        except StudioError as e:
            logger.warning("stop_chat_failed", session_id=self.session_id, error=str(e))
        await self.wait()
        logger.info("turn_cancelled", session_id=self.session_id)
        return True

    async def detach(self) -> bool:
        """Stop following the running turn locally; the server keeps it going."""
        stream = self._stream
        if stream is None or not stream.is_streaming:
            return False
        self._detach_requested = True
        stream.cancel()
        await self.wait()
        logger.info("conversation_detached", session_id=self.session_id)
        return True

    async def wait(self) -> None:
        """Wait for the active stream and any cache writes it triggered."""
        stream = self._stream
        if stream is not None and stream.task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await stream.task
        if self._pending_saves:
            await asyncio.gather(*list(self._pending_saves))

    async def close(self) -> None:
        await self.detach()
        await self.wait()
        self._listeners.clear()

    def _new_stream(self, label: str) -> TranscriptStream:
        self._detach_requested = False
        scheduler = self._scheduler or LoopFrameScheduler(settings.frame_interval_ms / 1000)
        stream = TranscriptStream(
            self.builder,
            on_update=lambda _stream: self._notify(),
            scheduler=scheduler,
            label=f"{label}_{self.session_id}",
        )
        self._stream = stream
        return stream

    def _track(self, stream: TranscriptStream, kind: StreamKind) -> None:
        if stream.task is None:
            raise RuntimeError("stream was not started")
        stream.task.add_done_callback(lambda _task: self._on_stream_done(stream, kind))

    def _on_stream_done(self, stream: TranscriptStream, kind: StreamKind) -> None:
        if self._detach_requested:
            self.builder.finish_turn(commit=False)
            self._notify()
            return

        persist = True
        if kind == "reconnect":
            self.partial = self._reconnect.finish()
            persist = stream.state != StreamState.ERROR

        message = self.builder.finish_turn()
        if stream.state == StreamState.ERROR and stream.error is not None:
            style = EntryStyle.NOTICE if isinstance(stream.error, ConflictError) else EntryStyle.ERROR
            self.builder.add_notice(user_message(stream.error), style=style)

        logger.info(
            "stream_completed",
            session_id=self.session_id,
            kind=kind,
            state=stream.state.value,
            aborted=stream.aborted,
            has_reply=message is not None,
        )
        if persist:
            task = asyncio.create_task(self._save(), name=f"transcript_save_{self.session_id}")
            self._pending_saves.add(task)
            task.add_done_callback(self._pending_saves.discard)
        self._notify()

    async def _save(self) -> None:
        if self.cache is None:
            return
        # Saves are serialized and snapshot under the lock, so the last write wins.
        async with self._save_lock:
            meta = self.builder.result_meta
            await self.cache.save(
                self.session_id,
                self.agent_id,
                [m.to_dict() for m in self.builder.messages],
                meta.to_dict() if meta is not None else None,
            )
