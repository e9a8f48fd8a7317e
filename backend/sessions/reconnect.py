"""Resume an in-flight turn when a conversation is (re)opened.

On attach the controller asks the server whether the session is busy. An idle
session needs nothing: the transcript renders from the local cache. A busy
session gets a reconnect stream, which replays every frame since the turn
began and then follows it live, through the same pipeline a new turn uses.

A reconnect that fails halfway leaves a partially rebuilt turn. It is kept in
memory (flagged ``partial``) as best effort, but it is never written to the
transcript cache.
"""

from collections.abc import Callable

import structlog

from errors import StudioError
from models.schemas import SessionStatus
from remote.client import StudioClient
from stream.pipeline import StreamState, TranscriptStream

logger = structlog.get_logger(__name__)


class ReconnectController:
    """Decide whether to reconnect, and open the replay stream.

    Attributes:
        last_status: Status reported by the most recent attach.
        stream: Stream of the most recent reconnect, if any.
        partial: Whether the last reconnect failed after rebuilding part of
            the turn.
    """

    def __init__(self, client: StudioClient, agent_id: str, session_id: str) -> None:
        self.client = client
        self.agent_id = agent_id
        self.session_id = session_id
        self.last_status: SessionStatus | None = None
        self.last_error: StudioError | None = None
        self.stream: TranscriptStream | None = None
        self.partial = False

    @property
    def state(self) -> StreamState:
        return self.stream.state if self.stream is not None else StreamState.IDLE

    async def attach(
        self, make_stream: Callable[[], TranscriptStream | None]
    ) -> TranscriptStream | None:
        """Query the session and start a reconnect stream if it is busy.

        Args:
            make_stream: Builds the (not yet started) stream that will carry
                the replay, or returns None if the caller no longer wants one.

        Returns:
            The started stream, or None when no reconnect was needed, the
            status query failed or ``make_stream`` declined.
        """
        self.partial = False
        try:
            status = await self.client.get_session_status(self.agent_id, self.session_id)
        except StudioError as e:
            self.last_error = e
            logger.warning(
                "reconnect_status_failed",
                agent_id=self.agent_id,
                session_id=self.session_id,
                error=str(e),
            )
            return None

        self.last_status = status
        if not status.busy:
            logger.debug("reconnect_not_needed", session_id=self.session_id)
            return None
        if not status.process_alive:
            logger.warning(
                "reconnecting_to_stuck_session",
                agent_id=self.agent_id,
                session_id=self.session_id,
            )

        stream = make_stream()
        if stream is None:
            logger.debug("reconnect_superseded", session_id=self.session_id)
            return None
        stream.start(lambda: self.client.open_reconnect_stream(self.agent_id, self.session_id))
        self.stream = stream
        logger.info("reconnect_started", agent_id=self.agent_id, session_id=self.session_id)
        return stream

    def finish(self) -> bool:
        """Record the outcome of the finished reconnect stream.

        Returns:
            Whether the rebuilt turn is partial.
        """
        stream = self.stream
        if stream is None:
            return False
        if stream.state == StreamState.ERROR:
            self.last_error = stream.error
            self.partial = stream.frames_received > 0
            logger.warning(
                "reconnect_failed",
                session_id=self.session_id,
                frames=stream.frames_received,
                partial=self.partial,
            )
        else:
            logger.info(
                "reconnect_finished",
                session_id=self.session_id,
                frames=stream.frames_received,
                aborted=stream.aborted,
            )
        return self.partial
