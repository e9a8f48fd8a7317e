"""Session pool of one agent.

The registry mirrors the server's session list for an agent and applies the
client-side rules the server does not enforce:

- at most ``pool_limit`` interactive sessions; flow-run sessions (spawned by
  flow executions) do not count against the cap
- exactly one active session; deleting it atomically selects the next one
  (server-reported active session, else the first remaining, else none)
- a failed refresh keeps the last known good list

Usage:
    >>> registry = SessionRegistry(client, "agent_1", pool_limit=5)
    >>> active = await registry.ensure_session()
    >>> info = await registry.new_session()
    >>> await registry.delete_session(info.session_id)
"""

import asyncio
import contextlib

import structlog

from config import settings
from errors import NotFoundError, SessionLimitError, StudioError
from models.schemas import SessionHealth, SessionInfo, SessionKind
from remote.client import StudioClient

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """CRUD over the session pool of one agent.

    Attributes:
        agent_id: Agent whose sessions are tracked.
        pool_limit: Maximum number of interactive sessions.
        sessions: Last known session list, in server order.
        active_session_id: Currently selected session, if any.
        last_error: Error of the most recent failed refresh, cleared on success.
    """

    def __init__(
        self,
        client: StudioClient,
        agent_id: str,
        pool_limit: int | None = None,
    ) -> None:
        self.client = client
        self.agent_id = agent_id
        self.pool_limit = pool_limit if pool_limit is not None else settings.session_pool_limit
        self.sessions: list[SessionInfo] = []
        self.active_session_id: str | None = None
        self.last_error: StudioError | None = None
        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get(self, session_id: str) -> SessionInfo | None:
        for session in self.sessions:
            if session.session_id == session_id:
                return session
        return None

    @property
    def active(self) -> SessionInfo | None:
        return self.get(self.active_session_id) if self.active_session_id else None

    @property
    def interactive_count(self) -> int:
        return sum(1 for s in self.sessions if s.kind == SessionKind.INTERACTIVE)

    @property
    def at_limit(self) -> bool:
        return self.interactive_count >= self.pool_limit

    def health_of(self, session_id: str) -> SessionHealth | None:
        session = self.get(session_id)
        return session.health if session is not None else None

    # -----------------------------------------------------------------
    # Server sync
    # -----------------------------------------------------------------

    async def refresh(self) -> bool:
        """Reload the session list from the server.

        Returns:
            False if the server could not be reached or answered with an
            error; the previous list is kept in that case.
        """
        try:
            listing = await self.client.list_sessions(self.agent_id)
        except StudioError as e:
            self.last_error = e
            logger.warning(
                "session_refresh_failed",
                agent_id=self.agent_id,
                error=str(e),
            )
            return False

        async with self._lock:
            self.sessions = list(listing.sessions)
            self.last_error = None
            if self.active_session_id is None or self.get(self.active_session_id) is None:
                self.active_session_id = self._fallback_active(listing.active_session)

        logger.debug(
            "sessions_refreshed",
            agent_id=self.agent_id,
            count=len(self.sessions),
            active_session=self.active_session_id,
        )
        return True

    async def ensure_session(self) -> str | None:
        """Load the pool, creating a first session if the agent has none.

        Returns:
            The active session id, or None if the server is unreachable.
        """
        if not await self.refresh():
            return self.active_session_id
        if not self.sessions:
            logger.info("creating_first_session", agent_id=self.agent_id)
            info = await self.new_session()
            return info.session_id
        return self.active_session_id

    async def new_session(self) -> SessionInfo:
        """Create an interactive session and make it active.

        Raises:
            SessionLimitError: The pool already holds ``pool_limit``
                interactive sessions (checked locally), or the server
                answered 429. The pool is left unchanged.
        """
        if self.at_limit:
            logger.warning(
                "session_limit_reached",
                agent_id=self.agent_id,
                limit=self.pool_limit,
                interactive_count=self.interactive_count,
            )
            raise SessionLimitError(
                f"Session limit reached ({self.pool_limit} max)",
                limit=self.pool_limit,
            )

        response = await self.client.new_session(self.agent_id)
        info = SessionInfo(
            session_id=response.session_id,
            created_at=response.created_at,
            kind=SessionKind.INTERACTIVE,
        )
        async with self._lock:
            self.sessions.append(info)
            self.active_session_id = info.session_id

        if response.warning:
            logger.warning("session_pool_warning", agent_id=self.agent_id, warning=response.warning)
        logger.info(
            "session_created",
            agent_id=self.agent_id,
            session_id=info.session_id,
            interactive_count=self.interactive_count,
        )
        return info

    async def delete_session(self, session_id: str) -> str | None:
        """Delete a session and return the active session afterwards.

        Raises:
            ApiError: The server refused (it answers 400 when asked to delete
                an agent's last session).
        """
        response = await self.client.delete_session(self.agent_id, session_id)
        async with self._lock:
            self.sessions = [s for s in self.sessions if s.session_id != session_id]
            if self.active_session_id == session_id or self.active_session_id is None:
                self.active_session_id = self._fallback_active(response.active_session)
        logger.info(
            "session_deleted",
            agent_id=self.agent_id,
            session_id=session_id,
            active_session=self.active_session_id,
        )
        return self.active_session_id

    def select(self, session_id: str) -> SessionInfo:
        """Make a known session active."""
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(404, f"unknown session {session_id}")
        self.active_session_id = session_id
        return session

    async def kill_session(self, session_id: str) -> None:
        """Force-kill a stuck session process, then reload its state."""
        session = self.get(session_id)
        if session is not None and not session.needs_force_kill:
            logger.info(
                "kill_requested_for_healthy_session",
                agent_id=self.agent_id,
                session_id=session_id,
                health=session.health.value,
            )
        await self.client.kill_session(self.agent_id, session_id)
        logger.info("session_killed", agent_id=self.agent_id, session_id=session_id)
        await self.refresh()

    def _fallback_active(self, server_active: str | None) -> str | None:
        if server_active and self.get(server_active) is not None:
            return server_active
        if self.sessions:
            return self.sessions[0].session_id
        return None

    # -----------------------------------------------------------------
    # Polling
    # -----------------------------------------------------------------

    def start_polling(self, interval_seconds: float | None = None) -> asyncio.Task[None]:
        """Refresh periodically to pick up flow-run sessions and busy flags."""
        if self._poll_task is not None and not self._poll_task.done():
            return self._poll_task
        interval = (
            interval_seconds
            if interval_seconds is not None
            else settings.session_refresh_interval_seconds
        )
        self._poll_task = asyncio.create_task(
            self._poll(interval), name=f"session_poll_{self.agent_id}"
        )
        return self._poll_task

    async def stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._poll_task
        self._poll_task = None

    async def _poll(self, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                await self.refresh()
        except asyncio.CancelledError:
            logger.debug("session_polling_stopped", agent_id=self.agent_id)
            raise
