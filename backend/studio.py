"""Studio coordinator.

This module provides the Studio class that owns every long-lived object of
the local service and hands them to the API layer:

- one ``FlowWorkspace`` per open flow, sharing a single ``DebouncedWriter``
- one ``SessionRegistry`` per agent
- one ``Conversation`` per (agent, session) that has been opened

Usage:
    >>> studio = Studio(StudioClient(), get_signal_bus(), cache)
    >>> workspace = await studio.open_flow("flow_1")
    >>> conversation = await studio.conversation("agent_1", "sess_1")
    >>> await conversation.send("hello")
    >>> await studio.cleanup_all()
"""

import asyncio

import structlog

from config import settings
from events.bus import SignalBus
from flows.persistence import DebouncedWriter
from flows.workspace import FlowWorkspace
from models.database import TranscriptCache
from models.schemas import SessionKind
from remote.client import StudioClient
from sessions.conversation import Conversation
from sessions.registry import SessionRegistry

logger = structlog.get_logger(__name__)


class Studio:
    """Registry of open workspaces, session pools and conversations.

    Attributes:
        client: Client for the remote flow server.
        bus: Signal bus shared by every workspace.
        cache: Transcript cache, or None when persistence is unavailable.
        writer: Debounced writer used by every flow store.
    """

    def __init__(
        self,
        client: StudioClient,
        bus: SignalBus,
        cache: TranscriptCache | None = None,
        *,
        save_delay_seconds: float | None = None,
    ) -> None:
        self.client = client
        self.bus = bus
        self.cache = cache
        delay = (
            save_delay_seconds
            if save_delay_seconds is not None
            else settings.save_debounce_ms / 1000
        )
        self.writer = DebouncedWriter(client.update_flow, delay)
        self._workspaces: dict[str, FlowWorkspace] = {}
        self._registries: dict[str, SessionRegistry] = {}
        self._conversations: dict[tuple[str, str], Conversation] = {}
        self._loading: dict[tuple[str, str], asyncio.Event] = {}
        self._lock = asyncio.Lock()
        logger.info("studio_initialized", server_url=client.base_url)

    # -----------------------------------------------------------------
    # Flows
    # -----------------------------------------------------------------

    async def open_flow(self, flow_id: str, *, follow_runs: bool = False) -> FlowWorkspace:
        """Return the workspace of a flow, opening it on first use."""
        async with self._lock:
            workspace = self._workspaces.get(flow_id)
            if workspace is not None:
                return workspace
            workspace = FlowWorkspace(self.client, self.bus, self.writer)
            await workspace.open(flow_id, follow_runs=follow_runs)
            self._workspaces[flow_id] = workspace
            return workspace

    def get_workspace(self, flow_id: str) -> FlowWorkspace | None:
        return self._workspaces.get(flow_id)

    async def close_flow(self, flow_id: str) -> bool:
        async with self._lock:
            workspace = self._workspaces.pop(flow_id, None)
        if workspace is None:
            return False
        await workspace.close()
        return True

    def get_open_flows(self) -> list[str]:
        return sorted(self._workspaces)

    # -----------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------

    def registry(self, agent_id: str) -> SessionRegistry:
        """Return the session pool of an agent, creating it on first use."""
        registry = self._registries.get(agent_id)
        if registry is None:
            registry = SessionRegistry(self.client, agent_id)
            self._registries[agent_id] = registry
        return registry

    def get_conversation(self, agent_id: str, session_id: str) -> Conversation | None:
        return self._conversations.get((agent_id, session_id))

    async def conversation(self, agent_id: str, session_id: str) -> Conversation:
        """Return the conversation of a session, loading it on first use.

        Flow-run sessions are rebuilt from the server log; interactive ones
        from the transcript cache. Every lookup of a conversation without an
        active stream asks the server again, so a turn still running there is
        resumed through a reconnect even if an earlier attempt failed.
        """
        key = (agent_id, session_id)
        async with self._lock:
            conversation = self._conversations.get(key)
            loading = self._loading.get(key)
            created = conversation is None
            if conversation is None:
                conversation = Conversation(self.client, agent_id, session_id, self.cache)
                self._conversations[key] = conversation
                loading = self._loading[key] = asyncio.Event()

        if not created:
            if loading is not None:
                await loading.wait()
            if not conversation.is_streaming:
                await conversation.attach()
            return conversation

        try:
            info = self.registry(agent_id).get(session_id)
            from_log = info is not None and info.kind == SessionKind.FLOW_RUN
            await conversation.load(from_log=from_log)
            await conversation.attach()
        finally:
            self._loading.pop(key, None)
            loading.set()
        return conversation

    async def delete_session(self, agent_id: str, session_id: str) -> str | None:
        """Delete a session everywhere; returns the new active session."""
        active = await self.registry(agent_id).delete_session(session_id)
        conversation = self._conversations.pop((agent_id, session_id), None)
        if conversation is not None:
            await conversation.close()
        if self.cache is not None:
            await self.cache.clear(session_id)
        return active

    # -----------------------------------------------------------------
    # Shutdown
    # -----------------------------------------------------------------

    async def cleanup_all(self) -> None:
        """Detach conversations, stop polling and flush every pending flow write."""
        logger.info(
            "studio_cleanup_started",
            workspaces=len(self._workspaces),
            conversations=len(self._conversations),
        )
        for conversation in list(self._conversations.values()):
            await conversation.close()
        self._conversations.clear()

        for registry in self._registries.values():
            await registry.stop_polling()

        for flow_id in list(self._workspaces):
            await self.close_flow(flow_id)
        await self.writer.flush_all()
        logger.info("studio_cleanup_complete")
