"""One open flow: canonical store, both views and the run monitor.

``FlowWorkspace`` wires the synchronization stack together for a flow the
user opened:

    server --get_flow--> FlowStore --signals--> GraphAdapter
                             ^                  TextAdapter
                             |                  validation
                   apply(patch, source)
                             |
                   DebouncedWriter --update_flow--> server

Usage:
    >>> workspace = FlowWorkspace(client, get_signal_bus(), writer)
    >>> await workspace.open("flow_1")
    >>> workspace.graph.connect("trigger-1", "source-1")
    >>> workspace.snapshot().text
"""

from typing import Any

import structlog

from events.bus import SignalBus
from events.types import UpdateSignal, UpdateSource
from flows.graph_adapter import GraphAdapter
from flows.persistence import DebouncedWriter
from flows.run_monitor import RunMonitor
from flows.store import FlowStore
from flows.text_adapter import TextAdapter
from flows.validation import validate_flow
from models.schemas import Flow, FlowPatch, WorkspaceSnapshot
from remote.client import StudioClient

logger = structlog.get_logger(__name__)


class FlowWorkspace:
    """Store, graph view, text view and run monitor of one flow.

    Attributes:
        store: Canonical flow store, None until ``open``.
        graph: Graph projection (origin ``canvas``).
        text: Text projection (origin ``editor``).
        monitor: Live run monitor, None until ``open``.
        validation_errors: Per-node configuration problems of the current flow.
    """

    def __init__(
        self,
        client: StudioClient,
        bus: SignalBus,
        writer: DebouncedWriter | None = None,
    ) -> None:
        self.client = client
        self.bus = bus
        self.writer = writer
        self.store: FlowStore | None = None
        self.graph = GraphAdapter()
        self.text = TextAdapter()
        self.monitor: RunMonitor | None = None
        self.validation_errors: dict[str, list[str]] = {}

    @property
    def flow_id(self) -> str | None:
        return self.store.flow_id if self.store is not None else None

    def _require_store(self) -> FlowStore:
        if self.store is None:
            raise RuntimeError("workspace has no open flow")
        return self.store

    async def open(self, flow_id: str, *, follow_runs: bool = False) -> Flow:
        """Fetch a flow and project it into both views.

        Args:
            flow_id: Flow to open.
            follow_runs: Also subscribe to the flow's live run events.

        Raises:
            StudioError: If the flow cannot be fetched.
            ConsistencyError: If the server copy breaks the flow invariants.
        """
        if self.store is not None:
            await self.close()

        flow = await self.client.get_flow(flow_id)
        store = FlowStore(flow, self.bus, self.writer)
        self.graph.attach(store)
        self.text.attach(store)
        self.bus.subscribe(flow.id, self._on_signal)
        self.store = store
        store.load(flow, UpdateSource.INIT)

        self.monitor = RunMonitor(self.client, flow.id, on_status=self.graph.set_run_status)
        if follow_runs:
            self.monitor.start()

        logger.info(
            "flow_opened",
            flow_id=flow.id,
            node_count=len(flow.nodes),
            edge_count=len(flow.edges),
        )
        return store.get()

    async def refresh(self) -> Flow:
        """Reload the server copy into the store (``server`` origin)."""
        store = self._require_store()
        flow = await self.client.get_flow(store.flow_id)
        store.load(flow, UpdateSource.SERVER)
        logger.info("flow_refreshed", flow_id=store.flow_id)
        return store.get()

    def rename(self, name: str) -> UpdateSignal:
        return self._require_store().apply(FlowPatch(name=name), UpdateSource.CANVAS)

    def set_enabled(self, enabled: bool) -> UpdateSignal:
        return self._require_store().apply(FlowPatch(enabled=enabled), UpdateSource.CANVAS)

    def edit_text(self, text: str) -> UpdateSignal | None:
        """Replace the editor buffer as if the user typed it.

        Returns:
            The published signal, or None if the text did not become a valid
            patch (see ``text.parse_error``).
        """
        store = self._require_store()
        before = store.counter
        buffer = self.text.buffer
        buffer.edit(0, len(buffer.value), text)
        return store.last_signal if store.counter != before else None

    async def trigger(self, body: str | None = None) -> dict[str, Any]:
        """Start a manual run of the flow.

        Pending edits are written first so the run uses what the user sees.
        """
        store = self._require_store()
        if self.writer is not None:
            await self.writer.flush(store.flow_id)
        result = await self.client.trigger_flow(store.flow_id, body)
        logger.info("flow_triggered", flow_id=store.flow_id)
        return result

    async def close(self) -> None:
        """Flush pending writes and stop following the flow."""
        store = self.store
        if store is None:
            return
        if self.writer is not None:
            await self.writer.flush(store.flow_id)
        if self.monitor is not None:
            await self.monitor.stop()
            self.monitor = None
        self.graph.detach()
        self.text.detach()
        self.bus.unsubscribe(store.flow_id, self._on_signal)
        self.bus.close_flow(store.flow_id)
        self.store = None
        logger.info("workspace_closed", flow_id=store.flow_id)

    def snapshot(self) -> WorkspaceSnapshot:
        store = self._require_store()
        signal = store.last_signal
        return WorkspaceSnapshot(
            flow=store.get(),
            counter=store.counter,
            source=signal.source.value if signal is not None else UpdateSource.INIT.value,
            text=self.text.get_text(),
            parse_error=self.text.parse_error,
            validation_errors=self.validation_errors,
            node_run_status=dict(self.monitor.node_status) if self.monitor is not None else {},
        )

    def _on_signal(self, signal: UpdateSignal, flow: Flow) -> None:
        self.validation_errors = validate_flow(flow.nodes)
        self.graph.set_validation_errors(self.validation_errors)
