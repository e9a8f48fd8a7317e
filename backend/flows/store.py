"""Canonical flow store.

The store holds the single authoritative in-memory copy of one flow. The
graph view, the text view and server reloads all change the flow through
``apply``/``load``; each mutation publishes exactly one ``UpdateSignal`` on
the bus and, for edits made in a view, schedules a debounced write to the
remote server.
"""

import structlog

from errors import ConsistencyError
from events.bus import SignalBus
from events.types import UpdateSignal, UpdateSource
from flows.persistence import DebouncedWriter
from flows.validation import check_flow
from models.schemas import Flow, FlowPatch

logger = structlog.get_logger(__name__)

# Edits from these views are written back to the server
_PERSISTED_SOURCES = frozenset({UpdateSource.CANVAS, UpdateSource.EDITOR})


class FlowStore:
    """Versioned, observable holder of one flow.

    Counters continue from the last counter the bus published for the flow,
    so closing and re-opening a flow never repeats a counter.

    Attributes:
        bus: Bus the store publishes its signals on.
        writer: Debounced writer for persistence, or None for a detached store.
        last_signal: The most recent signal produced by this store.
    """

    def __init__(
        self,
        flow: Flow,
        bus: SignalBus,
        writer: DebouncedWriter | None = None,
    ) -> None:
        self._flow = flow.model_copy(deep=True)
        self.bus = bus
        self.writer = writer
        self._counter = bus.last_counter(flow.id)
        self.last_signal: UpdateSignal | None = None

    @property
    def flow_id(self) -> str:
        return self._flow.id

    @property
    def counter(self) -> int:
        """Counter of the last signal published by this store."""
        return self._counter

    def get(self) -> Flow:
        """Return a copy of the canonical flow."""
        return self._flow.model_copy(deep=True)

    def load(self, flow: Flow, source: UpdateSource = UpdateSource.INIT) -> UpdateSignal:
        """Replace the canonical flow wholesale.

        Used when a flow is first opened (``init``) and when the server copy
        is reloaded (``server``). Neither schedules a write.

        Raises:
            ConsistencyError: If the flow id differs or the flow is invalid.
        """
        if flow.id != self.flow_id:
            raise ConsistencyError([f"cannot load flow {flow.id!r} into store for {self.flow_id!r}"])
        check_flow(flow.nodes, flow.edges)
        version = max(self._flow.version, flow.version) + 1
        self._flow = flow.model_copy(update={"version": version}, deep=True)
        return self._publish(source)

    def apply(self, patch: FlowPatch, source: UpdateSource) -> UpdateSignal:
        """Apply a partial update produced by a view.

        The candidate flow is validated before anything changes; a rejected
        patch leaves the store, the counter and the bus untouched.

        Args:
            patch: Fields to replace.
            source: The view that produced the patch.

        Returns:
            The signal published for this mutation.

        Raises:
            ConsistencyError: If the patched flow would break an invariant.
        """
        changes = patch.changes()
        candidate = self._flow.model_copy(update=changes, deep=True)
        try:
            check_flow(candidate.nodes, candidate.edges)
        except ConsistencyError as e:
            logger.warning(
                "flow_patch_rejected",
                flow_id=self.flow_id,
                source=source.value,
                issues=e.issues,
            )
            raise

        # model_copy(update=...) skips validation; re-validate nested models
        candidate = Flow.model_validate(candidate.model_dump())
        candidate.version = self._flow.version + 1
        self._flow = candidate
        signal = self._publish(source)

        if self.writer is not None and source in _PERSISTED_SOURCES:
            self.writer.schedule(self.flow_id, FlowPatch.from_flow(self._flow))
        return signal

    def _publish(self, source: UpdateSource) -> UpdateSignal:
        self._counter = max(self._counter, self.bus.last_counter(self.flow_id)) + 1
        signal = UpdateSignal(flow_id=self.flow_id, counter=self._counter, source=source)
        self.last_signal = signal
        logger.debug(
            "flow_updated",
            flow_id=self.flow_id,
            counter=signal.counter,
            source=source.value,
            version=self._flow.version,
        )
        self.bus.publish(signal, self.get())
        return signal
