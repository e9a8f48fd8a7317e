"""Graph projection of the canonical flow.

The canvas works on a mutable node/edge model that carries more than the
canonical flow does: measured node sizes, selection, run highlights and
validation errors. ``GraphAdapter`` keeps that model in step with the store:

- canvas operations (connect, add, update, move, delete) are sent to the
  store as patches tagged ``canvas``
- signals from other views are spread-merged into the existing nodes so the
  adapter-local fields survive

The adapter never touches the text view; everything goes through the store
and the signal bus.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from errors import ConsistencyError
from events.types import UpdateSignal, UpdateSource
from flows.store import FlowStore
from flows.validation import is_connection_allowed
from models.schemas import Flow, FlowEdge, FlowNode, FlowPatch, NodeType, Position

logger = structlog.get_logger(__name__)

DEFAULT_EXECUTOR_CONFIG: dict[str, Any] = {"agent_id": ""}


@dataclass
class GraphNode:
    """A node as the canvas sees it.

    ``position``, ``label``, ``kind`` and ``config`` mirror the canonical
    node. The remaining fields belong to the canvas and are never written to
    the store.
    """

    id: str
    node_type: NodeType
    kind: str
    label: str
    config: dict[str, Any]
    position: Position
    measured: tuple[float, float] | None = None
    selected: bool = False
    run_status: str | None = None
    validation_errors: list[str] = field(default_factory=list)

    @classmethod
    def from_flow_node(cls, node: FlowNode) -> "GraphNode":
        return cls(
            id=node.id,
            node_type=node.node_type,
            kind=node.kind,
            label=node.label,
            config=dict(node.config),
            position=node.position.model_copy(),
        )

    def to_flow_node(self) -> FlowNode:
        return FlowNode(
            id=self.id,
            node_type=self.node_type,
            kind=self.kind,
            label=self.label,
            config=dict(self.config),
            position=self.position.model_copy(),
        )


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    animated: bool = True

    @classmethod
    def from_flow_edge(cls, edge: FlowEdge) -> "GraphEdge":
        return cls(id=edge.id, source=edge.source, target=edge.target)

    def to_flow_edge(self) -> FlowEdge:
        return FlowEdge(id=self.id, source=self.source, target=self.target)


def executor_label(existing_executors: int) -> str:
    """Display name for the next executor, derived from how many exist."""
    return f"Executor - E{existing_executors + 1:02d}"


class GraphAdapter:
    """Mutable node/edge projection of one flow.

    Attributes:
        origin: Tag this adapter's edits carry.
        flow_id: Id of the flow currently projected, or None before seeding.
        last_applied: Counter of the last signal this adapter accounted for.
        warnings: Rejected canvas operations, newest last.
    """

    origin = UpdateSource.CANVAS

    def __init__(self, store: FlowStore | None = None) -> None:
        self.nodes: list[GraphNode] = []
        self.edges: list[GraphEdge] = []
        self.flow_id: str | None = None
        self.last_applied = 0
        self.warnings: list[str] = []
        self.store: FlowStore | None = None
        if store is not None:
            self.attach(store)

    # -----------------------------------------------------------------
    # Store wiring
    # -----------------------------------------------------------------

    def attach(self, store: FlowStore) -> None:
        """Project a store's flow and follow its signals."""
        if self.store is not None:
            self.detach()
        self.store = store
        self.seed(store.get())
        self.last_applied = store.counter
        store.bus.subscribe(store.flow_id, self.on_signal)

    def detach(self) -> None:
        if self.store is None:
            return
        self.store.bus.unsubscribe(self.store.flow_id, self.on_signal)
        self.store = None

    def on_signal(self, signal: UpdateSignal, flow: Flow) -> None:
        """Apply a bus signal unless it is stale, foreign or our own echo."""
        if signal.flow_id != self.flow_id:
            return
        if signal.counter <= self.last_applied:
            logger.debug(
                "graph_signal_stale",
                flow_id=signal.flow_id,
                counter=signal.counter,
                last_applied=self.last_applied,
            )
            return
        self.last_applied = signal.counter
        if signal.source == self.origin:
            return
        self.merge_from(flow.nodes, flow.edges)

    # -----------------------------------------------------------------
    # Projection
    # -----------------------------------------------------------------

    def seed(self, flow: Flow) -> None:
        """Replace the graph wholesale. Only used when the flow identity changes."""
        self.flow_id = flow.id
        self.nodes = [GraphNode.from_flow_node(n) for n in flow.nodes]
        self.edges = [GraphEdge.from_flow_edge(e) for e in flow.edges]
        logger.debug(
            "graph_seeded",
            flow_id=flow.id,
            node_count=len(self.nodes),
            edge_count=len(self.edges),
        )

    def merge_from(self, nodes: list[FlowNode], edges: list[FlowEdge]) -> None:
        """Spread-merge canonical nodes into the graph.

        Existing nodes keep their identity and adapter-local fields; only
        position, label, kind and config are copied over. Nodes missing from
        ``nodes`` are dropped and new ones are created. Edges carry no local
        state and are replaced.
        """
        current = {n.id: n for n in self.nodes}
        merged: list[GraphNode] = []
        for node in nodes:
            existing = current.get(node.id)
            if existing is None:
                merged.append(GraphNode.from_flow_node(node))
                continue
            existing.position = node.position.model_copy()
            existing.label = node.label
            existing.kind = node.kind
            existing.config = dict(node.config)
            merged.append(existing)
        self.nodes = merged
        self.edges = [GraphEdge.from_flow_edge(e) for e in edges]

    def get_node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    # -----------------------------------------------------------------
    # Canvas operations
    # -----------------------------------------------------------------

    def connect(self, source_id: str, target_id: str) -> GraphEdge | None:
        """Connect two nodes if the adjacency table allows it.

        Returns:
            The new (or already existing) edge, or None if rejected.
        """
        source = self.get_node(source_id)
        target = self.get_node(target_id)
        if source is None or target is None:
            self._warn(
                "connection_rejected",
                f"Cannot connect {source_id} -> {target_id}: node not found",
                source_id=source_id,
                target_id=target_id,
            )
            return None
        if not is_connection_allowed(source.node_type, target.node_type):
            self._warn(
                "connection_rejected",
                f"Cannot connect {source.node_type.value} -> {target.node_type.value}",
                source_type=source.node_type.value,
                target_type=target.node_type.value,
            )
            return None

        for edge in self.edges:
            if edge.source == source_id and edge.target == target_id:
                return edge

        edge = GraphEdge(id=f"e-{uuid.uuid4().hex[:12]}", source=source_id, target=target_id)
        if not self._commit(self.nodes, [*self.edges, edge]):
            return None
        return edge

    def add_at(
        self,
        node_type: NodeType,
        kind: str,
        label: str,
        position: Position,
    ) -> GraphNode:
        """Create a node at a canvas position.

        Executors are named after the number of executors already present
        and start with an empty agent binding.
        """
        config: dict[str, Any] = {}
        if node_type == NodeType.EXECUTOR:
            count = sum(1 for n in self.nodes if n.node_type == NodeType.EXECUTOR)
            label = executor_label(count)
            config = dict(DEFAULT_EXECUTOR_CONFIG)

        node = GraphNode(
            id=str(uuid.uuid4()),
            node_type=node_type,
            kind=kind,
            label=label,
            config=config,
            position=position.model_copy(),
        )
        self._commit([*self.nodes, node], self.edges)
        logger.info("graph_node_added", node_id=node.id, node_type=node_type.value, kind=kind)
        return node

    def update_node_data(
        self,
        node_id: str,
        *,
        label: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> GraphNode | None:
        """Change a node's label and/or config."""
        node = self.get_node(node_id)
        if node is None:
            logger.warning("graph_node_not_found", node_id=node_id)
            return None
        changes: dict[str, Any] = {}
        if label is not None:
            changes["label"] = label
        if config is not None:
            changes["config"] = dict(config)
        updated = replace(node, **changes)
        nodes = [updated if n.id == node_id else n for n in self.nodes]
        if not self._commit(nodes, self.edges):
            return None
        return updated

    def move_node(self, node_id: str, position: Position) -> GraphNode | None:
        """Record the final position of a dragged node."""
        node = self.get_node(node_id)
        if node is None:
            logger.warning("graph_node_not_found", node_id=node_id)
            return None
        updated = replace(node, position=position.model_copy())
        nodes = [updated if n.id == node_id else n for n in self.nodes]
        if not self._commit(nodes, self.edges):
            return None
        return updated

    def delete_node(self, node_id: str) -> bool:
        """Remove a node together with every edge touching it."""
        if self.get_node(node_id) is None:
            return False
        nodes = [n for n in self.nodes if n.id != node_id]
        edges = [e for e in self.edges if e.source != node_id and e.target != node_id]
        return self._commit(nodes, edges)

    def delete_edge(self, edge_id: str) -> bool:
        edges = [e for e in self.edges if e.id != edge_id]
        if len(edges) == len(self.edges):
            return False
        return self._commit(self.nodes, edges)

    # -----------------------------------------------------------------
    # Adapter-local data
    # -----------------------------------------------------------------

    def set_measured(self, node_id: str, width: float, height: float) -> None:
        node = self.get_node(node_id)
        if node is not None:
            node.measured = (width, height)

    def set_run_status(self, statuses: dict[str, str]) -> None:
        """Highlight nodes by run status; nodes not listed are cleared."""
        for node in self.nodes:
            node.run_status = statuses.get(node.id)

    def set_validation_errors(self, errors: dict[str, list[str]]) -> None:
        for node in self.nodes:
            node.validation_errors = list(errors.get(node.id, []))

    def to_flow_parts(self) -> tuple[list[FlowNode], list[FlowEdge]]:
        """Canonical view of the graph: nodes and edges without local fields."""
        return (
            [n.to_flow_node() for n in self.nodes],
            [e.to_flow_edge() for e in self.edges],
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _commit(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> bool:
        """Adopt the new graph locally, then send it to the store.

        The new nodes are in place while the store publishes, so listeners
        that decorate nodes (validation errors) reach the current objects.
        A rejected patch restores the previous graph.
        """
        previous = (self.nodes, self.edges)
        self.nodes = list(nodes)
        self.edges = list(edges)
        if self.store is None:
            return True
        patch = FlowPatch(
            nodes=[n.to_flow_node() for n in nodes],
            edges=[e.to_flow_edge() for e in edges],
        )
        try:
            self.store.apply(patch, self.origin)
        except ConsistencyError as e:
            self.nodes, self.edges = previous
            self._warn("graph_edit_rejected", str(e), issues=e.issues)
            return False
        return True

    def _warn(self, event: str, message: str, **context: Any) -> None:
        self.warnings.append(message)
        logger.warning(event, flow_id=self.flow_id, message=message, **context)
