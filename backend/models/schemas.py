"""Pydantic schemas for the remote flow server contract and the local API.

This module defines the Flow data model, the session and run models returned
by the remote server, and the request/response models of the local service.
All models use Pydantic v2.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class NodeType(StrEnum):
    """Role a node plays in a flow pipeline."""

    TRIGGER = "trigger"
    SOURCE = "source"
    FILTER = "filter"
    EXECUTOR = "executor"
    SINK = "sink"


class RunStatus(StrEnum):
    """Status of a flow run or one of its node runs."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SessionKind(StrEnum):
    """Where a session came from."""

    INTERACTIVE = "interactive"
    FLOW_RUN = "flow_run"


class SessionHealth(StrEnum):
    """Tri-state health derived from ``busy`` and ``process_alive``."""

    BUSY = "busy"
    ALIVE = "alive"
    DEAD = "dead"


# =============================================================================
# Flows
# =============================================================================


class Position(BaseModel):
    """Canvas coordinates of a node."""

    x: float = 0.0
    y: float = 0.0


class FlowNode(BaseModel):
    """A single pipeline step."""

    id: str = Field(description="Unique node identifier")
    node_type: NodeType = Field(description="Pipeline role of the node")
    kind: str = Field(
        description="Concrete implementation of the node",
        examples=["cron", "rss", "claude-code", "slack"],
    )
    label: str = Field(default="", description="Display name")
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque node configuration",
    )
    position: Position = Field(default_factory=Position)


class FlowEdge(BaseModel):
    """Directed connection between two nodes."""

    id: str
    source: str = Field(description="Id of the upstream node")
    target: str = Field(description="Id of the downstream node")


class Flow(BaseModel):
    """A persisted pipeline definition."""

    id: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    version: int = Field(default=0, description="Local mutation count")
    created_at: str | None = None
    updated_at: str | None = None


class FlowSummary(BaseModel):
    """Row of the flow list."""

    id: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    node_count: int = 0
    edge_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None


class FlowPatch(BaseModel):
    """Partial update of a flow; only fields that are set are applied."""

    name: str | None = None
    description: str | None = None
    enabled: bool | None = None
    nodes: list[FlowNode] | None = None
    edges: list[FlowEdge] | None = None

    def changes(self) -> dict[str, Any]:
        """Return the fields this patch sets, as model objects."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None
        }

    @classmethod
    def from_flow(cls, flow: Flow) -> "FlowPatch":
        """Build the full-state payload written to the server."""
        return cls(
            name=flow.name,
            description=flow.description,
            enabled=flow.enabled,
            nodes=flow.nodes,
            edges=flow.edges,
        )


class NodeTypeSchema(BaseModel):
    """Node kind advertised by the server."""

    kind: str
    node_type: NodeType
    label: str = ""
    config_schema: dict[str, Any] = Field(default_factory=dict)


class NodeRun(BaseModel):
    node_id: str
    status: RunStatus
    started_at: str | None = None
    finished_at: str | None = None
    output_preview: str | None = None


class FlowRun(BaseModel):
    id: str
    flow_id: str
    status: RunStatus
    started_at: str | None = None
    finished_at: str | None = None
    node_runs: list[NodeRun] = Field(default_factory=list)
    error: str | None = None


class RunEvent(BaseModel):
    """One event of the live run stream."""

    flow_id: str = ""
    run_id: str = ""
    timestamp: str = ""
    node_id: str | None = None
    event_type: str
    message: str = ""


# =============================================================================
# Sessions
# =============================================================================


class FlowRunMeta(BaseModel):
    """Origin of a session spawned by a flow run."""

    flow_id: str
    flow_name: str = ""
    run_id: str = ""
    node_id: str | None = None
    node_label: str | None = None


class SessionInfo(BaseModel):
    """One session in an agent's pool, as reported by the server."""

    session_id: str
    summary: str = ""
    created_at: str = ""
    busy: bool = False
    # Missing from older servers; assume alive rather than report a dead process
    process_alive: bool = True
    message_count: int = 0
    total_cost: float = 0.0
    kind: SessionKind = SessionKind.INTERACTIVE
    flow_run: FlowRunMeta | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def health(self) -> SessionHealth:
        """Derive the tri-state health.

        A busy session whose process is gone is stuck: nothing will ever
        clear its busy flag, so it is reported as dead.
        """
        if self.busy and not self.process_alive:
            return SessionHealth.DEAD
        if self.busy:
            return SessionHealth.BUSY
        return SessionHealth.ALIVE

    @computed_field  # type: ignore[prop-decorator]
    @property
    def needs_force_kill(self) -> bool:
        """Whether the session needs a kill rather than an ordinary stop."""
        return self.health == SessionHealth.DEAD


class SessionList(BaseModel):
    agent_id: str = ""
    active_session: str = ""
    sessions: list[SessionInfo] = Field(default_factory=list)


class NewSessionResponse(BaseModel):
    session_id: str
    created_at: str = ""
    warning: str | None = None


class DeleteSessionResponse(BaseModel):
    deleted: bool = True
    active_session: str = ""


class SessionStatus(BaseModel):
    """Liveness of a single session, used to decide whether to reconnect."""

    busy: bool = False
    process_alive: bool = True


class SessionLog(BaseModel):
    lines: list[str] = Field(default_factory=list)


# =============================================================================
# Local API
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status", examples=["healthy"])
    timestamp: float = Field(default_factory=time.time)
    version: str = Field(default="0.1.0", description="API version")
    server_reachable: bool = Field(
        default=False,
        description="Whether the remote flow server answered its health check",
    )
    server_url: str = ""


class WorkspaceSnapshot(BaseModel):
    """Current canonical state of an open flow as seen by the local service."""

    flow: Flow
    counter: int = Field(description="Counter of the last update signal")
    source: str = Field(description="Origin of the last update signal")
    text: str = Field(description="Serialized text buffer")
    parse_error: str | None = None
    validation_errors: dict[str, list[str]] = Field(default_factory=dict)
    node_run_status: dict[str, str] = Field(default_factory=dict)


class TextEditRequest(BaseModel):
    text: str = Field(description="Full editor buffer after a local edit")


class ConnectRequest(BaseModel):
    source: str = Field(description="Upstream node id")
    target: str = Field(description="Downstream node id")


class AddNodeRequest(BaseModel):
    node_type: NodeType
    kind: str
    label: str = ""
    position: Position = Field(default_factory=Position)


class UpdateNodeRequest(BaseModel):
    label: str | None = None
    config: dict[str, Any] | None = None
    position: Position | None = None


class TranscriptResponse(BaseModel):
    """Transcript of one conversation as held by the local service."""

    session_id: str
    state: str
    is_streaming: bool
    partial: bool = False
    messages: list[dict[str, Any]] = Field(default_factory=list)
    streaming_text: str = ""
    result_meta: dict[str, Any] | None = None


class ChatRequest(BaseModel):
    prompt: str = Field(min_length=1, description="Message sent to the agent")


class CreateFlowRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class UpdateFlowRequest(BaseModel):
    name: str | None = None
    enabled: bool | None = None


class SessionPoolResponse(BaseModel):
    """Session pool of one agent with the client-side limit applied."""

    agent_id: str
    active_session: str | None = None
    sessions: list[SessionInfo] = Field(default_factory=list)
    interactive_count: int = 0
    pool_limit: int
    at_limit: bool = False
    reachable: bool = Field(
        default=True,
        description="False when the last refresh failed and the list may be stale",
    )


class LogsResponse(BaseModel):
    entries: list[dict[str, Any]] = Field(default_factory=list)
    error_count: int = 0
