"""HTTP API routes for the Flow Studio local service.

This module defines the endpoints for flows, open flow workspaces, agent
session pools, transcripts, the log console and health checks. Live updates
are pushed over WebSocket in websocket.py.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from config import settings
from errors import (
    ApiError,
    ConsistencyError,
    NotFoundError,
    ServerUnreachableError,
    SessionBusyError,
    SessionLimitError,
    StudioError,
    user_message,
)
from flows.workspace import FlowWorkspace
from log_buffer import get_log_buffer
from models.schemas import (
    AddNodeRequest,
    ChatRequest,
    ConnectRequest,
    CreateFlowRequest,
    FlowSummary,
    HealthResponse,
    LogsResponse,
    NodeTypeSchema,
    RunEvent,
    SessionInfo,
    SessionPoolResponse,
    TextEditRequest,
    TranscriptResponse,
    UpdateFlowRequest,
    UpdateNodeRequest,
    WorkspaceSnapshot,
)

if TYPE_CHECKING:
    from sessions.registry import SessionRegistry
    from studio import Studio

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _http_error(exc: StudioError) -> HTTPException:
    """Translate a studio error into the matching HTTP error."""
    if isinstance(exc, ServerUnreachableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, SessionBusyError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, SessionLimitError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(exc, ConsistencyError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, ApiError) and exc.status_code == status.HTTP_400_BAD_REQUEST:
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=user_message(exc))


def _pool_response(registry: SessionRegistry) -> SessionPoolResponse:
    return SessionPoolResponse(
        agent_id=registry.agent_id,
        active_session=registry.active_session_id,
        sessions=list(registry.sessions),
        interactive_count=registry.interactive_count,
        pool_limit=registry.pool_limit,
        at_limit=registry.at_limit,
        reachable=registry.last_error is None,
    )


# Studio dependency (set during application startup)
_studio: Studio | None = None


def set_studio(studio: Studio) -> None:
    """Set the studio instance for the routes.

    This should be called during application startup.

    Args:
        studio: The Studio instance to use for all routes.
    """
    global _studio
    _studio = studio
    logger.info("studio_configured")


def get_studio() -> Studio:
    """Get the studio instance.

    Raises:
        RuntimeError: If the studio has not been configured.
    """
    if _studio is None:
        logger.error("studio_not_configured")
        raise RuntimeError("Studio not configured. Call set_studio() during startup.")
    return _studio


def _open_workspace(flow_id: str) -> FlowWorkspace:
    workspace = get_studio().get_workspace(flow_id)
    if workspace is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Flow {flow_id} is not open",
        )
    return workspace


# -----------------------------------------------------------------------------
# Health and logs
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Report service health and whether the flow server is reachable.",
)
async def health_check() -> HealthResponse:
    studio = get_studio()
    reachable = await studio.client.check_connection()
    return HealthResponse(
        status="healthy",
        server_reachable=reachable,
        server_url=studio.client.base_url,
    )


@router.get("/api/logs", response_model=LogsResponse, summary="Recent log events")
async def get_logs(
    level: Annotated[str | None, Query(description="Only entries of this level")] = None,
) -> LogsResponse:
    buffer = get_log_buffer()
    return LogsResponse(entries=buffer.entries(level), error_count=buffer.error_count)


@router.delete("/api/logs", status_code=status.HTTP_204_NO_CONTENT, summary="Clear the log console")
async def clear_logs() -> None:
    get_log_buffer().clear()


# -----------------------------------------------------------------------------
# Flows on the server
# -----------------------------------------------------------------------------


@router.get("/api/flows", response_model=list[FlowSummary], summary="List flows")
async def list_flows() -> list[FlowSummary]:
    try:
        return await get_studio().client.list_flows()
    except StudioError as e:
        raise _http_error(e) from e


@router.post(
    "/api/flows",
    status_code=status.HTTP_201_CREATED,
    summary="Create a flow",
)
async def create_flow(request: CreateFlowRequest) -> dict[str, str]:
    try:
        flow_id = await get_studio().client.create_flow(request.name, request.description)
    except StudioError as e:
        raise _http_error(e) from e
    logger.info("flow_created", flow_id=flow_id, name=request.name)
    return {"id": flow_id}


@router.delete(
    "/api/flows/{flow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a flow",
)
async def delete_flow(flow_id: Annotated[str, Path(description="The flow ID")]) -> None:
    studio = get_studio()
    await studio.close_flow(flow_id)
    try:
        await studio.client.delete_flow(flow_id)
    except StudioError as e:
        raise _http_error(e) from e


@router.get("/api/node-types", response_model=list[NodeTypeSchema], summary="List node types")
async def list_node_types() -> list[NodeTypeSchema]:
    try:
        return await get_studio().client.get_node_types()
    except StudioError as e:
        raise _http_error(e) from e


# -----------------------------------------------------------------------------
# Open flow workspaces
# -----------------------------------------------------------------------------


@router.post(
    "/api/workspace/{flow_id}",
    response_model=WorkspaceSnapshot,
    summary="Open a flow",
    description="Fetch a flow from the server and project it into the graph and text views.",
)
async def open_workspace(
    flow_id: Annotated[str, Path(description="The flow ID")],
    follow_runs: Annotated[bool, Query(description="Follow live run events")] = True,
) -> WorkspaceSnapshot:
    try:
        workspace = await get_studio().open_flow(flow_id, follow_runs=follow_runs)
    except StudioError as e:
        raise _http_error(e) from e
    return workspace.snapshot()


@router.get("/api/workspace/{flow_id}", response_model=WorkspaceSnapshot, summary="Workspace snapshot")
async def get_workspace(flow_id: Annotated[str, Path(description="The flow ID")]) -> WorkspaceSnapshot:
    return _open_workspace(flow_id).snapshot()


@router.patch("/api/workspace/{flow_id}", response_model=WorkspaceSnapshot, summary="Rename or toggle a flow")
async def update_workspace(
    flow_id: Annotated[str, Path(description="The flow ID")],
    request: UpdateFlowRequest,
) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    if request.name is not None:
        workspace.rename(request.name)
    if request.enabled is not None:
        workspace.set_enabled(request.enabled)
    return workspace.snapshot()


@router.delete(
    "/api/workspace/{flow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Close a flow",
    description="Flush pending edits to the server and stop following the flow.",
)
async def close_workspace(flow_id: Annotated[str, Path(description="The flow ID")]) -> None:
    if not await get_studio().close_flow(flow_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Flow {flow_id} is not open")


@router.put("/api/workspace/{flow_id}/text", response_model=WorkspaceSnapshot, summary="Edit the flow as text")
async def edit_workspace_text(
    flow_id: Annotated[str, Path(description="The flow ID")],
    request: TextEditRequest,
) -> WorkspaceSnapshot:
    """Apply an editor buffer. Invalid text is reported in ``parse_error``, not as an error."""
    workspace = _open_workspace(flow_id)
    workspace.edit_text(request.text)
    return workspace.snapshot()


@router.post(
    "/api/workspace/{flow_id}/nodes",
    response_model=WorkspaceSnapshot,
    status_code=status.HTTP_201_CREATED,
    summary="Add a node",
)
async def add_node(
    flow_id: Annotated[str, Path(description="The flow ID")],
    request: AddNodeRequest,
) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    workspace.graph.add_at(request.node_type, request.kind, request.label, request.position)
    return workspace.snapshot()


@router.put(
    "/api/workspace/{flow_id}/nodes/{node_id}",
    response_model=WorkspaceSnapshot,
    summary="Update a node",
)
async def update_node(
    flow_id: Annotated[str, Path(description="The flow ID")],
    node_id: Annotated[str, Path(description="The node ID")],
    request: UpdateNodeRequest,
) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    if workspace.graph.get_node(node_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Node {node_id} not found")
    if request.label is not None or request.config is not None:
        workspace.graph.update_node_data(node_id, label=request.label, config=request.config)
    if request.position is not None:
        workspace.graph.move_node(node_id, request.position)
    return workspace.snapshot()


@router.delete(
    "/api/workspace/{flow_id}/nodes/{node_id}",
    response_model=WorkspaceSnapshot,
    summary="Delete a node and its edges",
)
async def delete_node(
    flow_id: Annotated[str, Path(description="The flow ID")],
    node_id: Annotated[str, Path(description="The node ID")],
) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    if not workspace.graph.delete_node(node_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Node {node_id} not found")
    return workspace.snapshot()


@router.post(
    "/api/workspace/{flow_id}/edges",
    response_model=WorkspaceSnapshot,
    status_code=status.HTTP_201_CREATED,
    summary="Connect two nodes",
    description="Rejected with 422 when the node types may not be connected.",
)
async def connect_nodes(
    flow_id: Annotated[str, Path(description="The flow ID")],
    request: ConnectRequest,
) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    if workspace.graph.connect(request.source, request.target) is None:
        detail = workspace.graph.warnings[-1] if workspace.graph.warnings else "Connection rejected"
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)
    return workspace.snapshot()


@router.delete(
    "/api/workspace/{flow_id}/edges/{edge_id}",
    response_model=WorkspaceSnapshot,
    summary="Delete an edge",
)
async def delete_edge(
    flow_id: Annotated[str, Path(description="The flow ID")],
    edge_id: Annotated[str, Path(description="The edge ID")],
) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    if not workspace.graph.delete_edge(edge_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Edge {edge_id} not found")
    return workspace.snapshot()


@router.post("/api/workspace/{flow_id}/refresh", response_model=WorkspaceSnapshot, summary="Reload from server")
async def refresh_workspace(flow_id: Annotated[str, Path(description="The flow ID")]) -> WorkspaceSnapshot:
    workspace = _open_workspace(flow_id)
    try:
        await workspace.refresh()
    except StudioError as e:
        raise _http_error(e) from e
    return workspace.snapshot()


@router.post("/api/workspace/{flow_id}/trigger", summary="Run a flow now")
async def trigger_workspace(flow_id: Annotated[str, Path(description="The flow ID")]) -> dict[str, Any]:
    workspace = _open_workspace(flow_id)
    try:
        return await workspace.trigger()
    except StudioError as e:
        raise _http_error(e) from e


@router.get(
    "/api/workspace/{flow_id}/validation",
    summary="Node configuration problems",
)
async def get_validation(flow_id: Annotated[str, Path(description="The flow ID")]) -> dict[str, list[str]]:
    return _open_workspace(flow_id).validation_errors


@router.get("/api/workspace/{flow_id}/runs", response_model=list[RunEvent], summary="Recent run events")
async def get_run_events(flow_id: Annotated[str, Path(description="The flow ID")]) -> list[RunEvent]:
    workspace = _open_workspace(flow_id)
    return list(workspace.monitor.events) if workspace.monitor is not None else []


# -----------------------------------------------------------------------------
# Agent sessions
# -----------------------------------------------------------------------------


@router.get(
    "/api/agents/{agent_id}/sessions",
    response_model=SessionPoolResponse,
    summary="List an agent's sessions",
    description="Refresh the pool from the server; a stale list is returned if it is unreachable.",
)
async def list_sessions(agent_id: Annotated[str, Path(description="The agent ID")]) -> SessionPoolResponse:
    registry = get_studio().registry(agent_id)
    try:
        await registry.ensure_session()
    except StudioError as e:
        raise _http_error(e) from e
    if settings.session_refresh_interval_seconds > 0:
        registry.start_polling()
    return _pool_response(registry)


@router.post(
    "/api/agents/{agent_id}/sessions",
    response_model=SessionInfo,
    status_code=status.HTTP_201_CREATED,
    summary="Create a session",
    description="Fails with 429 when the interactive session pool is full.",
)
async def new_session(agent_id: Annotated[str, Path(description="The agent ID")]) -> SessionInfo:
    try:
        return await get_studio().registry(agent_id).new_session()
    except StudioError as e:
        raise _http_error(e) from e


@router.delete(
    "/api/agents/{agent_id}/sessions/{session_id}",
    response_model=SessionPoolResponse,
    summary="Delete a session",
)
async def delete_session(
    agent_id: Annotated[str, Path(description="The agent ID")],
    session_id: Annotated[str, Path(description="The session ID")],
) -> SessionPoolResponse:
    studio = get_studio()
    try:
        await studio.delete_session(agent_id, session_id)
    except StudioError as e:
        raise _http_error(e) from e
    return _pool_response(studio.registry(agent_id))


@router.post(
    "/api/agents/{agent_id}/sessions/{session_id}/select",
    response_model=SessionPoolResponse,
    summary="Make a session active",
)
async def select_session(
    agent_id: Annotated[str, Path(description="The agent ID")],
    session_id: Annotated[str, Path(description="The session ID")],
) -> SessionPoolResponse:
    registry = get_studio().registry(agent_id)
    try:
        registry.select(session_id)
    except StudioError as e:
        raise _http_error(e) from e
    return _pool_response(registry)


@router.post(
    "/api/agents/{agent_id}/sessions/{session_id}/kill",
    response_model=SessionPoolResponse,
    summary="Force-kill a stuck session",
)
async def kill_session(
    agent_id: Annotated[str, Path(description="The agent ID")],
    session_id: Annotated[str, Path(description="The session ID")],
) -> SessionPoolResponse:
    registry = get_studio().registry(agent_id)
    try:
        await registry.kill_session(session_id)
    except StudioError as e:
        raise _http_error(e) from e
    return _pool_response(registry)


@router.get(
    "/api/agents/{agent_id}/sessions/{session_id}/transcript",
    response_model=TranscriptResponse,
    summary="Session transcript",
    description="Open the conversation if needed; a running turn is resumed.",
)
async def get_transcript(
    agent_id: Annotated[str, Path(description="The agent ID")],
    session_id: Annotated[str, Path(description="The session ID")],
) -> TranscriptResponse:
    conversation = await get_studio().conversation(agent_id, session_id)
    return conversation.snapshot()


@router.post(
    "/api/agents/{agent_id}/sessions/{session_id}/messages",
    response_model=TranscriptResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a message",
    description="Start a turn; follow its progress over the session WebSocket.",
)
async def send_message(
    agent_id: Annotated[str, Path(description="The agent ID")],
    session_id: Annotated[str, Path(description="The session ID")],
    request: ChatRequest,
) -> TranscriptResponse:
    conversation = await get_studio().conversation(agent_id, session_id)
    await conversation.send(request.prompt)
    return conversation.snapshot()


@router.post(
    "/api/agents/{agent_id}/sessions/{session_id}/cancel",
    response_model=TranscriptResponse,
    summary="Stop the running turn",
)
async def cancel_message(
    agent_id: Annotated[str, Path(description="The agent ID")],
    session_id: Annotated[str, Path(description="The session ID")],
) -> TranscriptResponse:
    conversation = get_studio().get_conversation(agent_id, session_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} is not open",
        )
    await conversation.cancel()
    return conversation.snapshot()
