"""Models module for Pydantic schemas and the transcript cache.

This module exposes the flow and session models shared across the studio.
"""

from models.schemas import (
    AddNodeRequest,
    ChatRequest,
    ConnectRequest,
    CreateFlowRequest,
    DeleteSessionResponse,
    Flow,
    FlowEdge,
    FlowNode,
    FlowPatch,
    FlowRun,
    FlowRunMeta,
    FlowSummary,
    HealthResponse,
    LogsResponse,
    NewSessionResponse,
    NodeRun,
    NodeType,
    NodeTypeSchema,
    Position,
    RunEvent,
    RunStatus,
    SessionHealth,
    SessionInfo,
    SessionKind,
    SessionList,
    SessionLog,
    SessionPoolResponse,
    SessionStatus,
    TextEditRequest,
    TranscriptResponse,
    UpdateFlowRequest,
    UpdateNodeRequest,
    WorkspaceSnapshot,
)

__all__ = [
    "AddNodeRequest",
    "ChatRequest",
    "ConnectRequest",
    "CreateFlowRequest",
    "DeleteSessionResponse",
    "Flow",
    "FlowEdge",
    "FlowNode",
    "FlowPatch",
    "FlowRun",
    "FlowRunMeta",
    "FlowSummary",
    "HealthResponse",
    "LogsResponse",
    "NewSessionResponse",
    "NodeRun",
    "NodeType",
    "NodeTypeSchema",
    "Position",
    "RunEvent",
    "RunStatus",
    "SessionHealth",
    "SessionInfo",
    "SessionKind",
    "SessionList",
    "SessionLog",
    "SessionPoolResponse",
    "SessionStatus",
    "TextEditRequest",
    "TranscriptResponse",
    "UpdateFlowRequest",
    "UpdateNodeRequest",
    "WorkspaceSnapshot",
]
