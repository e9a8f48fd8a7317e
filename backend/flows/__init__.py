"""Canonical flow synchronization.

Key Components:
    - FlowStore: the single authoritative copy of a flow
    - DebouncedWriter: collapsed, serialized persistence to the server
    - GraphAdapter / TextAdapter: the two editable views of a flow
    - RunMonitor: live run events and per-node run status
    - FlowWorkspace: all of the above wired together for one open flow
"""

from flows.graph_adapter import GraphAdapter, GraphEdge, GraphNode, executor_label
from flows.persistence import DebouncedWriter
from flows.run_monitor import RunMonitor
from flows.store import FlowStore
from flows.text_adapter import TextAdapter, TextBuffer, serialize_flow
from flows.validation import is_connection_allowed, validate_flow, validate_node
from flows.workspace import FlowWorkspace

__all__ = [
    "FlowStore",
    "DebouncedWriter",
    "GraphAdapter",
    "GraphNode",
    "GraphEdge",
    "executor_label",
    "TextAdapter",
    "TextBuffer",
    "serialize_flow",
    "RunMonitor",
    "FlowWorkspace",
    "is_connection_allowed",
    "validate_flow",
    "validate_node",
]
