"""Structural and configuration checks for flows.

Two layers of validation live here:

* Structural invariants that every canonical flow must satisfy (unique node
  ids, edges pointing at existing nodes, edges allowed by the adjacency
  table). A patch that breaks one is rejected with ``ConsistencyError``.
* Per-kind configuration rules (a cron trigger needs a schedule, a Slack sink
  needs a webhook or bot token, ...). These never block an edit; they are
  surfaced as validation errors on the affected nodes.
"""

import re
from collections.abc import Iterable
from typing import Any

from errors import ConsistencyError
from models.schemas import FlowEdge, FlowNode, NodeType

# Allowed (upstream -> downstream) node type pairs
ADJACENCY: dict[NodeType, frozenset[NodeType]] = {
    NodeType.TRIGGER: frozenset({NodeType.SOURCE, NodeType.EXECUTOR}),
    NodeType.SOURCE: frozenset({NodeType.EXECUTOR}),
    NodeType.EXECUTOR: frozenset({NodeType.SINK}),
}

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_connection_allowed(source_type: NodeType, target_type: NodeType) -> bool:
    """Return whether an edge from ``source_type`` to ``target_type`` is valid."""
    return target_type in ADJACENCY.get(source_type, frozenset())


def find_flow_issues(nodes: Iterable[FlowNode], edges: Iterable[FlowEdge]) -> list[str]:
    """List every structural problem of a node/edge set.

    Args:
        nodes: Candidate nodes.
        edges: Candidate edges.

    Returns:
        Human-readable issue descriptions; empty when the flow is consistent.
    """
    issues: list[str] = []
    types: dict[str, NodeType] = {}
    for node in nodes:
        if node.id in types:
            issues.append(f"duplicate node id {node.id!r}")
        types[node.id] = node.node_type

    edge_ids: set[str] = set()
    for edge in edges:
        if edge.id in edge_ids:
            issues.append(f"duplicate edge id {edge.id!r}")
        edge_ids.add(edge.id)

        source_type = types.get(edge.source)
        target_type = types.get(edge.target)
        if source_type is None:
            issues.append(f"edge {edge.id!r} references missing source {edge.source!r}")
        if target_type is None:
            issues.append(f"edge {edge.id!r} references missing target {edge.target!r}")
        if source_type is None or target_type is None:
            continue
        if not is_connection_allowed(source_type, target_type):
            issues.append(
                f"edge {edge.id!r} connects {source_type.value} -> {target_type.value}, "
                "which is not allowed"
            )
    return issues


def check_flow(nodes: Iterable[FlowNode], edges: Iterable[FlowEdge]) -> None:
    """Raise ``ConsistencyError`` if the node/edge set breaks an invariant."""
    issues = find_flow_issues(list(nodes), list(edges))
    if issues:
        raise ConsistencyError(issues)


# =============================================================================
# Node configuration
# =============================================================================


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _empty_list(value: Any) -> bool:
    return not isinstance(value, list) or len(value) == 0


def _is_valid_cron(expr: str) -> bool:
    return 5 <= len(expr.split()) <= 6


def validate_node(node: FlowNode) -> list[str]:
    """Check a node's configuration against the rules of its kind.

    Unknown kinds have no rules.

    Args:
        node: The node to check.

    Returns:
        Error messages, empty when the configuration is complete.
    """
    errors: list[str] = []
    cfg = node.config

    match node.kind:
        case "cron":
            schedule = cfg.get("schedule")
            if _blank(schedule):
                errors.append("Schedule is required")
            elif not _is_valid_cron(schedule):
                errors.append("Schedule must be a valid cron expression (5-6 tokens)")
        case "rss":
            if _blank(cfg.get("url")):
                errors.append("Feed URL is required")
        case "web-scrape":
            if _blank(cfg.get("url")):
                errors.append("Page URL is required")
        case "web-scraper":
            if _blank(cfg.get("url")):
                errors.append("Page URL is required")
            if _blank(cfg.get("items_selector")):
                errors.append("Items selector is required")
        case "github-merged-prs":
            if _empty_list(cfg.get("repos")):
                errors.append("Repos is required")
        case "keyword":
            if _empty_list(cfg.get("keywords")):
                errors.append("Keywords is required")
        case "claude-code":
            if _blank(cfg.get("prompt")):
                errors.append("Prompt is required")
        case "slack":
            if _blank(cfg.get("webhook_url_env")) and _blank(cfg.get("bot_token_env")):
                errors.append("Webhook URL or Bot Token is required")
        case "notion":
            if _blank(cfg.get("token_env")):
                errors.append("Token env is required")
            database_id = cfg.get("database_id")
            if _blank(database_id):
                errors.append("Database ID is required")
            elif not _UUID_RE.match(database_id.strip()):
                errors.append(
                    "Database ID must be a valid UUID "
                    "(e.g. 30aac5ee-1a2b-3c4d-5e6f-1234567890ab)"
                )

    return errors


def validate_flow(nodes: Iterable[FlowNode]) -> dict[str, list[str]]:
    """Map node id to configuration errors, omitting nodes without errors."""
    result: dict[str, list[str]] = {}
    for node in nodes:
        errors = validate_node(node)
        if errors:
            result[node.id] = errors
    return result
