"""Tests for models/schemas.py -- Pydantic models of the server contract and local API.

Validates model construction, validation rules, enum values, the derived
session health and the partial-update semantics of ``FlowPatch``.
"""

import pytest
from pydantic import ValidationError

from models.schemas import (
    ChatRequest,
    CreateFlowRequest,
    FlowPatch,
    HealthResponse,
    NodeType,
    SessionHealth,
    SessionInfo,
    SessionKind,
    SessionList,
    SessionPoolResponse,
    SessionStatus,
)
from tests.conftest import make_flow

# =========================================================================
# Enums
# =========================================================================


class TestEnums:
    """String enum values match the wire format."""

    def test_node_types(self) -> None:
        assert [t.value for t in NodeType] == ["trigger", "source", "filter", "executor", "sink"]

    def test_session_kind(self) -> None:
        assert SessionKind.FLOW_RUN == "flow_run"
        assert SessionKind("interactive") is SessionKind.INTERACTIVE


# =========================================================================
# SessionInfo
# =========================================================================


class TestSessionInfo:
    """Tri-state health."""

    @pytest.mark.parametrize(
        ("busy", "alive", "health"),
        [
            (False, True, SessionHealth.ALIVE),
            (True, True, SessionHealth.BUSY),
            (True, False, SessionHealth.DEAD),
            (False, False, SessionHealth.ALIVE),
        ],
    )
    def test_health(self, busy: bool, alive: bool, health: SessionHealth) -> None:
        info = SessionInfo(session_id="s1", busy=busy, process_alive=alive)
        assert info.health == health
        assert info.needs_force_kill == (health == SessionHealth.DEAD)

    def test_missing_process_alive_assumed_alive(self) -> None:
        info = SessionInfo.model_validate({"session_id": "s1", "busy": True})
        assert info.health == SessionHealth.BUSY

    def test_health_serialized(self) -> None:
        data = SessionInfo(session_id="s1", busy=True, process_alive=False).model_dump()
        assert data["health"] == "dead"
        assert data["needs_force_kill"] is True

    def test_flow_run_metadata(self) -> None:
        listing = SessionList.model_validate(
            {
                "agent_id": "agent_1",
                "sessions": [
                    {
                        "session_id": "run_1",
                        "kind": "flow_run",
                        "flow_run": {"flow_id": "flow_1", "node_label": "Executor - E01"},
                    }
                ],
            }
        )
        session = listing.sessions[0]
        assert session.kind == SessionKind.FLOW_RUN
        assert session.flow_run.node_label == "Executor - E01"


# =========================================================================
# SessionStatus
# =========================================================================


class TestSessionStatus:
    """Status replies from older servers."""

    def test_missing_process_alive_assumed_alive(self) -> None:
        status = SessionStatus.model_validate({"busy": True})
        assert status.busy is True
        assert status.process_alive is True


# =========================================================================
# FlowPatch
# =========================================================================


class TestFlowPatch:
    """Partial updates."""

    def test_changes_only_set_fields(self) -> None:
        assert FlowPatch(name="x").changes() == {"name": "x"}

    def test_explicit_none_is_not_a_change(self) -> None:
        assert FlowPatch(name=None, enabled=False).changes() == {"enabled": False}

    def test_from_flow_is_full_state(self) -> None:
        flow = make_flow()
        patch = FlowPatch.from_flow(flow)
        assert set(patch.changes()) == {"name", "description", "enabled", "nodes", "edges"}
        assert patch.nodes == flow.nodes


# =========================================================================
# Request models
# =========================================================================


class TestRequests:
    """Validation of local API requests."""

    def test_chat_prompt_required(self) -> None:
        with pytest.raises(ValidationError):
            ChatRequest(prompt="")

    def test_create_flow_name_required(self) -> None:
        with pytest.raises(ValidationError):
            CreateFlowRequest(name="")
        assert CreateFlowRequest(name="n").description == ""

    def test_pool_response_defaults(self) -> None:
        pool = SessionPoolResponse(agent_id="agent_1", pool_limit=5)
        assert pool.active_session is None
        assert pool.reachable is True

    def test_health_response_defaults(self) -> None:
        health = HealthResponse(status="healthy")
        assert health.version == "0.1.0"
        assert health.server_reachable is False
