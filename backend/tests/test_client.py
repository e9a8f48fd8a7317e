"""Tests for remote/client.py -- REST calls, streams and error mapping.

All requests go through ``httpx.MockTransport`` backed by the in-memory
fake server from conftest.
"""

import pytest

from errors import (
    ApiError,
    NotFoundError,
    ProtocolError,
    ServerUnreachableError,
    SessionBusyError,
    SessionLimitError,
)
from models.schemas import FlowPatch, SessionHealth
from remote.client import StudioClient
from stream.decoder import iter_frames
from tests.conftest import FakeFlowServer, make_flow, make_session, sse

# =========================================================================
# Flows
# =========================================================================


class TestFlows:
    """Flow CRUD against the fake server."""

    async def test_list_flows(self, studio_client: StudioClient) -> None:
        flows = await studio_client.list_flows()
        assert [f.id for f in flows] == ["flow_1"]
        assert flows[0].node_count == 4
        assert flows[0].edge_count == 3

    async def test_get_flow(self, studio_client: StudioClient) -> None:
        flow = await studio_client.get_flow("flow_1")
        assert flow == make_flow()

    async def test_create_flow(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        flow_id = await studio_client.create_flow("New flow", "from tests")
        assert flow_id in fake_server.flows
        assert fake_server.flows[flow_id]["description"] == "from tests"

    async def test_update_flow_sends_only_set_fields(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        updated = await studio_client.update_flow("flow_1", FlowPatch(name="Renamed"))
        assert fake_server.writes("flow_1") == [{"name": "Renamed"}]
        assert updated is not None
        assert updated.name == "Renamed"
        assert len(updated.nodes) == 4

    async def test_delete_flow(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        await studio_client.delete_flow("flow_1")
        assert "flow_1" not in fake_server.flows

    async def test_trigger_flow(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        result = await studio_client.trigger_flow("flow_1")
        assert result["run_id"] == "run_1"
        assert fake_server.calls("POST", "/api/flows/flow_1/trigger") == 1

    async def test_node_types(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.node_types = [{"kind": "rss", "node_type": "source", "label": "RSS"}]
        node_types = await studio_client.get_node_types()
        assert [t.kind for t in node_types] == ["rss"]

    async def test_flow_runs_empty(self, studio_client: StudioClient) -> None:
        assert await studio_client.get_flow_runs("flow_1") == []


# =========================================================================
# Error mapping
# =========================================================================


class TestErrors:
    """Status codes and transport failures become studio errors."""

    async def test_404(self, studio_client: StudioClient) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await studio_client.get_flow("missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.body == "flow not found"

    async def test_409_is_session_busy(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.fail("POST", "/api/agents/agent_1/sessions", 409, "busy")
        with pytest.raises(SessionBusyError):
            await studio_client.new_session("agent_1")

    async def test_429_is_session_limit(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.fail("POST", "/api/agents/agent_1/sessions", 429, "too many")
        with pytest.raises(SessionLimitError):
            await studio_client.new_session("agent_1")

    async def test_other_status_is_api_error(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.fail("GET", "/api/flows", 500, "boom")
        with pytest.raises(ApiError) as exc_info:
            await studio_client.list_flows()
        assert str(exc_info.value) == "HTTP 500: boom"
        assert not isinstance(exc_info.value, NotFoundError)

    async def test_unreachable(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.unreachable = True
        with pytest.raises(ServerUnreachableError):
            await studio_client.list_flows()

    async def test_non_json_body(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.fail("GET", "/api/flows/flow_1", 200, "<html>proxy page</html>")
        with pytest.raises(ProtocolError):
            await studio_client.get_flow("flow_1")

    async def test_check_connection(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        assert await studio_client.check_connection() is True
        fake_server.unreachable = True
        assert await studio_client.check_connection() is False


# =========================================================================
# Sessions
# =========================================================================


class TestSessions:
    """Session endpoints."""

    async def test_list_sessions_parses_health(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.sessions["agent_1"] = [
            make_session("s1"),
            make_session("s2", busy=True),
            make_session("s3", busy=True, process_alive=False),
        ]
        fake_server.active["agent_1"] = "s2"
        pool = await studio_client.list_sessions("agent_1")
        assert pool.active_session == "s2"
        assert [s.health for s in pool.sessions] == [
            SessionHealth.ALIVE,
            SessionHealth.BUSY,
            SessionHealth.DEAD,
        ]

    async def test_new_and_delete_session(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        first = await studio_client.new_session("agent_1")
        second = await studio_client.new_session("agent_1")
        result = await studio_client.delete_session("agent_1", second.session_id)
        assert result.deleted is True
        assert result.active_session == first.session_id

    async def test_session_status_and_kill(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.status["s1"] = {"busy": True, "process_alive": False}
        status = await studio_client.get_session_status("agent_1", "s1")
        assert status.busy is True
        assert status.process_alive is False
        await studio_client.kill_session("agent_1", "s1")
        assert fake_server.calls("POST", "/api/agents/agent_1/sessions/s1/kill") == 1

    async def test_stop_chat_names_session(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        await studio_client.stop_chat("agent_1", "s1")
        assert fake_server.requests[-1] == (
            "POST",
            "/api/agents/agent_1/chat/stop",
            {"session_id": "s1"},
        )

    async def test_session_log(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.logs["s1"] = ['{"type": "user"}']
        assert await studio_client.get_session_log("agent_1", "s1") == ['{"type": "user"}']


# =========================================================================
# Streams
# =========================================================================


class TestStreams:
    """Streamed responses."""

    async def test_chat_stream_yields_frames(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.chat_body = sse(("text_delta", {"text": "Hi"}), ("done", {}))
        async with studio_client.open_chat_stream(
            "agent_1", "hello", "s1", flow_id="flow_1", node_id="exec-1"
        ) as chunks:
            frames = [frame async for frame in iter_frames(chunks)]
        assert [f.event_type for f in frames] == ["text_delta", "done"]
        _, path, body = fake_server.requests[-1]
        assert path == "/api/agents/agent_1/chat"
        assert body == {
            "prompt": "hello",
            "session_id": "s1",
            "flow_id": "flow_1",
            "node_id": "exec-1",
        }

    async def test_chat_stream_conflict(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.fail("POST", "/api/agents/agent_1/chat", 409, "still processing")
        with pytest.raises(SessionBusyError):
            async with studio_client.open_chat_stream("agent_1", "hello"):
                pass

    async def test_stream_unreachable(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.unreachable = True
        with pytest.raises(ServerUnreachableError):
            async with studio_client.open_reconnect_stream("agent_1", "s1"):
                pass

    async def test_run_events_stream(
        self, studio_client: StudioClient, fake_server: FakeFlowServer
    ) -> None:
        fake_server.run_events_body = sse(("run_started", {"run_id": "r1"}))
        async with studio_client.open_run_events("flow_1") as chunks:
            frames = [frame async for frame in iter_frames(chunks)]
        assert len(frames) == 1
        assert frames[0].event_type == "run_started"
