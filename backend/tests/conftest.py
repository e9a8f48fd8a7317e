"""Shared test fixtures for backend tests.

Provides an in-memory fake of the remote flow server (served through
``httpx.MockTransport``), scripted byte streams for conversation tests and
flow factories, so tests never open a real network connection.
"""

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from flows.store import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import SignalBus, reset_signal_bus  # noqa: E402
from models.schemas import Flow, FlowEdge, FlowNode, NodeType, Position, SessionStatus  # noqa: E402
from remote.client import StudioClient  # noqa: E402
from stream.decoder import encode_frame  # noqa: E402

SERVER_URL = "http://flow-server.test"

# ---------------------------------------------------------------------------
# Flow Factories
# ---------------------------------------------------------------------------


def make_flow(flow_id: str = "flow_1", name: str = "Daily digest") -> Flow:
    """Create a valid four-step flow: cron -> rss -> claude-code -> slack."""
    return Flow(
        id=flow_id,
        name=name,
        nodes=[
            FlowNode(
                id="trigger-1",
                node_type=NodeType.TRIGGER,
                kind="cron",
                label="Every morning",
                config={"schedule": "0 9 * * *"},
                position=Position(x=0, y=0),
            ),
            FlowNode(
                id="source-1",
                node_type=NodeType.SOURCE,
                kind="rss",
                label="Feed",
                config={"url": "https://example.com/feed.xml"},
                position=Position(x=200, y=0),
            ),
            FlowNode(
                id="exec-1",
                node_type=NodeType.EXECUTOR,
                kind="claude-code",
                label="Executor - E01",
                config={"prompt": "Summarize the feed"},
                position=Position(x=400, y=0),
            ),
            FlowNode(
                id="sink-1",
                node_type=NodeType.SINK,
                kind="slack",
                label="Team channel",
                config={"webhook_url_env": "SLACK_WEBHOOK"},
                position=Position(x=600, y=0),
            ),
        ],
        edges=[
            FlowEdge(id="e-1", source="trigger-1", target="source-1"),
            FlowEdge(id="e-2", source="source-1", target="exec-1"),
            FlowEdge(id="e-3", source="exec-1", target="sink-1"),
        ],
    )


def make_session(
    session_id: str,
    *,
    kind: str = "interactive",
    busy: bool = False,
    process_alive: bool = True,
) -> dict[str, Any]:
    """Session entry as the server lists it."""
    return {
        "session_id": session_id,
        "summary": "",
        "created_at": "2026-01-01T00:00:00Z",
        "busy": busy,
        "process_alive": process_alive,
        "message_count": 0,
        "total_cost": 0.0,
        "kind": kind,
    }


def sse(*frames: tuple[str, Any]) -> bytes:
    """Encode ``(event_type, payload)`` pairs; dict payloads are JSON-encoded."""
    out = []
    for event_type, payload in frames:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        out.append(encode_frame(event_type, text))
    return "".join(out).encode("utf-8")


# ---------------------------------------------------------------------------
# Fake Flow Server
# ---------------------------------------------------------------------------


class FakeFlowServer:
    """In-memory stand-in for the remote flow server's HTTP API.

    Attributes:
        flows: Stored flows by id, as JSON dicts.
        sessions: Session entries per agent id.
        requests: Every request received, as ``(method, path, json_body)``.
        unreachable: When True every request fails with a connection error.
    """

    def __init__(self) -> None:
        self.flows: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, list[dict[str, Any]]] = {}
        self.active: dict[str, str] = {}
        self.status: dict[str, dict[str, bool]] = {}
        self.logs: dict[str, list[str]] = {}
        self.node_types: list[dict[str, Any]] = []
        self.chat_body = b""
        self.reconnect_body = b""
        self.run_events_body = b""
        self.requests: list[tuple[str, str, Any]] = []
        self.failures: dict[tuple[str, str], tuple[int, str]] = {}
        self.unreachable = False
        self._next_id = 0

    def add_flow(self, flow: Flow) -> None:
        self.flows[flow.id] = flow.model_dump(mode="json")

    def fail(self, method: str, path: str, status_code: int, body: str = "") -> None:
        """Answer ``method path`` with an error status from now on."""
        self.failures[(method, path)] = (status_code, body)

    def writes(self, flow_id: str) -> list[dict[str, Any]]:
        """Bodies of every flow write received for ``flow_id``."""
        return [
            body for method, path, body in self.requests
            if method == "PUT" and path == f"/api/flows/{flow_id}"
        ]

    def calls(self, method: str, path: str) -> int:
        return sum(1 for m, p, _ in self.requests if m == method and p == path)

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}_{self._next_id}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        failure = self.failures.get((request.method, path))
        if failure is not None:
            return httpx.Response(failure[0], text=failure[1])
        return self._route(request.method, path.strip("/").split("/"), body)

    def _route(self, method: str, parts: list[str], body: Any) -> httpx.Response:
        match (method, parts):
            case ("GET", ["health"]):
                return httpx.Response(200, json={"status": "ok"})
            case ("GET", ["api", "flows"]):
                summaries = [
                    {
                        "id": f["id"],
                        "name": f["name"],
                        "enabled": f["enabled"],
                        "node_count": len(f["nodes"]),
                        "edge_count": len(f["edges"]),
                    }
                    for f in self.flows.values()
                ]
                return httpx.Response(200, json={"flows": summaries})
            case ("POST", ["api", "flows"]):
                flow_id = self._new_id("flow")
                self.flows[flow_id] = Flow(id=flow_id, **body).model_dump(mode="json")
                return httpx.Response(201, json={"id": flow_id})
            case ("GET", ["api", "flows", flow_id]):
                if flow_id not in self.flows:
                    return httpx.Response(404, text="flow not found")
                return httpx.Response(200, json=self.flows[flow_id])
            case ("PUT", ["api", "flows", flow_id]):
                if flow_id not in self.flows:
                    return httpx.Response(404, text="flow not found")
                self.flows[flow_id].update(body)
                return httpx.Response(200, json=self.flows[flow_id])
            case ("DELETE", ["api", "flows", flow_id]):
                self.flows.pop(flow_id, None)
                return httpx.Response(204)
            case ("POST", ["api", "flows", flow_id, "trigger"]):
                return httpx.Response(200, json={"run_id": "run_1", "flow_id": flow_id})
            case ("GET", ["api", "flows", flow_id, "runs"]):
                return httpx.Response(200, json={"runs": []})
            case ("GET", ["api", "flows", flow_id, "runs", "live"]):
                return httpx.Response(200, content=self.run_events_body)
            case ("GET", ["api", "node-types"]):
                return httpx.Response(200, json={"node_types": self.node_types})
            case ("GET", ["api", "agents", agent_id, "sessions"]):
                return httpx.Response(200, json={
                    "agent_id": agent_id,
                    "active_session": self.active.get(agent_id, ""),
                    "sessions": self.sessions.get(agent_id, []),
                })
            case ("POST", ["api", "agents", agent_id, "sessions"]):
                session_id = self._new_id("sess")
                self.sessions.setdefault(agent_id, []).append(make_session(session_id))
                self.active[agent_id] = session_id
                return httpx.Response(200, json={
                    "session_id": session_id,
                    "created_at": "2026-01-01T00:00:00Z",
                })
            case ("GET", ["api", "agents", _, "sessions", session_id]):
                return httpx.Response(
                    200, json=self.status.get(session_id, {"busy": False, "process_alive": True})
                )
            case ("DELETE", ["api", "agents", agent_id, "sessions", session_id]):
                pool = self.sessions.get(agent_id, [])
                if len(pool) <= 1:
                    return httpx.Response(400, text="cannot delete the last session")
                self.sessions[agent_id] = [s for s in pool if s["session_id"] != session_id]
                if self.active.get(agent_id) == session_id:
                    self.active[agent_id] = self.sessions[agent_id][0]["session_id"]
                return httpx.Response(200, json={
                    "deleted": True,
                    "active_session": self.active.get(agent_id, ""),
                })
            case ("POST", ["api", "agents", agent_id, "sessions", session_id, "kill"]):
                self.status[session_id] = {"busy": False, "process_alive": False}
                for session in self.sessions.get(agent_id, []):
                    if session["session_id"] == session_id:
                        session["busy"] = False
                return httpx.Response(200, json={"killed": True})
            case ("GET", ["api", "agents", _, "sessions", session_id, "log"]):
                return httpx.Response(200, json={"lines": self.logs.get(session_id, [])})
            case ("GET", ["api", "agents", _, "sessions", _, "chat", "stream"]):
                return httpx.Response(200, content=self.reconnect_body)
            case ("POST", ["api", "agents", _, "chat"]):
                return httpx.Response(200, content=self.chat_body)
            case ("POST", ["api", "agents", _, "chat", "stop"]):
                return httpx.Response(200, json={"stopped": True})
        return httpx.Response(404, text="no such route")


@pytest.fixture()
def fake_server() -> FakeFlowServer:
    """Provide a fake server holding ``flow_1``."""
    server = FakeFlowServer()
    server.add_flow(make_flow())
    return server


def make_client(server: FakeFlowServer) -> StudioClient:
    """Create a StudioClient wired to a fake server."""
    return StudioClient(SERVER_URL, transport=httpx.MockTransport(server.handler))


@pytest.fixture()
async def studio_client(fake_server: FakeFlowServer) -> AsyncIterator[StudioClient]:
    """Provide a StudioClient talking to the fake server."""
    client = make_client(fake_server)
    yield client
    await client.aclose()


# ---------------------------------------------------------------------------
# Signal Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def signal_bus() -> SignalBus:
    """Return a fresh SignalBus instance for each test."""
    reset_signal_bus()
    return SignalBus()


# ---------------------------------------------------------------------------
# Scripted Streams
# ---------------------------------------------------------------------------


class ScriptedStream:
    """Byte stream the test feeds chunk by chunk.

    ``open()`` has the shape of the client's stream openers: an async context
    manager yielding an async byte iterator. The iterator blocks until the
    test pushes data, closes the stream or injects an error.
    """

    def __init__(self, *, open_error: Exception | None = None) -> None:
        self._queue: asyncio.Queue[bytes | Exception | None] = asyncio.Queue()
        self._open_error = open_error
        self.opened = 0

    def push(self, data: bytes | str) -> None:
        self._queue.put_nowait(data.encode("utf-8") if isinstance(data, str) else data)

    def close(self) -> None:
        self._queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    @asynccontextmanager
    async def open(self) -> AsyncIterator[AsyncIterator[bytes]]:
        self.opened += 1
        if self._open_error is not None:
            raise self._open_error
        yield self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


def make_stream_client(
    chat: ScriptedStream | None = None,
    replay: ScriptedStream | None = None,
    status: SessionStatus | None = None,
) -> MagicMock:
    """Create a mock StudioClient whose streams are scripted by the test."""
    client = MagicMock()
    client.open_chat_stream = MagicMock(side_effect=lambda *a, **kw: chat.open())
    client.open_reconnect_stream = MagicMock(side_effect=lambda *a, **kw: replay.open())
    client.get_session_status = AsyncMock(
        return_value=status or SessionStatus(busy=False, process_alive=True)
    )
    client.stop_chat = AsyncMock()
    client.get_session_log = AsyncMock(return_value=[])
    return client


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
