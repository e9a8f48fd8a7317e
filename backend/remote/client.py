"""Async HTTP client for the remote flow server.

All REST calls and streamed responses go through ``StudioClient``. Every
failure is mapped onto the studio error taxonomy:

- connection refused, reset or timed out -> ``ServerUnreachableError``
- 404 / 409 / 429 -> ``NotFoundError`` / ``SessionBusyError`` /
  ``SessionLimitError``
- any other non-2xx -> ``ApiError`` with the raw status and body logged

Streams (chat turns, reconnects, live run events) are exposed as async
context managers yielding the raw byte iterator, which is fed to the frame
decoder by the caller.

Usage:
    >>> async with StudioClient("http://localhost:8081") as client:
    ...     flows = await client.list_flows()
    ...     async with client.open_chat_stream("agent_1", "hi") as chunks:
    ...         async for frame in iter_frames(chunks):
    ...             ...
"""

import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import httpx
import structlog

from config import settings
from errors import ProtocolError, ServerUnreachableError, error_for_status
from models.schemas import (
    DeleteSessionResponse,
    Flow,
    FlowEdge,
    FlowNode,
    FlowPatch,
    FlowRun,
    FlowSummary,
    NewSessionResponse,
    NodeTypeSchema,
    SessionList,
    SessionLog,
    SessionStatus,
)

logger = structlog.get_logger(__name__)

ByteStream = AsyncIterator[bytes]


class StudioClient:
    """REST and stream client for one remote flow server.

    Attributes:
        base_url: Server root, without the ``/api`` prefix.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server root URL. Defaults to ``settings.server_url``.
            timeout: Timeout for non-stream requests in seconds.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self.base_url = (base_url or settings.server_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api",
            timeout=self._timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "StudioClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (None if empty)."""
        start = time.monotonic()
        logger.debug("http_request", method=method, path=path)
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TransportError as e:
            logger.error("http_network_error", method=method, path=path, error=str(e))
            raise ServerUnreachableError(str(e)) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if not response.is_success:
            body = response.text
            logger.error(
                "http_error",
                method=method,
                path=path,
                status_code=response.status_code,
                body=body,
                elapsed_ms=elapsed_ms,
            )
            raise error_for_status(response.status_code, body)

        logger.debug(
            "http_response",
            method=method,
            path=path,
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
        )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{method} {path} returned a non-JSON body") from e

    @asynccontextmanager
    async def _stream(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
    ) -> AsyncIterator[ByteStream]:
        """Open a streamed response and yield its byte iterator.

        Reads are never timed out: a turn may legitimately stay silent for a
        long time between frames.
        """
        timeout = httpx.Timeout(
            connect=settings.stream_connect_timeout_seconds,
            read=None,
            write=self._timeout,
            pool=self._timeout,
        )
        logger.info("stream_opening", method=method, path=path)
        try:
            async with self._client.stream(
                method,
                path,
                json=json,
                timeout=timeout,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "stream_http_error",
                        method=method,
                        path=path,
                        status_code=response.status_code,
                        body=body,
                    )
                    raise error_for_status(response.status_code, body)
                yield response.aiter_bytes()
        except httpx.TransportError as e:
            logger.error("stream_network_error", method=method, path=path, error=str(e))
            raise ServerUnreachableError(str(e)) from e

    async def check_connection(self) -> bool:
        """Return whether the server answers its health endpoint."""
        try:
            response = await self._client.get(f"{self.base_url}/health/", timeout=5.0)
        except httpx.TransportError as e:
            logger.warning("server_health_check_failed", error=str(e))
            return False
        return response.is_success

    # -----------------------------------------------------------------
    # Flows
    # -----------------------------------------------------------------

    async def list_flows(self) -> list[FlowSummary]:
        data = await self._request("GET", "/flows")
        return [FlowSummary.model_validate(item) for item in data.get("flows", [])]

    async def get_flow(self, flow_id: str) -> Flow:
        return Flow.model_validate(await self._request("GET", f"/flows/{flow_id}"))

    async def create_flow(
        self,
        name: str,
        description: str = "",
        nodes: list[FlowNode] | None = None,
        edges: list[FlowEdge] | None = None,
    ) -> str:
        """Create a flow and return its id."""
        data = await self._request(
            "POST",
            "/flows",
            json={
                "name": name,
                "description": description,
                "nodes": [n.model_dump(mode="json") for n in nodes or []],
                "edges": [e.model_dump(mode="json") for e in edges or []],
            },
        )
        return str(data["id"])

    async def update_flow(self, flow_id: str, patch: FlowPatch) -> Flow | None:
        """Write a flow; only the fields set on ``patch`` are sent."""
        data = await self._request(
            "PUT",
            f"/flows/{flow_id}",
            json=patch.model_dump(mode="json", exclude_none=True),
        )
        return Flow.model_validate(data) if data else None

    async def delete_flow(self, flow_id: str) -> None:
        await self._request("DELETE", f"/flows/{flow_id}")

    async def trigger_flow(self, flow_id: str, body: str | None = None) -> dict[str, Any]:
        payload = {"body": body} if body else None
        return await self._request("POST", f"/flows/{flow_id}/trigger", json=payload) or {}

    async def get_flow_runs(self, flow_id: str) -> list[FlowRun]:
        data = await self._request("GET", f"/flows/{flow_id}/runs")
        return [FlowRun.model_validate(item) for item in data.get("runs", [])]

    async def get_node_types(self) -> list[NodeTypeSchema]:
        data = await self._request("GET", "/node-types")
        return [NodeTypeSchema.model_validate(item) for item in data.get("node_types", [])]

    async def update_node(self, flow_id: str, node: FlowNode) -> FlowNode | None:
        data = await self._request(
            "PUT",
            f"/flows/{flow_id}/nodes/{node.id}",
            json=node.model_dump(mode="json"),
        )
        return FlowNode.model_validate(data) if data else None

    # -----------------------------------------------------------------
    # Agent sessions
    # -----------------------------------------------------------------

    async def list_sessions(self, agent_id: str) -> SessionList:
        data = await self._request("GET", f"/agents/{agent_id}/sessions")
        return SessionList.model_validate(data or {})

    async def new_session(self, agent_id: str) -> NewSessionResponse:
        data = await self._request("POST", f"/agents/{agent_id}/sessions")
        return NewSessionResponse.model_validate(data)

    async def delete_session(self, agent_id: str, session_id: str) -> DeleteSessionResponse:
        data = await self._request("DELETE", f"/agents/{agent_id}/sessions/{session_id}")
        return DeleteSessionResponse.model_validate(data or {})

    async def get_session_status(self, agent_id: str, session_id: str) -> SessionStatus:
        data = await self._request("GET", f"/agents/{agent_id}/sessions/{session_id}")
        return SessionStatus.model_validate(data or {})

    async def kill_session(self, agent_id: str, session_id: str) -> None:
        """Force-kill a stuck session process."""
        await self._request("POST", f"/agents/{agent_id}/sessions/{session_id}/kill")

    async def stop_chat(self, agent_id: str, session_id: str | None = None) -> None:
        """Ask the server to stop the turn running in a session."""
        payload = {"session_id": session_id} if session_id else {}
        await self._request("POST", f"/agents/{agent_id}/chat/stop", json=payload)

    async def get_session_log(self, agent_id: str, session_id: str) -> list[str]:
        data = await self._request("GET", f"/agents/{agent_id}/sessions/{session_id}/log")
        return SessionLog.model_validate(data or {}).lines

    # -----------------------------------------------------------------
    # Streams
    # -----------------------------------------------------------------

    def open_chat_stream(
        self,
        agent_id: str,
        prompt: str,
        session_id: str | None = None,
        *,
        flow_id: str | None = None,
        node_id: str | None = None,
    ) -> AbstractAsyncContextManager[ByteStream]:
        """Start a turn; yields the raw event-stream bytes."""
        payload: dict[str, Any] = {"prompt": prompt}
        if session_id:
            payload["session_id"] = session_id
        if flow_id:
            payload["flow_id"] = flow_id
        if node_id:
            payload["node_id"] = node_id
        return self._stream("POST", f"/agents/{agent_id}/chat", json=payload)

    def open_reconnect_stream(
        self, agent_id: str, session_id: str
    ) -> AbstractAsyncContextManager[ByteStream]:
        """Replay the running turn from its start, then follow it live."""
        return self._stream("GET", f"/agents/{agent_id}/sessions/{session_id}/chat/stream")

    def open_run_events(self, flow_id: str) -> AbstractAsyncContextManager[ByteStream]:
        """Follow the live run events of a flow."""
        return self._stream("GET", f"/flows/{flow_id}/runs/live")
