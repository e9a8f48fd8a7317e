"""WebSocket handlers for live flow and conversation updates.

Two endpoints:

- ``/ws/flows/{flow_id}``: every update signal of an open flow, with the
  flow and the editor text after the change; accepts ``edit_text`` and
  ``ping`` commands
- ``/ws/agents/{agent_id}/sessions/{session_id}``: transcript snapshots of a
  conversation; accepts ``send``, ``cancel`` and ``ping`` commands. Opening
  it resumes a turn that is still running on the server.
"""

import asyncio
import contextlib
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.routes import get_studio
from models.schemas import TranscriptResponse

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


async def _run_until_first_done(*coros: Any) -> None:
    """Run the send/receive loops; when one ends, cancel the others."""
    tasks = [asyncio.create_task(c) for c in coros]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


@websocket_router.websocket("/ws/flows/{flow_id}")
async def flow_websocket(websocket: WebSocket, flow_id: str) -> None:
    """Stream the update signals of an open flow.

    Args:
        websocket: The WebSocket connection.
        flow_id: The flow to follow; it must have been opened first.
    """
    await websocket.accept()
    studio = get_studio()
    workspace = studio.get_workspace(flow_id)
    if workspace is None:
        await websocket.send_json({"type": "error", "error": f"Flow {flow_id} is not open"})
        await websocket.close()
        return

    logger.info("flow_websocket_connected", flow_id=flow_id)
    queue = studio.bus.subscribe_queue(flow_id)

    try:
        await websocket.send_json(
            {"type": "snapshot", "data": workspace.snapshot().model_dump(mode="json")}
        )

        async def send_signals() -> None:
            try:
                while True:
                    item = await queue.get()
                    if item is None:
                        logger.info("flow_closed_sentinel", flow_id=flow_id)
                        await websocket.send_json({"type": "closed"})
                        break
                    signal, flow = item
                    await websocket.send_json(
                        {
                            "type": "signal",
                            "signal": signal.model_dump(mode="json"),
                            "flow": flow.model_dump(mode="json"),
                            "text": workspace.text.get_text(),
                            "parse_error": workspace.text.parse_error,
                        }
                    )
            except WebSocketDisconnect:
                logger.info("flow_websocket_disconnect_during_send", flow_id=flow_id)
            except Exception as e:
                logger.error("flow_websocket_send_error", flow_id=flow_id, error=str(e))

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", flow_id=flow_id)
                        continue
                    command_type = data.get("type")
                    logger.debug("flow_command_received", flow_id=flow_id, command_type=command_type)

                    if command_type == "edit_text":
                        workspace.edit_text(str(data.get("text", "")))
                        if workspace.text.parse_error:
                            await websocket.send_json(
                                {"type": "parse_error", "error": workspace.text.parse_error}
                            )
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning("unknown_command", flow_id=flow_id, command_type=command_type)
            except WebSocketDisconnect:
                logger.info("flow_websocket_disconnect_during_receive", flow_id=flow_id)
            except Exception as e:
                logger.error("flow_websocket_receive_error", flow_id=flow_id, error=str(e))

        await _run_until_first_done(send_signals(), receive_commands())

    except WebSocketDisconnect:
        logger.info("flow_websocket_disconnected", flow_id=flow_id)
    except Exception as e:
        logger.error("flow_websocket_error", flow_id=flow_id, error=str(e))
    finally:
        studio.bus.unsubscribe_queue(flow_id, queue)
        logger.info("flow_websocket_cleanup_complete", flow_id=flow_id)


@websocket_router.websocket("/ws/agents/{agent_id}/sessions/{session_id}")
async def session_websocket(websocket: WebSocket, agent_id: str, session_id: str) -> None:
    """Stream transcript snapshots of a conversation.

    Args:
        websocket: The WebSocket connection.
        agent_id: The agent owning the session.
        session_id: The session to follow.
    """
    await websocket.accept()
    logger.info("session_websocket_connected", agent_id=agent_id, session_id=session_id)

    queue: asyncio.Queue[TranscriptResponse] = asyncio.Queue()
    studio = get_studio()
    conversation = await studio.conversation(agent_id, session_id)
    unsubscribe = conversation.subscribe(queue.put_nowait)

    try:
        await websocket.send_json(
            {"type": "transcript", "data": conversation.snapshot().model_dump(mode="json")}
        )

        async def send_snapshots() -> None:
            try:
                while True:
                    snapshot = await queue.get()
                    # Collapse a backlog into its most recent snapshot
                    while not queue.empty():
                        snapshot = queue.get_nowait()
                    await websocket.send_json(
                        {"type": "transcript", "data": snapshot.model_dump(mode="json")}
                    )
            except WebSocketDisconnect:
                logger.info("session_websocket_disconnect_during_send", session_id=session_id)
            except Exception as e:
                logger.error("session_websocket_send_error", session_id=session_id, error=str(e))

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", session_id=session_id)
                        continue
                    command_type = data.get("type")
                    logger.info(
                        "session_command_received",
                        session_id=session_id,
                        command_type=command_type,
                    )

                    if command_type == "send":
                        prompt = str(data.get("prompt", "")).strip()
                        if prompt:
                            await conversation.send(prompt)
                    elif command_type == "cancel":
                        await conversation.cancel()
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            session_id=session_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("session_websocket_disconnect_during_receive", session_id=session_id)
            except Exception as e:
                logger.error("session_websocket_receive_error", session_id=session_id, error=str(e))

        await _run_until_first_done(send_snapshots(), receive_commands())

    except WebSocketDisconnect:
        logger.info("session_websocket_disconnected", session_id=session_id)
    except Exception as e:
        logger.error("session_websocket_error", session_id=session_id, error=str(e))
    finally:
        unsubscribe()
        logger.info("session_websocket_cleanup_complete", session_id=session_id)
