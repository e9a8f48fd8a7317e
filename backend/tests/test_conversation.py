"""Tests for sessions/conversation.py and sessions/reconnect.py.

Conversations run against a mock client whose chat and reconnect streams
are scripted by the test, and a real SQLite transcript cache in a temporary
directory.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from errors import ServerUnreachableError, SessionBusyError, SessionLimitError
from models.database import TranscriptCache
from models.schemas import SessionStatus, TranscriptResponse
from sessions.conversation import Conversation
from stream.coalescer import ManualFrameScheduler
from stream.pipeline import StreamState
from stream.transcript import EntryStyle, TextPart, ToolCallPart
from tests.conftest import ScriptedStream, make_stream_client, sse, wait_until

AGENT_ID = "agent_1"
SESSION_ID = "sess_1"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def cache(tmp_path: Path) -> TranscriptCache:
    cache = TranscriptCache(str(tmp_path / "transcripts.db"))
    await cache.init()
    return cache


def _conversation(client, cache: TranscriptCache | None = None) -> Conversation:
    return Conversation(client, AGENT_ID, SESSION_ID, cache, scheduler=ManualFrameScheduler())


# =========================================================================
# Sending turns
# =========================================================================


class TestSend:
    """A turn started by send()."""

    async def test_turn_completes_and_is_cached(self, cache: TranscriptCache) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        conversation = _conversation(client, cache)

        stream = await conversation.send("hello")
        assert stream is not None
        assert conversation.is_streaming
        chat.push(sse(("text", {"text": "Hi there"}), ("result", {"cost": 0.004, "turns": 1})))
        chat.close()
        await conversation.wait()

        assert conversation.state == StreamState.DONE
        assert [m.role for m in conversation.builder.messages] == ["user", "assistant"]
        assert conversation.builder.messages[1].text == "Hi there"

        cached = await cache.load(SESSION_ID)
        assert [m["role"] for m in cached] == ["user", "assistant"]
        meta = await cache.load_meta(SESSION_ID)
        assert meta["result_meta"]["cost"] == 0.004
        client.open_chat_stream.assert_called_once_with(
            AGENT_ID, "hello", SESSION_ID, flow_id=None, node_id=None
        )

    async def test_user_message_cached_before_reply(self, cache: TranscriptCache) -> None:
        chat = ScriptedStream()
        conversation = _conversation(make_stream_client(chat=chat), cache)

        await conversation.send("first question")
        cached = await cache.load(SESSION_ID)
        assert cached == [
            {"role": "user", "style": "normal", "content": [{"type": "text", "text": "first question"}]}
        ]

        chat.close()
        await conversation.wait()

    async def test_send_while_streaming_adds_notice(self) -> None:
        chat = ScriptedStream()
        conversation = _conversation(make_stream_client(chat=chat))

        await conversation.send("one")
        assert await conversation.send("two") is None

        notice = conversation.builder.messages[-1]
        assert notice.style == EntryStyle.NOTICE
        assert notice.text == "Previous message still processing. Please wait."
        chat.close()
        await conversation.wait()

    async def test_concurrent_sends_start_one_turn(self, cache: TranscriptCache) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        conversation = _conversation(client, cache)

        first, second = await asyncio.gather(
            conversation.send("first"), conversation.send("second")
        )
        assert first is not None
        assert second is None
        assert conversation.stream is first

        chat.push(sse(("text", {"text": "Only one"})))
        chat.close()
        await conversation.wait()

        client.open_chat_stream.assert_called_once()
        assert chat.opened == 1
        assert [m.text for m in conversation.builder.messages] == [
            "first",
            "Previous message still processing. Please wait.",
            "Only one",
        ]
        cached = await cache.load(SESSION_ID)
        assert len(cached) == 3

    async def test_busy_session_becomes_notice(self) -> None:
        chat = ScriptedStream(open_error=SessionBusyError("busy"))
        conversation = _conversation(make_stream_client(chat=chat))

        await conversation.send("hello")
        await conversation.wait()

        assert conversation.state == StreamState.ERROR
        last = conversation.builder.messages[-1]
        assert last.style == EntryStyle.NOTICE
        assert last.text == "Previous message still processing. Please wait."

    async def test_session_limit_becomes_notice(self) -> None:
        chat = ScriptedStream(open_error=SessionLimitError("too many"))
        conversation = _conversation(make_stream_client(chat=chat))

        await conversation.send("hello")
        await conversation.wait()

        last = conversation.builder.messages[-1]
        assert last.style == EntryStyle.NOTICE
        assert last.text.startswith("Session limit reached")

    async def test_unreachable_server_becomes_error_entry(self) -> None:
        chat = ScriptedStream(open_error=ServerUnreachableError("connection refused"))
        conversation = _conversation(make_stream_client(chat=chat))

        await conversation.send("hello")
        await conversation.wait()

        last = conversation.builder.messages[-1]
        assert last.style == EntryStyle.ERROR
        assert last.text == "Server unreachable"

    async def test_flow_context_is_forwarded(self) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        conversation = Conversation(
            client,
            AGENT_ID,
            SESSION_ID,
            scheduler=ManualFrameScheduler(),
            flow_id="flow_1",
            node_id="exec-1",
        )
        await conversation.send("run it")
        chat.close()
        await conversation.wait()
        client.open_chat_stream.assert_called_once_with(
            AGENT_ID, "run it", SESSION_ID, flow_id="flow_1", node_id="exec-1"
        )


# =========================================================================
# Cancel vs detach
# =========================================================================


class TestCancelAndDetach:
    """User stop versus the view going away."""

    async def test_cancel_stops_server_and_keeps_partial(self, cache: TranscriptCache) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        conversation = _conversation(client, cache)

        await conversation.send("write an essay")
        chat.push(sse(("text", {"text": "Once upon"})))
        await wait_until(lambda: conversation.stream.frames_received == 1)

        assert await conversation.cancel() is True
        client.stop_chat.assert_awaited_once_with(AGENT_ID, SESSION_ID)
        assert conversation.stream.aborted
        assert not conversation.is_streaming
        assert conversation.builder.messages[-1].text == "Once upon"

        cached = await cache.load(SESSION_ID)
        assert len(cached) == 2

    async def test_cancel_survives_stop_failure(self) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        client.stop_chat = AsyncMock(side_effect=ServerUnreachableError("down"))
        conversation = _conversation(client)

        await conversation.send("hello")
        assert await conversation.cancel() is True
        assert conversation.state == StreamState.DONE

    async def test_cancel_when_idle(self) -> None:
        conversation = _conversation(make_stream_client())
        assert await conversation.cancel() is False

    async def test_detach_keeps_server_turn_and_cache(self, cache: TranscriptCache) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        conversation = _conversation(client, cache)

        await conversation.send("long task")
        chat.push(sse(("text", {"text": "Working"})))
        await wait_until(lambda: conversation.stream.frames_received == 1)

        assert await conversation.detach() is True
        client.stop_chat.assert_not_called()
        # The in-flight answer is neither committed nor cached
        assert [m.role for m in conversation.builder.messages] == ["user"]
        assert conversation.builder.in_progress is None
        cached = await cache.load(SESSION_ID)
        assert [m["role"] for m in cached] == ["user"]


# =========================================================================
# Reconnect
# =========================================================================


class TestReconnect:
    """Resuming a turn that is still running on the server."""

    async def test_reopened_conversation_rebuilds_running_turn(
        self, cache: TranscriptCache
    ) -> None:
        early_frames = sse(
            ("text", {"text": "Hel"}),
            ("text", {"text": "lo"}),
            ("tool_use", {"id": "t1", "tool": "Bash", "input": "ls"}),
        )

        # First view: sends, sees three frames, then goes away
        chat = ScriptedStream()
        first = _conversation(make_stream_client(chat=chat), cache)
        await first.send("list files")
        chat.push(early_frames)
        await wait_until(lambda: first.stream.frames_received == 3)
        await first.detach()

        # Second view: the server still reports the session busy
        replay = ScriptedStream()
        client = make_stream_client(
            replay=replay, status=SessionStatus(busy=True, process_alive=True)
        )
        second = _conversation(client, cache)
        assert await second.load() == 1
        assert await second.attach() is True
        assert second.is_streaming

        replay.push(early_frames)
        replay.push(sse(
            ("tool_result", {"output": "a.txt"}),
            ("result", {"cost": 0.002, "turns": 1}),
        ))
        replay.close()
        await second.wait()
        client.open_reconnect_stream.assert_called_once_with(AGENT_ID, SESSION_ID)

        messages = second.builder.messages
        assert [m.role for m in messages] == ["user", "assistant"]
        reply = messages[1].content
        assert len(reply) == 2
        assert isinstance(reply[0], TextPart)
        assert reply[0].text == "Hello"
        assert isinstance(reply[1], ToolCallPart)
        assert reply[1].tool_name == "Bash"
        assert reply[1].raw_input == "ls"
        assert reply[1].result == "a.txt"
        assert second.builder.result_meta.cost == 0.002
        assert not second.partial

        cached = await cache.load(SESSION_ID)
        assert len(cached) == 2

    async def test_idle_session_needs_no_reconnect(self) -> None:
        client = make_stream_client(status=SessionStatus(busy=False, process_alive=True))
        conversation = _conversation(client)
        assert await conversation.attach() is False
        client.open_reconnect_stream.assert_not_called()
        assert conversation.state == StreamState.IDLE

    async def test_status_failure_skips_reconnect(self) -> None:
        client = make_stream_client()
        client.get_session_status = AsyncMock(side_effect=ServerUnreachableError("down"))
        conversation = _conversation(client)
        assert await conversation.attach() is False

    async def test_stuck_session_still_replays(self) -> None:
        replay = ScriptedStream()
        client = make_stream_client(
            replay=replay, status=SessionStatus(busy=True, process_alive=False)
        )
        conversation = _conversation(client)
        assert await conversation.attach() is True
        replay.close()
        await conversation.wait()

    async def test_failed_replay_is_partial_and_not_cached(self, cache: TranscriptCache) -> None:
        await cache.save(
            SESSION_ID,
            AGENT_ID,
            [{"role": "user", "style": "normal", "content": [{"type": "text", "text": "q"}]}],
        )
        replay = ScriptedStream()
        client = make_stream_client(
            replay=replay, status=SessionStatus(busy=True, process_alive=True)
        )
        conversation = _conversation(client, cache)
        await conversation.load()
        await conversation.attach()

        replay.push(sse(("text", {"text": "half an ans"})))
        replay.fail(ServerUnreachableError("connection reset"))
        await conversation.wait()

        assert conversation.partial
        assert conversation.snapshot().partial
        texts = [m.text for m in conversation.builder.messages]
        assert texts == ["q", "half an ans", "Server unreachable"]
        cached = await cache.load(SESSION_ID)
        assert len(cached) == 1

        # The next turn clears the flag
        chat = ScriptedStream()
        client.open_chat_stream.side_effect = lambda *a, **kw: chat.open()
        await conversation.send("again")
        assert not conversation.partial
        chat.close()
        await conversation.wait()

    async def test_retry_after_failed_replay_rebuilds_turn_once(self) -> None:
        broken = ScriptedStream()
        client = make_stream_client(
            replay=broken, status=SessionStatus(busy=True, process_alive=True)
        )
        conversation = _conversation(client)
        await conversation.attach()
        broken.push(sse(("text", {"text": "half"})))
        broken.fail(ServerUnreachableError("connection reset"))
        await conversation.wait()
        assert conversation.partial

        replay = ScriptedStream()
        client.open_reconnect_stream.side_effect = lambda *a, **kw: replay.open()
        assert await conversation.attach() is True
        replay.push(sse(("text", {"text": "half and the rest"})))
        replay.close()
        await conversation.wait()

        assert not conversation.partial
        assert [m.text for m in conversation.builder.messages] == ["half and the rest"]

    async def test_failed_replay_without_frames_is_not_partial(self) -> None:
        replay = ScriptedStream(open_error=ServerUnreachableError("refused"))
        client = make_stream_client(
            replay=replay, status=SessionStatus(busy=True, process_alive=True)
        )
        conversation = _conversation(client)
        await conversation.attach()
        await conversation.wait()
        assert not conversation.partial


# =========================================================================
# Loading and observation
# =========================================================================


class TestLoadAndObserve:
    """Transcript sources and snapshot listeners."""

    async def test_load_from_cache_restores_meta(self, cache: TranscriptCache) -> None:
        await cache.save(
            SESSION_ID,
            AGENT_ID,
            [
                {"role": "user", "style": "normal", "content": [{"type": "text", "text": "q"}]},
                {"role": "assistant", "style": "normal", "content": [{"type": "text", "text": "a"}]},
            ],
            {"cost": 0.1, "turns": 2, "text": "a"},
        )
        conversation = _conversation(make_stream_client(), cache)
        assert await conversation.load() == 2
        assert conversation.builder.result_meta.turns == 2

    async def test_load_without_cache(self) -> None:
        conversation = _conversation(make_stream_client())
        assert await conversation.load() == 0

    async def test_load_from_session_log(self) -> None:
        client = make_stream_client()
        client.get_session_log = AsyncMock(return_value=[
            json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Run output"}]}}),
            json.dumps({"type": "result", "result": "Run output", "total_cost_usd": 0.03, "num_turns": 1}),
        ])
        conversation = _conversation(client)
        assert await conversation.load(from_log=True) == 1
        assert conversation.builder.messages[0].text == "Run output"
        assert conversation.builder.result_meta.cost == 0.03

    async def test_listeners_receive_snapshots(self) -> None:
        chat = ScriptedStream()
        conversation = _conversation(make_stream_client(chat=chat))
        snapshots: list[TranscriptResponse] = []
        unsubscribe = conversation.subscribe(snapshots.append)

        await conversation.send("hello")
        chat.push(sse(("text", {"text": "Hi"})))
        chat.close()
        await conversation.wait()

        assert snapshots
        last = snapshots[-1]
        assert last.session_id == SESSION_ID
        assert last.state == "done"
        assert not last.is_streaming
        assert len(last.messages) == 2

        count = len(snapshots)
        unsubscribe()
        conversation.builder.add_notice("quiet")
        conversation._notify()
        assert len(snapshots) == count

    async def test_failing_listener_does_not_break_others(self) -> None:
        conversation = _conversation(make_stream_client())
        received: list[TranscriptResponse] = []

        def broken(_snapshot: TranscriptResponse) -> None:
            raise RuntimeError("listener bug")

        conversation.subscribe(broken)
        conversation.subscribe(received.append)
        conversation._notify()
        assert len(received) == 1

    async def test_close_detaches_running_stream(self) -> None:
        chat = ScriptedStream()
        client = make_stream_client(chat=chat)
        conversation = _conversation(client)
        await conversation.send("hello")
        await conversation.close()
        assert not conversation.is_streaming
        client.stop_chat.assert_not_called()
