"""Fold stream frames into structured conversation transcripts.

A turn arrives as a sequence of frames: text deltas, tool invocations, tool
results and a final result carrying cost and turn counts. ``TranscriptBuilder``
folds them, in order, into the assistant message being built:

- ``text`` extends the open text run or starts a new one
- ``tool_use`` closes the text run and appends a pending tool call
- ``tool_result`` completes the nearest pending tool call, scanning backwards
- ``result`` records cost/turn metadata and supplies the text when nothing was
  streamed
- ``error`` adds an error-styled entry; the turn may continue afterwards
- ``line`` carries one raw stream-json log line (flow-run sessions)

A malformed frame is logged and skipped; it never aborts the fold.
"""

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from errors import ProtocolError
from events.types import FrameType, StreamFrame

logger = structlog.get_logger(__name__)


class EntryStyle(StrEnum):
    """How a transcript entry is presented."""

    NORMAL = "normal"
    ERROR = "error"
    NOTICE = "notice"


@dataclass
class TextPart:
    text: str = ""
    closed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolCallPart:
    """A tool invocation; ``result`` stays None until its result arrives."""

    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    raw_input: str | None = None

    @property
    def pending(self) -> bool:
        return self.result is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "tool_call",
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "result": self.result,
        }
        if self.raw_input is not None:
            data["raw_input"] = self.raw_input
        return data


ContentPart = TextPart | ToolCallPart


@dataclass
class TranscriptMessage:
    role: str
    content: list[ContentPart] = field(default_factory=list)
    style: EntryStyle = EntryStyle.NORMAL

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.content if isinstance(p, ToolCallPart)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "style": self.style.value,
            "content": [p.to_dict() for p in self.content],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TranscriptMessage":
        parts: list[ContentPart] = []
        for raw in data.get("content", []):
            if raw.get("type") == "tool_call":
                parts.append(
                    ToolCallPart(
                        tool_call_id=raw.get("tool_call_id", ""),
                        tool_name=raw.get("tool_name", ""),
                        args=raw.get("args") or {},
                        result=raw.get("result"),
                        raw_input=raw.get("raw_input"),
                    )
                )
            else:
                parts.append(TextPart(text=raw.get("text", ""), closed=True))
        return cls(
            role=data.get("role", "assistant"),
            content=parts,
            style=EntryStyle(data.get("style", EntryStyle.NORMAL.value)),
        )


@dataclass
class ResultMeta:
    """Aggregate data reported by the final ``result`` frame of a turn."""

    cost: float = 0.0
    turns: int = 0
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"cost": self.cost, "turns": self.turns, "text": self.text}


def _loads(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


def _coerce_args(value: Any) -> dict[str, Any]:
    """Tool input arrives as an object or as a JSON string; anything else is empty."""
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = _loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def _content_text(value: Any) -> Any:
    """Flatten stream-json tool_result content blocks to text."""
    if isinstance(value, list):
        texts = [b.get("text", "") for b in value if isinstance(b, dict) and b.get("type") == "text"]
        if texts:
            return "\n".join(texts)
    return value


class TranscriptBuilder:
    """Mutable transcript of one session.

    Attributes:
        messages: Completed messages, oldest first.
        in_progress: Assistant message of the running turn, if any.
        result_meta: Metadata of the running or last completed turn.
        notices: Informational ``system`` frame messages.
        skipped_frames: Frames dropped because they could not be folded.
    """

    def __init__(self, messages: list[TranscriptMessage] | None = None) -> None:
        self.messages: list[TranscriptMessage] = list(messages or [])
        self.in_progress: TranscriptMessage | None = None
        self.result_meta: ResultMeta | None = None
        self.notices: list[str] = []
        self.skipped_frames = 0
        self._streamed_text = False
        self._tool_seq = 0
        self._handlers: dict[str, Callable[[str], bool]] = {
            FrameType.TEXT: self._on_text,
            FrameType.TOOL_USE: self._on_tool_use,
            FrameType.TOOL_RESULT: self._on_tool_result,
            FrameType.RESULT: self._on_result,
            FrameType.ERROR: self._on_error,
            FrameType.SYSTEM: self._on_system,
            FrameType.LINE: self._on_line,
            FrameType.MESSAGE: self._on_message,
            FrameType.DONE: lambda payload: False,
        }

    # -----------------------------------------------------------------
    # Turn lifecycle
    # -----------------------------------------------------------------

    def begin_turn(self, prompt: str | None = None) -> TranscriptMessage:
        """Open a new assistant message, recording the user's prompt first.

        Returns:
            The new in-progress assistant message.
        """
        if self.in_progress is not None:
            self.finish_turn()
        if prompt:
            self.messages.append(TranscriptMessage(role="user", content=[TextPart(prompt, closed=True)]))
        self.in_progress = TranscriptMessage(role="assistant")
        self.result_meta = None
        self._streamed_text = False
        return self.in_progress

    def finish_turn(self, *, commit: bool = True) -> TranscriptMessage | None:
        """Close the running turn.

        Args:
            commit: Move the assistant message into ``messages``. When False
                the partial message is dropped.

        Returns:
            The closed message, or None if nothing was produced.
        """
        message, self.in_progress = self.in_progress, None
        if message is None or not message.content:
            return None
        for part in message.content:
            if isinstance(part, TextPart):
                part.closed = True
        if commit:
            self.messages.append(message)
        return message

    def add_notice(self, text: str, *, style: EntryStyle = EntryStyle.NOTICE) -> None:
        """Append an entry that did not come from the stream (e.g. a 409 notice)."""
        self.messages.append(
            TranscriptMessage(role="assistant", content=[TextPart(text, closed=True)], style=style)
        )

    def all_messages(self) -> list[TranscriptMessage]:
        """Completed messages plus the running one, if it has content."""
        if self.in_progress is not None and self.in_progress.content:
            return [*self.messages, self.in_progress]
        return list(self.messages)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self.all_messages()]

    @classmethod
    def from_dicts(cls, data: list[dict[str, Any]]) -> "TranscriptBuilder":
        """Rebuild a transcript from cached message dicts."""
        return cls([TranscriptMessage.from_dict(item) for item in data])

    # -----------------------------------------------------------------
    # Folding
    # -----------------------------------------------------------------

    def fold(self, frame: StreamFrame) -> bool:
        """Apply one frame.

        Returns:
            Whether the transcript changed.
        """
        handler = self._handlers.get(frame.event_type)
        if handler is None:
            logger.debug("frame_type_unhandled", event_type=frame.event_type)
            return False
        try:
            return handler(frame.payload)
        except (ProtocolError, ValueError, TypeError, KeyError, AttributeError) as e:
            self.skipped_frames += 1
            logger.warning(
                "frame_skipped",
                event_type=frame.event_type,
                error=str(e),
                payload=frame.payload[:200],
            )
            return False

    def _current(self) -> TranscriptMessage:
        if self.in_progress is None:
            return self.begin_turn()
        return self.in_progress

    def _append_text(self, text: str) -> bool:
        if not text:
            return False
        message = self._current()
        last = message.content[-1] if message.content else None
        if isinstance(last, TextPart) and not last.closed:
            last.text += text
        else:
            message.content.append(TextPart(text))
        self._streamed_text = True
        return True

    def _add_tool_call(self, call_id: Any, name: Any, raw_input: Any) -> bool:
        message = self._current()
        for part in message.content:
            if isinstance(part, TextPart):
                part.closed = True
        if not call_id:
            self._tool_seq += 1
            call_id = f"tool-{self._tool_seq}-{uuid.uuid4().hex[:6]}"
        args = _coerce_args(raw_input)
        raw = raw_input if isinstance(raw_input, str) and not args else None
        message.content.append(
            ToolCallPart(
                tool_call_id=str(call_id),
                tool_name=str(name or "unknown"),
                args=args,
                raw_input=raw,
            )
        )
        return True

    def _attach_result(self, result: Any, call_id: Any = None) -> bool:
        message = self._current()
        target: ToolCallPart | None = None
        if call_id:
            for part in message.content:
                if isinstance(part, ToolCallPart) and part.tool_call_id == call_id and part.pending:
                    target = part
                    break
        if target is None:
            for part in reversed(message.content):
                if isinstance(part, ToolCallPart) and part.pending:
                    target = part
                    break
        if target is None:
            logger.debug("tool_result_unmatched", tool_call_id=call_id)
            return False
        target.result = result
        return True

    def _record_result(self, text: Any, cost: Any, turns: Any) -> bool:
        text = text if isinstance(text, str) else ""
        self.result_meta = ResultMeta(cost=float(cost or 0), turns=int(turns or 0), text=text)
        if text and not self._streamed_text:
            message = self._current()
            message.content.insert(0, TextPart(text, closed=True))
            self._streamed_text = True
        return True

    # -----------------------------------------------------------------
    # Frame handlers
    # -----------------------------------------------------------------

    def _on_text(self, payload: str) -> bool:
        data = _loads(payload)
        if isinstance(data, dict):
            text = data.get("text")
            if not isinstance(text, str):
                raise ProtocolError("text frame without text")
        elif isinstance(data, str):
            text = data
        else:
            # Not JSON (or a bare scalar): the payload is the text
            text = payload
        return self._append_text(text)

    def _on_tool_use(self, payload: str) -> bool:
        data = _loads(payload)
        if not isinstance(data, dict):
            raise ProtocolError("tool_use payload is not an object")
        return self._add_tool_call(
            data.get("id"),
            data.get("tool") or data.get("name"),
            data.get("input"),
        )

    def _on_tool_result(self, payload: str) -> bool:
        data = _loads(payload)
        if isinstance(data, dict):
            if data.get("content") is not None:
                result = _content_text(data["content"])
            elif data.get("output") is not None:
                result = data["output"]
            else:
                result = "done"
            call_id = data.get("tool_use_id") or data.get("id")
        else:
            result = data if isinstance(data, str) else payload
            call_id = None
        return self._attach_result(result, call_id)

    def _on_result(self, payload: str) -> bool:
        data = _loads(payload)
        if not isinstance(data, dict):
            return self._record_result(payload, 0, 0)
        return self._record_result(
            data.get("text", data.get("result")),
            data.get("cost", data.get("total_cost_usd")),
            data.get("turns", data.get("num_turns")),
        )

    def _on_error(self, payload: str) -> bool:
        data = _loads(payload)
        if isinstance(data, dict):
            message = data.get("message") or data.get("error") or payload
        else:
            message = payload
        logger.warning("stream_error_frame", message=str(message)[:200])
        streamed = self._streamed_text
        self.finish_turn()
        self.add_notice(f"Error: {message}", style=EntryStyle.ERROR)
        self.in_progress = TranscriptMessage(role="assistant")
        self._streamed_text = streamed
        return True

    def _on_system(self, payload: str) -> bool:
        data = _loads(payload)
        message = data.get("message", "") if isinstance(data, dict) else payload
        if message:
            self.notices.append(str(message))
            logger.info("stream_system_message", message=str(message)[:200])
        return False

    def _on_message(self, payload: str) -> bool:
        # Untyped frames may carry their type inside the payload
        data = _loads(payload)
        if isinstance(data, dict):
            inner = data.get("type")
            if inner and inner != FrameType.MESSAGE and inner in self._handlers:
                return self._handlers[inner](payload)
        logger.debug("untyped_frame_ignored", payload=payload[:200])
        return False

    def _on_line(self, payload: str) -> bool:
        data = _loads(payload)
        if not isinstance(data, dict):
            logger.debug("log_line_not_json", line=payload[:200])
            return False

        kind = data.get("type")
        changed = False
        if kind == "assistant":
            for block in data.get("message", {}).get("content", []):
                if block.get("type") == "text":
                    changed = self._append_text(block.get("text", "")) or changed
                elif block.get("type") == "tool_use":
                    changed = self._add_tool_call(
                        block.get("id"), block.get("name"), block.get("input")
                    ) or changed
        elif kind == "user":
            content = data.get("message", {}).get("content", [])
            for block in content if isinstance(content, list) else []:
                if block.get("type") == "tool_result":
                    changed = self._attach_result(
                        _content_text(block.get("content")) or "done",
                        block.get("tool_use_id"),
                    ) or changed
        elif kind == "content_block_start":
            block = data.get("content_block", {})
            if block.get("type") == "tool_use":
                changed = self._add_tool_call(block.get("id"), block.get("name"), block.get("input"))
        elif kind == "result":
            changed = self._record_result(
                data.get("result"),
                data.get("total_cost_usd"),
                data.get("num_turns"),
            )
        return changed


def lines_to_messages(lines: list[str]) -> tuple[list[TranscriptMessage], ResultMeta | None]:
    """Convert a flow-run session log (one stream-json object per line)."""
    builder = TranscriptBuilder()
    builder.begin_turn()
    for line in lines:
        if line.strip():
            builder.fold(StreamFrame(event_type=FrameType.LINE.value, payload=line))
    builder.finish_turn()
    return builder.messages, builder.result_meta
