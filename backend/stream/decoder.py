"""Text-event-stream frame decoder.

Turns a byte stream into ``StreamFrame``s using the subset of the
text/event-stream format the flow server speaks:

- lines are buffered until a newline; an incomplete trailing line waits for
  the next read
- ``event: <type>`` sets the type of the next frame (``message`` if unset)
- ``data: <payload>`` emits a frame and resets the type to ``message``
- ``: comment`` lines are keep-alives and are dropped
- blank lines end a block and carry no data

Bytes are decoded incrementally, so a multi-byte UTF-8 character split
across two reads is reassembled instead of being mangled.
"""

import codecs
from collections.abc import AsyncIterable, AsyncIterator

import structlog

from events.types import DEFAULT_EVENT_TYPE, StreamFrame

logger = structlog.get_logger(__name__)

_EVENT_PREFIX = "event: "
_DATA_PREFIX = "data: "


class FrameDecoder:
    """Incremental decoder; feed it chunks, collect frames.

    Usage:
        >>> decoder = FrameDecoder()
        >>> decoder.feed(b"event: text\\ndata: {\\"te")
        []
        >>> decoder.feed(b'xt": "hi"}\\n\\n')
        [StreamFrame(event_type='text', payload='{"text": "hi"}')]
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event_type = DEFAULT_EVENT_TYPE
        self.frame_count = 0

    def feed(self, chunk: bytes | str) -> list[StreamFrame]:
        """Consume one read and return the frames it completed."""
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        frames: list[StreamFrame] = []
        for line in lines:
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def finish(self) -> list[StreamFrame]:
        """Flush the decoder at end of stream.

        A final ``data:`` line that lacks its newline is still delivered.
        """
        self._buffer += self._utf8.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder:
            return []
        frame = self._process_line(remainder)
        return [frame] if frame is not None else []

    def _process_line(self, line: str) -> StreamFrame | None:
        if line.endswith("\r"):
            line = line[:-1]
        if line.startswith(_EVENT_PREFIX):
            self._event_type = line[len(_EVENT_PREFIX) :].strip() or DEFAULT_EVENT_TYPE
            return None
        if line.startswith(_DATA_PREFIX):
            frame = StreamFrame(event_type=self._event_type, payload=line[len(_DATA_PREFIX) :])
            self._event_type = DEFAULT_EVENT_TYPE
            self.frame_count += 1
            return frame
        if not line or line.startswith(":"):
            return None
        logger.debug("stream_line_ignored", line=line[:200])
        return None


async def iter_frames(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamFrame]:
    """Decode an async byte stream into frames until it completes."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.finish():
        yield frame


def encode_frame(event_type: str, payload: str) -> str:
    """Encode one frame as an event-stream block.

    The ``event:`` line is omitted for the default ``message`` type.

    Raises:
        ValueError: If the payload contains a newline; one ``data:`` line
            carries exactly one frame.
    """
    if "\n" in payload or "\r" in payload:
        raise ValueError("frame payload must be a single line")
    if event_type == DEFAULT_EVENT_TYPE:
        return f"{_DATA_PREFIX}{payload}\n\n"
    return f"{_EVENT_PREFIX}{event_type}\n{_DATA_PREFIX}{payload}\n\n"


def encode_frames(frames: list[StreamFrame]) -> str:
    return "".join(encode_frame(f.event_type, f.payload) for f in frames)
