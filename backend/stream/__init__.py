"""Conversation stream processing.

Key Components:
    - FrameDecoder: bytes -> StreamFrame
    - TranscriptBuilder: StreamFrame -> TranscriptMessage
    - DeltaCoalescer: text deltas -> bounded number of visible updates
    - TranscriptStream: the three above wired together for one stream
"""

from stream.coalescer import DeltaCoalescer, LoopFrameScheduler, ManualFrameScheduler
from stream.decoder import FrameDecoder, encode_frame, encode_frames, iter_frames
from stream.pipeline import StreamState, TranscriptStream
from stream.transcript import (
    EntryStyle,
    ResultMeta,
    TextPart,
    ToolCallPart,
    TranscriptBuilder,
    TranscriptMessage,
    lines_to_messages,
)

__all__ = [
    "FrameDecoder",
    "iter_frames",
    "encode_frame",
    "encode_frames",
    "TranscriptBuilder",
    "TranscriptMessage",
    "TextPart",
    "ToolCallPart",
    "ResultMeta",
    "EntryStyle",
    "lines_to_messages",
    "DeltaCoalescer",
    "LoopFrameScheduler",
    "ManualFrameScheduler",
    "StreamState",
    "TranscriptStream",
]
