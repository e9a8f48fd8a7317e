"""Event type definitions for the Flow Studio event system.

Two kinds of events travel through the studio:

- ``UpdateSignal``: "the canonical flow changed", tagged with the view that
  produced the change and a monotonic counter.
- ``StreamFrame``: one ``(event_type, payload)`` unit decoded from a
  text-event-stream, the raw material of conversation transcripts.
"""

import time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class UpdateSource(StrEnum):
    """Origin tag of a canonical flow change.

    - init: the flow was loaded into a fresh store
    - canvas: the graph view
    - editor: the structured-text view
    - server: a reload of the server-persisted copy
    """

    INIT = "init"
    CANVAS = "canvas"
    EDITOR = "editor"
    SERVER = "server"


class UpdateSignal(BaseModel):
    """Notification that a flow's canonical state changed.

    Consumers apply a signal only when its counter is greater than the last
    one they applied and its source is not their own origin.
    """

    model_config = ConfigDict(frozen=True)

    flow_id: str = Field(description="Flow the change belongs to")
    counter: int = Field(description="Monotonically increasing change counter")
    source: UpdateSource = Field(description="View that produced the change")
    timestamp: float = Field(default_factory=time.time)


class FrameType(StrEnum):
    """Event types carried by conversation streams."""

    MESSAGE = "message"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    ERROR = "error"
    SYSTEM = "system"
    LINE = "line"
    DONE = "done"


DEFAULT_EVENT_TYPE = FrameType.MESSAGE.value


class StreamFrame(BaseModel):
    """One decoded ``event:``/``data:`` pair."""

    model_config = ConfigDict(frozen=True)

    event_type: str = DEFAULT_EVENT_TYPE
    payload: str = ""
