"""Event system for Flow Studio.

This package provides the event infrastructure shared by the two halves of
the studio: the canonical flow synchronization stack and the conversation
streaming stack.

Key Components:
    - UpdateSource: Origin tag of a canonical flow change
    - UpdateSignal: "flow changed" notification with a monotonic counter
    - SignalBus: Pub/sub delivery of update signals to every flow view
    - FrameType / StreamFrame: Units decoded from conversation streams

Usage:
    >>> from events import SignalBus, UpdateSignal, UpdateSource
    >>>
    >>> bus = SignalBus()
    >>> seen = []
    >>> bus.subscribe("flow_1", lambda signal, flow: seen.append(signal))
    >>> bus.publish(
    ...     UpdateSignal(flow_id="flow_1", counter=1, source=UpdateSource.CANVAS),
    ...     flow,
    ... )
    >>> seen[0].source
    <UpdateSource.CANVAS: 'canvas'>

Signal Flow:
    1. A view calls FlowStore.apply(patch, source)
    2. The store bumps its counter and publishes one UpdateSignal
    3. Every other view re-projects the flow; the producing view skips its echo
    4. The store schedules a debounced write to the remote server
"""

from events.bus import (
    SignalBus,
    SignalListener,
    get_signal_bus,
    reset_signal_bus,
)
from events.types import (
    DEFAULT_EVENT_TYPE,
    FrameType,
    StreamFrame,
    UpdateSignal,
    UpdateSource,
)

__all__ = [
    # Event types
    "UpdateSource",
    "UpdateSignal",
    "FrameType",
    "StreamFrame",
    "DEFAULT_EVENT_TYPE",
    # Signal bus
    "SignalBus",
    "SignalListener",
    "get_signal_bus",
    "reset_signal_bus",
]
