"""Update signal bus for canonical flow changes.

This module provides a SignalBus class that propagates "the canonical flow
changed" notifications from a flow store to every view projecting that flow
(graph canvas, text editor, WebSocket clients).

The bus supports:
- Multiple subscribers per flow, called in registration order
- Queue subscriptions for async consumers (WebSocket forwarding)
- Strictly increasing delivery order per flow
- Flow lifecycle management (close flow terminates queue subscribers)
"""

import asyncio
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from events.types import UpdateSignal

if TYPE_CHECKING:
    from models.schemas import Flow

logger = structlog.get_logger()

SignalListener = Callable[[UpdateSignal, "Flow"], None]
SignalQueue = asyncio.Queue["tuple[UpdateSignal, Flow] | None"]


class SignalBus:
    """Synchronous pub/sub bus for flow update signals.

    A store publishes exactly one signal per mutation, together with a
    snapshot of the flow after the mutation. Listeners are plain callables
    invoked synchronously, so by the time ``publish`` returns every view has
    seen the change. Async consumers use ``subscribe_queue`` instead.

    Ordering:
        The bus remembers the last counter published for each flow. A signal
        whose counter is not greater than that value is stale (for example a
        late reload racing a newer edit) and is dropped with a warning, so
        every subscriber observes strictly increasing counters.

    Error Isolation:
        A listener that raises is logged and skipped; the remaining listeners
        still receive the signal.

    Usage:
        >>> bus = SignalBus()
        >>> bus.subscribe("flow_1", lambda signal, flow: print(signal.counter))
        >>> bus.publish(UpdateSignal(flow_id="flow_1", counter=1, source="canvas"), flow)
        1

    Attributes:
        _listeners: Dict mapping flow_id to registered listeners
        _queues: Dict mapping flow_id to subscriber queues
        _last_counter: Dict mapping flow_id to the last published counter
        _lock: Threading lock guarding the registries
    """

    def __init__(self) -> None:
        """Initialize an empty signal bus."""
        self._listeners: dict[str, list[SignalListener]] = defaultdict(list)
        self._queues: dict[str, list[SignalQueue]] = defaultdict(list)
        self._last_counter: dict[str, int] = {}
        self._lock = threading.Lock()
        logger.info("signal_bus_initialized")

    def subscribe(self, flow_id: str, listener: SignalListener) -> None:
        """Register a listener for a flow's signals.

        Args:
            flow_id: The flow to subscribe to.
            listener: Callable receiving ``(signal, flow)``.
        """
        with self._lock:
            self._listeners[flow_id].append(listener)
            count = len(self._listeners[flow_id])
        logger.debug("signal_listener_added", flow_id=flow_id, listener_count=count)

    def unsubscribe(self, flow_id: str, listener: SignalListener) -> None:
        """Remove a listener. Unknown listeners are a no-op."""
        with self._lock:
            listeners = self._listeners.get(flow_id)
            if not listeners or listener not in listeners:
                logger.debug("unsubscribe_listener_not_found", flow_id=flow_id)
                return
            listeners.remove(listener)
            if not listeners:
                del self._listeners[flow_id]

    def subscribe_queue(self, flow_id: str) -> SignalQueue:
        """Subscribe an asyncio.Queue that receives ``(signal, flow)`` tuples.

        ``None`` is put on the queue when the flow is closed.
        """
        queue: SignalQueue = asyncio.Queue()
        with self._lock:
            self._queues[flow_id].append(queue)
            count = len(self._queues[flow_id])
        logger.info("signal_queue_added", flow_id=flow_id, queue_count=count)
        return queue

    def unsubscribe_queue(self, flow_id: str, queue: SignalQueue) -> None:
        with self._lock:
            queues = self._queues.get(flow_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", flow_id=flow_id)
                return
            queues.remove(queue)
            if not queues:
                del self._queues[flow_id]
        logger.info("signal_queue_removed", flow_id=flow_id)

    def publish(self, signal: UpdateSignal, flow: "Flow") -> bool:
        """Deliver a signal to every subscriber of its flow.

        Args:
            signal: The signal produced by a store mutation.
            flow: Snapshot of the flow after the mutation.

        Returns:
            True if the signal was delivered, False if it was stale.
        """
        with self._lock:
            last = self._last_counter.get(signal.flow_id, 0)
            if signal.counter <= last:
                logger.warning(
                    "stale_signal_dropped",
                    flow_id=signal.flow_id,
                    counter=signal.counter,
                    last_counter=last,
                    source=signal.source.value,
                )
                return False
            self._last_counter[signal.flow_id] = signal.counter
            listeners = list(self._listeners.get(signal.flow_id, []))
            queues = list(self._queues.get(signal.flow_id, []))

        for listener in listeners:
            try:
                listener(signal, flow)
            except Exception as e:
                logger.warning(
                    "signal_delivery_failed",
                    flow_id=signal.flow_id,
                    counter=signal.counter,
                    error=str(e),
                )

        for queue in queues:
            queue.put_nowait((signal, flow))

        logger.debug(
            "signal_published",
            flow_id=signal.flow_id,
            counter=signal.counter,
            source=signal.source.value,
            listener_count=len(listeners),
            queue_count=len(queues),
        )
        return True

    def last_counter(self, flow_id: str) -> int:
        """Return the last counter published for a flow (0 if none)."""
        with self._lock:
            return self._last_counter.get(flow_id, 0)

    def close_flow(self, flow_id: str) -> None:
        """Drop every subscriber of a flow and wake queue consumers.

        The last counter is kept so a re-opened flow keeps counting upwards.
        """
        with self._lock:
            listeners = self._listeners.pop(flow_id, [])
            queues = self._queues.pop(flow_id, [])

        for queue in queues:
            queue.put_nowait(None)

        if listeners or queues:
            logger.info(
                "flow_closed",
                flow_id=flow_id,
                listeners_removed=len(listeners),
                queues_removed=len(queues),
            )

    def get_subscriber_count(self, flow_id: str) -> int:
        """Number of listeners plus queues registered for a flow."""
        with self._lock:
            return len(self._listeners.get(flow_id, [])) + len(self._queues.get(flow_id, []))

    def get_active_flows(self) -> list[str]:
        """Flows with at least one subscriber."""
        with self._lock:
            return sorted(set(self._listeners) | set(self._queues))


# Global signal bus instance
_signal_bus: SignalBus | None = None
_bus_lock = threading.Lock()


def get_signal_bus() -> SignalBus:
    """Get the global SignalBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global SignalBus instance
    """
    global _signal_bus
    if _signal_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _signal_bus is None:
                _signal_bus = SignalBus()
    return _signal_bus


def reset_signal_bus() -> None:
    """Reset the global SignalBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _signal_bus
    with _bus_lock:
        _signal_bus = None
    logger.info("signal_bus_reset")
