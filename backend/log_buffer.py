"""Bounded in-memory log of structured events.

The console panel of the studio shows the most recent log events and a
running error count. ``LogBuffer`` is a structlog processor: it records a
copy of each event dict and passes the dict through untouched, so it can sit
anywhere in the processor chain before the renderer.

Usage:
    >>> from log_buffer import get_log_buffer
    >>> buffer = get_log_buffer()
    >>> buffer.entries()[-1]["event"]
    'flow_saved'
"""

import itertools
import threading
from collections import deque
from collections.abc import MutableMapping
from typing import Any

DEFAULT_MAX_ENTRIES = 500

# Keys the processor chain adds; they are not part of an entry's detail
_RESERVED_KEYS = {"event", "level", "timestamp"}


class LogBuffer:
    """Ring buffer of recent log events, usable as a structlog processor.

    Attributes:
        max_entries: Maximum number of entries retained.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __call__(
        self,
        logger: Any,
        method_name: str,
        event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        level = str(event_dict.get("level", method_name))
        detail = {
            key: value
            for key, value in event_dict.items()
            if key not in _RESERVED_KEYS
        }
        entry = {
            "id": next(self._ids),
            "timestamp": event_dict.get("timestamp"),
            "level": level,
            "event": str(event_dict.get("event", "")),
            "detail": {k: _printable(v) for k, v in detail.items()},
        }
        with self._lock:
            self._entries.append(entry)
        return event_dict

    def entries(self, level: str | None = None) -> list[dict[str, Any]]:
        """Return retained entries, oldest first, optionally filtered by level."""
        with self._lock:
            items = list(self._entries)
        if level is not None:
            items = [e for e in items if e["level"] == level]
        return items

    @property
    def error_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries if e["level"] in ("error", "critical"))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def resize(self, max_entries: int) -> None:
        """Change the retention bound, keeping the newest entries."""
        with self._lock:
            self.max_entries = max_entries
            self._entries = deque(self._entries, maxlen=max_entries)


def _printable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return repr(value)


# -----------------------------------------------------------------------------
# Global instance
# -----------------------------------------------------------------------------

_log_buffer: LogBuffer | None = None


def get_log_buffer() -> LogBuffer:
    """Get the global log buffer instance."""
    global _log_buffer
    if _log_buffer is None:
        _log_buffer = LogBuffer()
    return _log_buffer
