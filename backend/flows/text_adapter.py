"""Structured-text projection of the canonical flow.

The editor view shows the flow as indented JSON. Two directions meet here:

- a local edit is parsed; if it is a well-formed flow it becomes a patch to
  the store tagged ``editor``
- a signal from any other view re-serializes the canonical flow and swaps
  only the changed range into the buffer, so a server echo that arrives
  while the user is typing does not move the caret
"""

import json
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from pydantic import ValidationError

from errors import ConsistencyError
from events.types import UpdateSignal, UpdateSource
from flows.store import FlowStore
from models.schemas import Flow, FlowPatch

logger = structlog.get_logger(__name__)

# Fields that exist on the canonical model but are not edited as text
_HIDDEN_FIELDS = {"version"}

BufferListener = Callable[[str, bool], None]


@dataclass
class _Edit:
    start: int
    removed: str
    inserted: str
    caret_before: int


class TextBuffer:
    """In-memory model of the editor buffer.

    Offsets are character offsets into ``value``. The caret and the selection
    behave like editor markers: edits before them shift them, edits after
    them leave them alone.

    Attributes:
        caret: Caret offset.
        selection: Selected ``(start, end)`` range, or None.
    """

    def __init__(self, value: str = "") -> None:
        self._value = value
        self.caret = 0
        self.selection: tuple[int, int] | None = None
        self._undo: list[_Edit] = []
        self._listeners: list[BufferListener] = []

    @property
    def value(self) -> str:
        return self._value

    def on_change(self, listener: BufferListener) -> None:
        """Register ``listener(value, is_local)``, called after every edit."""
        self._listeners.append(listener)

    def set_caret(self, offset: int) -> None:
        self.caret = max(0, min(offset, len(self._value)))

    def replace_range(
        self,
        start: int,
        end: int,
        text: str,
        *,
        force_move_markers: bool = False,
        local: bool = False,
    ) -> None:
        """Replace ``value[start:end]`` with ``text``.

        Args:
            start: First offset of the replaced range.
            end: Offset just past the replaced range.
            text: Replacement text.
            force_move_markers: Push a caret sitting at ``end`` past the
                inserted text. When False, a caret inside or at the edge of
                the range keeps its offset (clamped to the new range).
            local: Whether the edit was made by the user in this buffer.
        """
        if not 0 <= start <= end <= len(self._value):
            raise ValueError(f"invalid range {start}..{end} for length {len(self._value)}")

        removed = self._value[start:end]
        self._undo.append(_Edit(start, removed, text, self.caret))
        self._value = self._value[:start] + text + self._value[end:]
        delta = len(text) - (end - start)

        self.caret = self._move_marker(self.caret, start, end, len(text), delta, force_move_markers)
        if self.selection is not None:
            sel_start, sel_end = self.selection
            self.selection = (
                self._move_marker(sel_start, start, end, len(text), delta, False),
                self._move_marker(sel_end, start, end, len(text), delta, force_move_markers),
            )

        for listener in list(self._listeners):
            listener(self._value, local)

    @staticmethod
    def _move_marker(
        marker: int,
        start: int,
        end: int,
        inserted: int,
        delta: int,
        force: bool,
    ) -> int:
        if marker < start:
            return marker
        if marker > end:
            return marker + delta
        if force and marker == end:
            return start + inserted
        return min(marker, start + inserted)

    def edit(self, start: int, end: int, text: str) -> None:
        """Apply a user edit and leave the caret after the inserted text."""
        self.replace_range(start, end, text, force_move_markers=True, local=True)
        self.caret = start + len(text)

    def type_text(self, text: str) -> None:
        """Insert text at the caret as if typed."""
        self.edit(self.caret, self.caret, text)

    def undo(self) -> bool:
        """Revert the most recent edit, local or external."""
        if not self._undo:
            return False
        last = self._undo.pop()
        end = last.start + len(last.inserted)
        self._value = self._value[: last.start] + last.removed + self._value[end:]
        self.caret = last.caret_before
        for listener in list(self._listeners):
            listener(self._value, True)
        return True

    @property
    def undo_depth(self) -> int:
        return len(self._undo)


def _changed_range(old: str, new: str) -> tuple[int, int, str]:
    """Smallest ``(start, end, replacement)`` turning ``old`` into ``new``."""
    limit = min(len(old), len(new))
    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < limit - prefix
        and old[len(old) - 1 - suffix] == new[len(new) - 1 - suffix]
    ):
        suffix += 1
    return prefix, len(old) - suffix, new[prefix : len(new) - suffix]


def serialize_flow(flow: Flow) -> str:
    """Serialize a flow the way the editor shows it."""
    return json.dumps(flow.model_dump(mode="json", exclude=_HIDDEN_FIELDS), indent=2)


class TextAdapter:
    """Editable JSON projection of one flow.

    Attributes:
        origin: Tag this adapter's edits carry.
        buffer: The editor buffer.
        last_applied: Counter of the last signal this adapter accounted for.
        parse_error: Why the current buffer could not become a patch, if so.
    """

    origin = UpdateSource.EDITOR

    def __init__(self, store: FlowStore | None = None, buffer: TextBuffer | None = None) -> None:
        self.buffer = buffer or TextBuffer()
        self.buffer.on_change(self._on_buffer_change)
        self.flow_id: str | None = None
        self.last_applied = 0
        self.parse_error: str | None = None
        self.store: FlowStore | None = None
        if store is not None:
            self.attach(store)

    def attach(self, store: FlowStore) -> None:
        """Show a store's flow and follow its signals."""
        if self.store is not None:
            self.detach()
        self.store = store
        self.flow_id = store.flow_id
        self.last_applied = store.counter
        self.parse_error = None
        self.set_text(serialize_flow(store.get()))
        store.bus.subscribe(store.flow_id, self.on_signal)

    def detach(self) -> None:
        if self.store is None:
            return
        self.store.bus.unsubscribe(self.store.flow_id, self.on_signal)
        self.store = None

    # -----------------------------------------------------------------
    # Buffer access
    # -----------------------------------------------------------------

    def get_text(self) -> str:
        """Return the live buffer without touching the store."""
        return self.buffer.value

    def set_text(self, text: str) -> bool:
        """Swap ``text`` into the buffer without moving the caret.

        Returns:
            False when the buffer already held ``text``.
        """
        current = self.buffer.value
        if text == current:
            return False
        start, end, replacement = _changed_range(current, text)
        self.buffer.replace_range(start, end, replacement, force_move_markers=False)
        return True

    def on_signal(self, signal: UpdateSignal, flow: Flow) -> None:
        """Re-serialize the flow for signals produced by other views."""
        if signal.flow_id != self.flow_id:
            return
        if signal.counter <= self.last_applied:
            logger.debug(
                "text_signal_stale",
                flow_id=signal.flow_id,
                counter=signal.counter,
                last_applied=self.last_applied,
            )
            return
        self.last_applied = signal.counter
        if signal.source == self.origin:
            return
        self.parse_error = None
        self.set_text(serialize_flow(flow))

    # -----------------------------------------------------------------
    # Local edits
    # -----------------------------------------------------------------

    def _on_buffer_change(self, value: str, local: bool) -> None:
        if local:
            self.handle_local_edit(value)

    def handle_local_edit(self, text: str) -> UpdateSignal | None:
        """Turn the edited buffer into a store patch if it is a valid flow.

        Half-typed JSON is normal while editing, so parse and validation
        failures only record ``parse_error``.

        Returns:
            The published signal, or None if nothing was applied.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            self.parse_error = f"Invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})"
            logger.debug("editor_json_invalid", flow_id=self.flow_id, error=self.parse_error)
            return None

        try:
            if not isinstance(data, dict):
                raise ValueError("top-level value must be an object")
            data.setdefault("id", self.flow_id)
            parsed = Flow.model_validate(data)
        except (ValidationError, ValueError) as e:
            self.parse_error = f"Invalid flow: {e}"
            logger.debug("editor_flow_invalid", flow_id=self.flow_id, error=str(e))
            return None

        if parsed.id != self.flow_id:
            self.parse_error = "Flow id cannot be changed from the editor"
            logger.warning("editor_flow_id_changed", flow_id=self.flow_id, new_id=parsed.id)
            return None

        if self.store is None:
            self.parse_error = None
            return None

        patch = FlowPatch(
            name=parsed.name,
            description=parsed.description,
            enabled=parsed.enabled,
            nodes=parsed.nodes,
            edges=parsed.edges,
        )
        try:
            signal = self.store.apply(patch, self.origin)
        except ConsistencyError as e:
            self.parse_error = f"Rejected: {e}"
            return None
        self.parse_error = None
        return signal

    # -----------------------------------------------------------------
    # Navigation
    # -----------------------------------------------------------------

    def reveal_node(self, node_id: str) -> tuple[int, int] | None:
        """Select the JSON object of a node in the buffer.

        Finds the node's ``"id"`` entry, walks back to the opening brace of
        the enclosing object and forward to its matching closing brace.

        Returns:
            The selected ``(start, end)`` range, or None if the node is not
            in the buffer.
        """
        text = self.buffer.value
        needle = f'"id": {json.dumps(node_id)}'
        idx = text.find(needle)
        if idx < 0:
            return None

        depth = 0
        start = -1
        for i in range(idx, -1, -1):
            if text[i] == "}":
                depth += 1
            elif text[i] == "{":
                if depth == 0:
                    start = i
                    break
                depth -= 1
        if start < 0:
            return None

        depth = 0
        end = -1
        for i in range(start, len(text)):
            if text[i] == "{":
                depth += 1
            elif text[i] == "}":
                depth -= 1
                if depth == 0:
                    end = i + 1
                    break
        if end < 0:
            return None

        self.buffer.selection = (start, end)
        self.buffer.set_caret(start)
        return start, end
