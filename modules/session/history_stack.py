"""Bounded undo/redo timeline for the document being edited."""

from __future__ import annotations

from typing import List, Optional

from modules.core.types import EditingSnapshot

MAX_SESSION_HISTORY = 50


class SessionHistoryStack:
    """Snapshots plus a cursor; ``-1`` means the empty document."""

    def __init__(self, capacity: int = MAX_SESSION_HISTORY) -> None:
        if capacity < 1:
            raise ValueError("Undo capacity must be at least 1.")
        self.capacity = capacity
        self._entries: List[EditingSnapshot] = []
        self._cursor = -1

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def is_empty(self) -> bool:
        """True when the cursor sits before the first snapshot."""
        return self._cursor < 0

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, snapshot: EditingSnapshot) -> None:
        """Append a snapshot, dropping redo entries and the oldest one on overflow."""
        del self._entries[self._cursor + 1 :]
        self._entries.append(snapshot)
        if len(self._entries) > self.capacity:
            del self._entries[0]
        self._cursor = len(self._entries) - 1

    def current(self) -> Optional[EditingSnapshot]:
        if self._cursor < 0:
            return None
        return self._entries[self._cursor]

    def can_undo(self) -> bool:
        return self._cursor >= 0

    def can_redo(self) -> bool:
        return self._cursor < len(self._entries) - 1

    def undo(self) -> Optional[EditingSnapshot]:
        """Step back; returns None once the empty document is reached."""
        if self._cursor < 0:
            return None
        self._cursor -= 1
        return self.current()

    def redo(self) -> Optional[EditingSnapshot]:
        """Step forward; a no-op returning None at the tail."""
        if not self.can_redo():
            return None
        self._cursor += 1
        return self.current()

    def clear(self) -> None:
        self._entries.clear()
        self._cursor = -1
