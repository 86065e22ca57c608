"""SessionHistoryStack 单元测试。"""

from __future__ import annotations

import pytest

from modules.core.types import Artifact, EditingSnapshot
from modules.session.history_stack import SessionHistoryStack


def snapshot(name: str) -> EditingSnapshot:
    return EditingSnapshot(artifact=Artifact(payload=name, media_type="image/png"), instruction=name)


def test_push_moves_cursor_to_tail():
    stack = SessionHistoryStack()
    stack.push(snapshot("a"))
    stack.push(snapshot("b"))

    assert stack.cursor == 1
    assert stack.current().instruction == "b"
    assert not stack.can_redo()


def test_undo_redo_round_trip():
    stack = SessionHistoryStack()
    for name in ("a", "b", "c"):
        stack.push(snapshot(name))

    assert stack.undo().instruction == "b"
    assert stack.undo().instruction == "a"
    assert stack.redo().instruction == "b"
    assert stack.redo().instruction == "c"
    assert stack.redo() is None
    assert stack.current().instruction == "c"


def test_undo_past_first_snapshot_reaches_empty():
    stack = SessionHistoryStack()
    stack.push(snapshot("a"))
    stack.push(snapshot("b"))

    stack.undo()
    assert stack.undo() is None
    assert stack.is_empty
    assert not stack.can_undo()
    # further undo is a no-op
    assert stack.undo() is None
    assert stack.cursor == -1
    assert stack.redo().instruction == "a"


def test_push_after_undo_drops_redo_entries():
    stack = SessionHistoryStack()
    for name in ("a", "b", "c"):
        stack.push(snapshot(name))
    stack.undo()
    stack.undo()
    stack.push(snapshot("d"))

    assert len(stack) == 2
    assert stack.current().instruction == "d"
    assert not stack.can_redo()
    assert stack.undo().instruction == "a"


def test_capacity_drops_oldest():
    stack = SessionHistoryStack(capacity=3)
    for name in ("a", "b", "c", "d", "e"):
        stack.push(snapshot(name))

    assert len(stack) == 3
    assert stack.cursor == 2
    assert stack.undo().instruction == "d"
    assert stack.undo().instruction == "c"
    assert stack.undo() is None


def test_clear_resets():
    stack = SessionHistoryStack()
    stack.push(snapshot("a"))
    stack.clear()

    assert len(stack) == 0
    assert stack.is_empty
    assert stack.current() is None


def test_invalid_capacity():
    with pytest.raises(ValueError):
        SessionHistoryStack(capacity=0)
