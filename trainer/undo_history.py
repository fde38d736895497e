"""Bounded per-side undo stacks of (tree, cursor) snapshots."""

from collections import deque

from models import MoveTree, Side, UndoSnapshot

MAX_UNDO_DEPTH = 200


class UndoHistory:
    """One linear stack per side. The oldest snapshot is dropped past MAX_UNDO_DEPTH; no redo."""

    def __init__(self, max_depth: int = MAX_UNDO_DEPTH):
        self.max_depth = max_depth
        self._stacks: dict[Side, deque[UndoSnapshot]] = {
            "white": deque(maxlen=max_depth),
            "black": deque(maxlen=max_depth),
        }

    def push(self, side: Side, tree: MoveTree, cursor_node_id: str) -> None:
        self._stacks[side].append(UndoSnapshot(tree=tree, cursor_node_id=cursor_node_id))

    def pop(self, side: Side) -> UndoSnapshot | None:
        stack = self._stacks[side]
        return stack.pop() if stack else None

    def clear(self, side: Side) -> None:
        self._stacks[side].clear()

    def depth(self, side: Side) -> int:
        return len(self._stacks[side])
