"""Randomized training traversal over a repertoire tree.

The trainee plays their side's moves; the opponent's replies are drawn uniformly at
random from the tree. A move the tree does not contain is never merged: it arms a
hint (one of the expected moves) that is shown only when asked for.
"""

import logging
import random
from dataclasses import dataclass, replace
from enum import Enum

import rules
from models import MoveTree, Side, TrainingSession

logger = logging.getLogger("repertoire_trainer")

MAX_ADVANCE_STEPS = 256


class TrainingPhase(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    HINT_REQUESTED = "hint_requested"
    HINT_VISIBLE = "hint_visible"
    LINE_COMPLETE = "line_complete"


@dataclass(frozen=True)
class AttemptOutcome:
    accepted: bool
    session: TrainingSession
    cursor_node_id: str
    matched: bool = False


def is_trainee_turn(tree: MoveTree, node_id: str, side: Side) -> bool:
    node = tree.get(node_id)
    return node is not None and rules.side_to_move(node.position) == side


def advance(tree: MoveTree, side: Side, start_node_id: str, rng: random.Random) -> str:
    """Auto-play opponent replies from start_node_id until a leaf or the trainee's turn."""
    node_id = start_node_id
    for _ in range(MAX_ADVANCE_STEPS):
        node = tree.get(node_id)
        if node is None or not node.children:
            break
        if rules.side_to_move(node.position) == side:
            break
        node_id = rng.choice(node.children)
    return node_id


def start(tree: MoveTree, side: Side, root_node_id: str, rng: random.Random) -> tuple[TrainingSession, str]:
    root = root_node_id if root_node_id in tree else tree.root_id
    session = TrainingSession(side=side, root_node_id=root)
    return session, advance(tree, side, root, rng)


def clear_hint(session: TrainingSession) -> TrainingSession:
    return replace(session, hint_requested=False, hint_visible=False, hint_move_code=None)


def attempt(session: TrainingSession, tree: MoveTree, cursor_node_id: str, move_code: str,
            rng: random.Random) -> AttemptOutcome:
    """Check a trainee move against the children of the cursor.

    Rejected without effect when the cursor is a leaf or it is the opponent's turn.
    A mismatch arms a hint with a uniformly chosen expected move.
    """
    node = tree.get(cursor_node_id)
    if node is None or not node.children or not is_trainee_turn(tree, cursor_node_id, session.side):
        return AttemptOutcome(accepted=False, session=session, cursor_node_id=cursor_node_id)

    for child_id in node.children:
        child = tree.nodes.get(child_id)
        if child is not None and child.move_code == move_code:
            cursor = advance(tree, session.side, child_id, rng)
            return AttemptOutcome(accepted=True, session=clear_hint(session), cursor_node_id=cursor, matched=True)

    hint_child = tree.nodes.get(rng.choice(node.children))
    logger.debug("Training miss at %s: %s not in repertoire", cursor_node_id, move_code)
    armed = replace(
        session,
        hint_requested=True,
        hint_visible=False,
        hint_move_code=hint_child.move_code if hint_child else None,
    )
    return AttemptOutcome(accepted=True, session=armed, cursor_node_id=cursor_node_id)


def reveal_hint(session: TrainingSession) -> TrainingSession:
    if not session.hint_requested or session.hint_move_code is None:
        return session
    return replace(session, hint_visible=True)


def restart(session: TrainingSession, tree: MoveTree, rng: random.Random) -> tuple[TrainingSession, str]:
    """Start a fresh random line from the session root."""
    return clear_hint(session), advance(tree, session.side, session.root_node_id, rng)


def phase(session: TrainingSession | None, tree: MoveTree, cursor_node_id: str) -> TrainingPhase:
    if session is None:
        return TrainingPhase.IDLE
    if session.hint_visible:
        return TrainingPhase.HINT_VISIBLE
    if session.hint_requested:
        return TrainingPhase.HINT_REQUESTED
    node = tree.get(cursor_node_id)
    if node is None or not node.children:
        return TrainingPhase.LINE_COMPLETE
    return TrainingPhase.ACTIVE


def should_teardown(session: TrainingSession | None, tree: MoveTree, side: Side) -> bool:
    """A session ends when the board side changes or its root leaves the tree."""
    if session is None:
        return False
    return session.side != side or session.root_node_id not in tree
