"""Trainer controller: the single owner of working trees, cursors, undo and training.

Every operation works on the current board side. After each change the working tree
of the active repertoire is written back to its entry, a training session whose side
or root is gone is torn down, and the collection is scheduled for persistence.

In browse mode (no active repertoire) the working tree is a scratch copy of the side's
first entry. Only moves offered by some repertoire at the current position, or already
in the scratch tree, are accepted, and the scratch tree is never saved.
"""

import json
import logging
import random
from dataclasses import dataclass, fields, replace

import analysis
import explorer
import move_tree
import pgn_export
import pgn_import
import persistence
import repertoires
import rules
import training
from models import (
    SIDES,
    EngineLine,
    ExplorerResponse,
    MoveNode,
    MoveResult,
    MoveTree,
    RepertoireEntry,
    Settings,
    Side,
    TrainingSession,
)
from undo_history import UndoHistory

logger = logging.getLogger("repertoire_trainer")

BROWSE_MODE_NAME = "Browse mode"
ALL_REPERTOIRES_FILENAME = "all-repertoires.pgn"


@dataclass(frozen=True)
class OptionRow:
    """A move offered at the cursor. node_id is None for a browse option not yet visited."""

    move_code: str
    move_notation: str
    leaves: int
    node_id: str | None = None
    entry_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class Shape:
    origin: str
    destination: str
    brush: str


class TrainerController:
    def __init__(self, store: persistence.KeyValueStore | None = None, rng: random.Random | None = None,
                 settings: Settings | None = None, write_delay: float = persistence.WRITE_DELAY_SECONDS):
        self.store = store
        self.rng = rng or random.Random()
        self.settings = settings or Settings()
        self.collection = repertoires.default_collection()
        self.trees: dict[Side, MoveTree] = {}
        self.cursors: dict[Side, str] = {}
        self.history = UndoHistory()
        self.training: TrainingSession | None = None
        self.status = "Ready"
        self.explorer_data: ExplorerResponse | None = None
        self.engine_lines: list[EngineLine] = []
        self._data_position: str | None = None
        self.writer = (
            persistence.DebouncedWriter(store, write_delay, on_error=self._on_write_error)
            if store is not None else None
        )
        for side in SIDES:
            self._load_working(side, repertoires.working_entry(self.collection, side))

    # -- state -------------------------------------------------------------------

    @property
    def side(self) -> Side:
        return self.settings.repertoire_side

    @property
    def orientation(self) -> Side:
        if self.settings.is_board_flipped:
            return "black" if self.side == "white" else "white"
        return self.side

    @property
    def tree(self) -> MoveTree:
        return self.trees[self.side]

    @property
    def cursor(self) -> str:
        return self.cursors[self.side]

    @property
    def node(self) -> MoveNode:
        return self.tree.get(self.cursor) or self.tree.root

    @property
    def active_entry(self) -> RepertoireEntry | None:
        return self.collection.side(self.side).active

    @property
    def active_name(self) -> str:
        entry = self.active_entry
        return entry.name if entry else BROWSE_MODE_NAME

    @property
    def is_browse_mode(self) -> bool:
        return self.collection.side(self.side).is_browse_mode

    @property
    def is_training_active(self) -> bool:
        return self.training is not None and self.training.side == self.side

    def _load_working(self, side: Side, entry: RepertoireEntry | None) -> None:
        if entry is None:
            tree = move_tree.create_empty_tree(side)
            self.trees[side], self.cursors[side] = tree, tree.root_id
            return
        self.trees[side] = entry.tree
        self.cursors[side] = repertoires.repair_cursor(entry.tree, entry.cursor_node_id)

    def _reset_side(self, side: Side) -> None:
        self.history.clear(side)
        if self.training is not None and self.training.side == side:
            self.training = None

    def _set_working(self, tree: MoveTree, cursor: str, snapshot: bool = True) -> None:
        side = self.side
        if snapshot:
            self.history.push(side, self.trees[side], self.cursors[side])
        self.trees[side] = tree
        self.cursors[side] = cursor

    def _finish(self) -> None:
        for side in SIDES:
            entry = self.collection.side(side).active
            if entry is not None:
                self.collection = repertoires.update_entry(
                    self.collection, side, entry.id, self.trees[side], self.cursors[side]
                )
        if self.training is not None:
            session_tree = self.trees[self.training.side]
            if training.should_teardown(self.training, session_tree, self.side):
                logger.debug("Training session ended")
                self.training = None
        self._clear_stale_data()
        self.persist()

    def _clear_stale_data(self) -> None:
        if self._data_position != self.node.position:
            self.explorer_data = None
            self.engine_lines = []
            self._data_position = None

    # -- persistence ---------------------------------------------------------------

    def _on_write_error(self, key: str, exc: Exception) -> None:
        self.status = "Local settings save failed" if key == persistence.APP_SETTINGS_KEY else "Local save failed"

    def hydrate(self) -> bool:
        """Load collection and settings from the store. Entries open in browse mode."""
        if self.store is None:
            return False
        self.status = "Loading local repertoire..."
        try:
            collection = persistence.load_collection(self.store)
            settings = persistence.load_settings(self.store)
        except Exception as e:
            logger.warning("Loading stored state failed: %s", e)
            self.status = "Local storage load failed"
            return False

        self.settings = settings
        self.collection = collection
        for side in SIDES:
            self.collection = repertoires.activate(self.collection, side, None)
            self._load_working(side, repertoires.working_entry(self.collection, side))
            self.history.clear(side)
        self.training = None
        self.status = "Ready"
        return True

    def persist(self) -> None:
        if self.writer is None:
            return
        self.writer.schedule(persistence.APP_STATE_KEY, persistence.encode_collection(self.collection))
        self.writer.schedule(persistence.APP_SETTINGS_KEY, persistence.encode_settings(self.settings))

    def flush(self) -> None:
        if self.writer is not None:
            self.writer.flush()

    # -- moves and navigation --------------------------------------------------------

    def make_move(self, origin: str, destination: str, promotion: str = "q") -> bool:
        """Board move: a training attempt, or find-or-create a child and move the cursor."""
        result = rules.try_move(self.node.position, origin, destination, promotion)
        if result is None:
            return False
        if self.is_training_active:
            return self._training_move(result)
        return self._edit_move(result)

    def _training_move(self, result: MoveResult) -> bool:
        outcome = training.attempt(self.training, self.tree, self.cursor, result.move_code, self.rng)
        if not outcome.accepted:
            return False
        self.training = outcome.session
        self.cursors[self.side] = outcome.cursor_node_id
        if not outcome.matched:
            self.status = f"{result.notation} is not in your repertoire"
        self._finish()
        return True

    def _edit_move(self, result: MoveResult) -> bool:
        tree, cursor = self.tree, self.cursor
        if self.is_browse_mode and move_tree.find_child(tree, cursor, result.move_code) is None:
            offered = {o.move_code for o in repertoires.options_at(self.collection, self.side, self.node.position)}
            if result.move_code not in offered:
                self.status = f"{result.notation} is not in any {self.side} repertoire"
                return False

        new_tree, next_id = move_tree.ensure_child(tree, cursor, result)
        if next_id == cursor:
            return False
        self._set_working(new_tree, next_id)
        self._finish()
        return True

    def play_move_code(self, code: str) -> bool:
        """Play an explorer or engine move by its code. Disabled while training."""
        if self.is_training_active:
            return False
        squares = rules.split_move_code(code)
        if squares is None:
            return False
        promotion = code[4:5].lower() if code[4:5].lower() in ("q", "r", "b", "n") else "q"
        return self.make_move(squares[0], squares[1], promotion)

    def navigate(self, node_id: str) -> bool:
        if self.is_training_active or node_id not in self.tree or node_id == self.cursor:
            return False
        self._set_working(self.tree, node_id)
        self._finish()
        return True

    def go_back(self) -> bool:
        if self.is_training_active or self.node.parent_id is None:
            return False
        return self.navigate(self.node.parent_id)

    def delete_branch(self) -> bool:
        """Remove the current move and everything after it; the cursor moves to its parent."""
        node = self.node
        if self.is_training_active or node.parent_id is None:
            return False
        self._set_working(move_tree.remove_branch(self.tree, node.id), node.parent_id)
        self._finish()
        return True

    def undo(self) -> bool:
        if self.is_training_active:
            return False
        snapshot = self.history.pop(self.side)
        if snapshot is None:
            return False
        self._set_working(snapshot.tree, snapshot.cursor_node_id, snapshot=False)
        self._finish()
        return True

    # -- training --------------------------------------------------------------------

    def start_training(self) -> bool:
        """Drill the lines below the cursor."""
        if not self.node.children:
            self.status = "No moves to train from this position"
            return False
        self.training, cursor = training.start(self.tree, self.side, self.cursor, self.rng)
        self.cursors[self.side] = cursor
        self._finish()
        return True

    def stop_training(self) -> bool:
        if self.training is None:
            return False
        self.training = None
        self._finish()
        return True

    def continue_training(self) -> bool:
        if not self.is_training_active:
            return False
        self.training, cursor = training.restart(self.training, self.tree, self.rng)
        self.cursors[self.side] = cursor
        self._finish()
        return True

    def show_hint(self) -> str | None:
        """Reveal the armed hint. Returns its move code."""
        if not self.is_training_active:
            return None
        self.training = training.reveal_hint(self.training)
        return self.training.hint_move_code if self.training.hint_visible else None

    @property
    def training_phase(self) -> training.TrainingPhase:
        session = self.training if self.is_training_active else None
        return training.phase(session, self.tree, self.cursor)

    # -- side, board and settings ------------------------------------------------------

    def set_side(self, side: Side) -> None:
        if side == self.settings.repertoire_side:
            return
        self.settings = replace(self.settings, repertoire_side=side)
        self._finish()

    def flip_board(self) -> None:
        self.settings = replace(self.settings, is_board_flipped=not self.settings.is_board_flipped)
        self.persist()

    def update_settings(self, **changes) -> bool:
        """Apply setting changes; values are clamped and filtered like stored settings."""
        known = {f.name for f in fields(Settings)}
        unknown = set(changes) - known
        if unknown:
            self.status = f"Unknown settings: {', '.join(sorted(unknown))}"
            return False
        candidate = replace(self.settings, **changes)
        normalized = persistence.normalize_settings(json.loads(persistence.encode_settings(candidate)))
        if normalized is None:
            self.status = "Invalid settings"
            return False
        self.settings = normalized
        self._finish()
        return True

    # -- repertoires -------------------------------------------------------------------

    def create_repertoire(self, name: str, side: Side | None = None) -> RepertoireEntry:
        side = side or self.side
        self.collection, entry = repertoires.create(self.collection, side, name)
        self._load_working(side, entry)
        self._reset_side(side)
        self.status = f'Created repertoire "{entry.name}" ({side})'
        self._finish()
        return entry

    def load_repertoire(self, entry_id: str, side: Side | None = None) -> bool:
        side = side or self.side
        entry = self.collection.side(side).find(entry_id)
        if entry is None:
            return False
        self.collection = repertoires.activate(self.collection, side, entry.id)
        self._load_working(side, entry)
        self._reset_side(side)
        self._finish()
        return True

    def rename_repertoire(self, entry_id: str, name: str, side: Side | None = None) -> bool:
        side = side or self.side
        if self.collection.side(side).find(entry_id) is None:
            return False
        self.collection = repertoires.rename(self.collection, side, entry_id, name)
        self.status = f'Renamed repertoire to "{self.collection.side(side).find(entry_id).name}"'
        self._finish()
        return True

    def delete_repertoire(self, entry_id: str, side: Side | None = None) -> bool:
        """Delete an entry. Deleting the active one falls back to browsing the first remaining entry."""
        side = side or self.side
        current = self.collection.side(side)
        entry = current.find(entry_id)
        if entry is None:
            return False
        if not repertoires.can_delete(self.collection, side, entry_id):
            if repertoires.is_protected(entry):
                self.status = f'Repertoire "{entry.name}" cannot be deleted'
            else:
                self.status = "The last repertoire of a side cannot be deleted"
            return False

        was_active = current.active_id == entry_id
        self.collection = repertoires.delete(self.collection, side, entry_id)
        if was_active:
            self._load_working(side, self.collection.side(side).entries[0])
            self._reset_side(side)
        self.status = f'Deleted repertoire "{entry.name}"'
        self._finish()
        return True

    def enter_browse_mode(self, side: Side | None = None) -> None:
        side = side or self.side
        self.collection = repertoires.activate(self.collection, side, None)
        self._load_working(side, repertoires.working_entry(self.collection, side))
        self._reset_side(side)
        self._finish()

    # -- import / export ---------------------------------------------------------------

    def import_pgn(self, text: str, mode: str = "current") -> int:
        """Import PGN. "current" merges into the active tree; "db" creates one entry per game.

        Returns moves added ("current") or repertoires created ("db").
        """
        if mode == "db":
            self.collection, created = repertoires.import_database(self.collection, text, self.side)
            self.status = f"Imported {created} repertoires" if created else "No games found"
            self._finish()
            return created

        if self.is_browse_mode:
            self.status = "Load a repertoire before importing into it"
            return 0
        tree, cursor = self.tree, self.cursor
        new_tree = pgn_import.parse_pgn(text, self.side, tree)
        added = len(new_tree.nodes) - len(tree.nodes)
        if new_tree is tree:
            self.status = "No new moves imported"
            return 0
        self._set_working(new_tree, cursor if cursor in new_tree else new_tree.root_id)
        self.status = f"Imported {added} moves"
        self._finish()
        return added

    def export_current(self) -> tuple[str, str]:
        """(filename, PGN) for the working tree."""
        text = pgn_export.export_tree(self.tree, self.side, self.active_name)
        return pgn_export.safe_filename(self.side, self.active_name), text

    def export_all(self) -> tuple[str, str] | None:
        if not any(self.collection.side(side).entries for side in SIDES):
            return None
        return ALL_REPERTOIRES_FILENAME, pgn_export.export_collection(self.collection)

    # -- explorer and engine -------------------------------------------------------------

    def apply_explorer_response(self, position: str, response: ExplorerResponse | None) -> bool:
        """Store explorer data for the cursor position and re-sort its children by popularity.

        Data for any other position is stale and dropped. Returns True when children moved.
        """
        if position != self.node.position:
            return False
        self.explorer_data = response
        self._data_position = position
        if self.is_browse_mode or response is None or not response.moves:
            return False

        reordered = move_tree.reorder_children(self.tree, self.cursor, explorer.popularity_map(response))
        if reordered is self.tree:
            return False
        self.trees[self.side] = reordered
        self._finish()
        return True

    def set_engine_lines(self, position: str, lines: list[EngineLine]) -> bool:
        if position != self.node.position:
            return False
        self.engine_lines = list(lines)
        self._data_position = position
        return True

    def set_annotation(self, node_id: str, annotation: str | None) -> bool:
        tree = move_tree.set_annotation(self.tree, node_id, annotation)
        if tree is self.tree:
            return False
        self.trees[self.side] = tree
        self._finish()
        return True

    def evaluate_tree(self, engine, movetime: float | None = None) -> int:
        """Annotate deep leaves of the working tree with engine scores. Not available while browsing."""
        if self.is_browse_mode:
            return 0
        leaves = analysis.leaves_to_evaluate(self.tree)
        if not leaves:
            return 0
        self.trees[self.side] = analysis.annotate_tree(
            self.tree, engine, movetime if movetime is not None else analysis.TREE_EVAL_MOVETIME
        )
        self.status = f"Evaluated {len(leaves)} positions"
        self._finish()
        return len(leaves)

    # -- derived views -------------------------------------------------------------------

    def displayed_options(self) -> list[OptionRow]:
        """Moves at the cursor with leaf counts; in browse mode the union of all repertoires."""
        node = self.node
        if self.is_browse_mode:
            return [
                OptionRow(
                    move_code=option.move_code,
                    move_notation=option.move_notation,
                    leaves=len(option.entry_ids),
                    node_id=move_tree.find_child(self.tree, node.id, option.move_code),
                    entry_names=option.entry_names,
                )
                for option in repertoires.options_at(self.collection, self.side, node.position)
            ]

        rows = []
        for child_id in node.children:
            child = self.tree.nodes.get(child_id)
            if child is None or not child.move_code:
                continue
            rows.append(
                OptionRow(
                    move_code=child.move_code,
                    move_notation=child.move_notation or "",
                    leaves=move_tree.count_leaves(self.tree, child_id),
                    node_id=child_id,
                )
            )
        return rows

    def repertoires_at_position(self) -> list[str]:
        return repertoires.repertoires_at(self.collection, self.side, self.node.position)

    def path(self) -> list[MoveNode]:
        return move_tree.build_path(self.tree, self.cursor)

    def legal_destinations(self) -> dict[str, list[str]]:
        return rules.legal_destinations(self.node.position)

    def shapes(self) -> list[Shape]:
        """Arrows for the board view."""
        if self.is_training_active:
            session = self.training
            squares = rules.split_move_code(session.hint_move_code) if session.hint_visible else None
            return [Shape(squares[0], squares[1], "hint")] if squares else []

        result = []
        if self.settings.show_tree_arrows:
            for option in self.displayed_options():
                squares = rules.split_move_code(option.move_code)
                if squares:
                    result.append(Shape(squares[0], squares[1], "tree"))
        if self.settings.show_explorer_arrows and self.explorer_data is not None:
            for move in self.explorer_data.moves:
                squares = rules.split_move_code(move.move_code)
                if squares and explorer.move_share(move, self.explorer_data) >= self.settings.arrow_threshold:
                    result.append(Shape(squares[0], squares[1], "explorer"))
        if self.settings.show_engine_arrows and self.engine_lines:
            squares = rules.split_move_code(self.engine_lines[0].best_move_code)
            if squares:
                result.append(Shape(squares[0], squares[1], "engine"))
        return result

    def last_move(self) -> tuple[str, str] | None:
        return rules.split_move_code(self.node.move_code)
