"""Tests for controller.py"""

import random
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import chess
import chess.engine

import move_tree
import persistence
from controller import Shape, TrainerController
from db import MemoryKeyValueStore
from models import EngineLine, ExplorerMove, ExplorerResponse
from training import TrainingPhase

ITALIAN = "1. e4 e5 2. Nf3 (2. Bc4 Bc5) Nc6"


def make_controller(store=None, **kwargs) -> TrainerController:
    return TrainerController(store=store or MemoryKeyValueStore(), rng=random.Random(0), write_delay=60, **kwargs)


def with_repertoire(pgn=ITALIAN, name="Main") -> TrainerController:
    controller = make_controller()
    controller.create_repertoire(name)
    if pgn:
        controller.import_pgn(pgn)
    return controller


def notations(controller):
    return [n.move_notation for n in controller.path()[1:]]


class FailingStore(MemoryKeyValueStore):
    def __init__(self, failing_key=None, fail_reads=False):
        super().__init__()
        self.failing_key = failing_key
        self.fail_reads = fail_reads

    def get(self, key):
        if self.fail_reads:
            raise OSError("storage unavailable")
        return super().get(key)

    def set(self, key, value):
        if key == self.failing_key:
            raise OSError("quota exceeded")
        super().set(key, value)


# -- editing ---------------------------------------------------------------------


def test_starts_in_browse_mode_and_rejects_unknown_moves():
    controller = make_controller()
    assert controller.is_browse_mode
    assert controller.active_name == "Browse mode"
    assert not controller.make_move("e2", "e4")
    assert controller.status == "e4 is not in any white repertoire"


def test_board_moves_extend_active_repertoire():
    controller = with_repertoire(pgn=None)
    assert controller.make_move("e2", "e4")
    assert controller.make_move("e7", "e5")
    assert notations(controller) == ["e4", "e5"]
    assert controller.last_move() == ("e7", "e5")
    assert controller.active_entry.tree is controller.tree
    assert controller.active_entry.cursor_node_id == controller.cursor


def test_illegal_move_is_rejected():
    controller = with_repertoire(pgn=None)
    assert not controller.make_move("e2", "e5")
    assert controller.tree.next_id == 1


def test_promotion_defaults_to_queen():
    controller = with_repertoire(pgn="1. h4 g5 2. hxg5 h6 3. gxh6 Nf6 4. h7 Ng8")
    controller.navigate(next(move_tree.iter_leaves(controller.tree)).id)
    assert controller.make_move("h7", "g8")
    assert controller.node.move_code == "h7g8q"
    controller.go_back()
    assert controller.make_move("h7", "g8", "n")
    assert controller.node.move_notation == "hxg8=N"


def test_existing_move_is_followed_not_duplicated():
    controller = with_repertoire()
    size = len(controller.tree.nodes)
    assert controller.make_move("e2", "e4")
    assert len(controller.tree.nodes) == size
    assert notations(controller) == ["e4"]


def test_navigation_and_back():
    controller = with_repertoire()
    controller.make_move("e2", "e4")
    controller.make_move("e7", "e5")
    assert controller.go_back()
    assert notations(controller) == ["e4"]
    assert not controller.navigate("n-999")
    assert controller.navigate(controller.tree.root_id)
    assert not controller.go_back()


def test_delete_branch_and_undo():
    controller = with_repertoire()
    controller.make_move("e2", "e4")
    controller.make_move("e7", "e5")
    controller.make_move("g1", "f3")
    before = controller.tree

    assert controller.delete_branch()
    assert notations(controller) == ["e4", "e5"]
    assert [controller.tree.nodes[c].move_notation for c in controller.node.children] == ["Bc4"]

    assert controller.undo()
    assert controller.tree is before
    assert notations(controller) == ["e4", "e5", "Nf3"]


def test_undo_history_is_per_side():
    controller = with_repertoire(pgn=None)
    controller.make_move("e2", "e4")
    controller.set_side("black")
    assert not controller.undo()
    controller.set_side("white")
    assert controller.undo()
    assert controller.cursor == controller.tree.root_id


# -- browse mode -------------------------------------------------------------------


def test_browse_mode_offers_union_of_repertoires():
    controller = with_repertoire("1. e4 e5 2. Nf3", name="Open")
    controller.create_repertoire("Italian")
    controller.import_pgn("1. e4 e5 2. Bc4")
    controller.enter_browse_mode()

    assert controller.make_move("e2", "e4")
    assert controller.make_move("e7", "e5")
    options = {row.move_notation: row for row in controller.displayed_options()}
    assert set(options) == {"Nf3", "Bc4"}
    assert options["Nf3"].entry_names == ("Open",)
    assert options["Bc4"].entry_names == ("Italian",)
    assert options["Nf3"].node_id is None
    assert controller.repertoires_at_position() == ["Italian", "Open"]

    assert not controller.make_move("d2", "d4")
    default = controller.collection.side("white").entries[0]
    assert len(default.tree.nodes) == 1


def test_import_into_browse_mode_is_refused():
    controller = make_controller()
    assert controller.import_pgn("1. e4") == 0
    assert controller.status == "Load a repertoire before importing into it"


# -- training ----------------------------------------------------------------------


def test_training_round():
    controller = with_repertoire()
    assert controller.start_training()
    assert controller.training_phase == TrainingPhase.ACTIVE

    assert controller.make_move("d2", "d4")
    assert controller.status == "d4 is not in your repertoire"
    assert controller.training_phase == TrainingPhase.HINT_REQUESTED
    assert controller.shapes() == []
    assert controller.show_hint() == "e2e4"
    assert controller.shapes() == [Shape("e2", "e4", "hint")]

    assert controller.make_move("e2", "e4")
    assert notations(controller) == ["e4", "e5"]
    assert not controller.navigate(controller.tree.root_id)
    assert not controller.play_move_code("g1f3")

    assert controller.stop_training()
    assert controller.training_phase == TrainingPhase.IDLE


def test_training_never_adds_moves():
    controller = with_repertoire()
    size = len(controller.tree.nodes)
    controller.start_training()
    controller.make_move("d2", "d4")
    assert len(controller.tree.nodes) == size


def test_training_needs_moves():
    controller = with_repertoire(pgn=None)
    assert not controller.start_training()
    assert controller.status == "No moves to train from this position"


def test_continue_training_restarts_from_root():
    controller = with_repertoire()
    controller.start_training()
    controller.make_move("e2", "e4")
    controller.make_move("g1", "f3")
    assert controller.training_phase == TrainingPhase.LINE_COMPLETE
    assert controller.continue_training()
    assert controller.cursor == controller.tree.root_id


def test_side_change_ends_training_but_flip_does_not():
    controller = with_repertoire()
    controller.start_training()
    controller.flip_board()
    assert controller.orientation == "black"
    assert controller.is_training_active
    controller.set_side("black")
    assert controller.training is None


# -- repertoires ---------------------------------------------------------------------


def test_create_and_rename_repertoire():
    controller = make_controller()
    entry = controller.create_repertoire("  Najdorf ", "black")
    assert controller.status == 'Created repertoire "Najdorf" (black)'
    assert controller.collection.side("black").active_id == entry.id
    assert controller.rename_repertoire(entry.id, "Scheveningen", "black")
    assert controller.status == 'Renamed repertoire to "Scheveningen"'
    assert not controller.rename_repertoire("missing", "x")


def test_delete_rules():
    controller = make_controller()
    default = controller.collection.side("white").entries[0]
    assert not controller.delete_repertoire(default.id)
    assert controller.status == 'Repertoire "Default" cannot be deleted'

    controller.rename_repertoire(default.id, "Renamed")
    assert not controller.delete_repertoire(default.id)
    assert controller.status == "The last repertoire of a side cannot be deleted"


def test_delete_active_repertoire_falls_back_to_first_entry():
    controller = with_repertoire()
    entry = controller.active_entry
    assert controller.delete_repertoire(entry.id)
    assert controller.status == 'Deleted repertoire "Main"'
    assert controller.is_browse_mode
    assert controller.tree is controller.collection.side("white").entries[0].tree


def test_delete_active_repertoire_clears_undo_and_ends_training():
    controller = with_repertoire()
    entry = controller.active_entry
    assert controller.history.depth("white") > 0
    assert controller.start_training()

    assert controller.delete_repertoire(entry.id)
    assert controller.history.depth("white") == 0
    assert controller.training is None
    assert controller.training_phase == TrainingPhase.IDLE
    assert not controller.undo()


def test_load_repertoire_resets_undo():
    controller = with_repertoire()
    main = controller.active_entry
    controller.create_repertoire("Other")
    controller.make_move("d2", "d4")
    assert controller.load_repertoire(main.id)
    assert controller.history.depth("white") == 0
    assert controller.tree is main.tree
    assert not controller.load_repertoire("missing")


def test_import_database_mode():
    controller = make_controller()
    text = '[Event "Repertoire Trainer - London"]\n[White "Repertoire"]\n\n1. d4 d5 2. Bf4 *'
    assert controller.import_pgn(text, "db") == 1
    assert controller.status == "Imported 1 repertoires"
    assert [e.name for e in controller.collection.side("white").entries] == ["Default", "London"]
    assert controller.import_pgn("", "db") == 0
    assert controller.status == "No games found"


def test_import_current_reports_added_moves():
    controller = with_repertoire(pgn=None)
    assert controller.import_pgn(ITALIAN) == 6
    assert controller.status == "Imported 6 moves"
    assert controller.import_pgn(ITALIAN) == 0
    assert controller.status == "No new moves imported"


def test_export():
    controller = with_repertoire()
    filename, text = controller.export_current()
    assert filename == "white-Main.pgn"
    assert '[Event "Repertoire Trainer - Main"]' in text
    name, all_text = controller.export_all()
    assert name == "all-repertoires.pgn"
    assert all_text.count("[Event ") == 3


# -- settings and persistence --------------------------------------------------------


def test_update_settings_clamps_and_validates():
    controller = make_controller()
    assert controller.update_settings(engine_depth=99, arrow_threshold=12)
    assert controller.settings.engine_depth == 32
    assert controller.settings.arrow_threshold == 10
    assert not controller.update_settings(date_range="7y")
    assert controller.status == "Invalid settings"
    assert not controller.update_settings(colour="blue")


def test_changes_are_persisted_on_flush():
    store = MemoryKeyValueStore()
    controller = make_controller(store)
    controller.create_repertoire("Main")
    controller.make_move("e2", "e4")
    assert persistence.APP_STATE_KEY not in store.data

    controller.flush()
    saved = persistence.load_collection(store)
    entry = saved.side("white").active
    assert entry.name == "Main"
    assert len(entry.tree.nodes) == 2
    assert persistence.load_settings(store) == controller.settings


def test_hydrate_opens_in_browse_mode():
    store = MemoryKeyValueStore()
    first = make_controller(store)
    first.create_repertoire("Main")
    first.make_move("e2", "e4")
    first.update_settings(theme_mode="dark")
    first.flush()

    second = make_controller(store)
    assert second.hydrate()
    assert second.status == "Ready"
    assert second.settings.theme_mode == "dark"
    assert second.is_browse_mode
    assert second.tree is second.collection.side("white").entries[0].tree


def test_hydrate_failure_sets_status():
    controller = make_controller(FailingStore(fail_reads=True))
    assert not controller.hydrate()
    assert controller.status == "Local storage load failed"


def test_write_failure_sets_status():
    controller = make_controller(FailingStore(failing_key=persistence.APP_STATE_KEY))
    controller.create_repertoire("Main")
    controller.flush()
    assert controller.status == "Local save failed"

    controller = make_controller(FailingStore(failing_key=persistence.APP_SETTINGS_KEY))
    controller.flip_board()
    controller.flush()
    assert controller.status == "Local settings save failed"


# -- explorer and engine data ----------------------------------------------------------


def explorer_response(*moves):
    return ExplorerResponse(
        white=sum(m[1] for m in moves),
        moves=[ExplorerMove(move_code=code, notation=code, white=games) for code, games in moves],
    )


def test_explorer_response_reorders_children():
    controller = with_repertoire("1. e4 (1. d4) (1. c4)")
    response = explorer_response(("d2d4", 60), ("c2c4", 37), ("e2e4", 3))
    assert controller.apply_explorer_response(controller.node.position, response)
    assert [row.move_notation for row in controller.displayed_options()] == ["d4", "c4", "e4"]

    controller.settings.show_tree_arrows = False
    brushes = [(s.origin, s.brush) for s in controller.shapes()]
    assert brushes == [("d2", "explorer"), ("c2", "explorer")]


def test_stale_explorer_response_is_dropped():
    controller = with_repertoire("1. e4 (1. d4)")
    stale_position = controller.node.position
    controller.make_move("e2", "e4")
    assert not controller.apply_explorer_response(stale_position, explorer_response(("d2d4", 10)))
    assert controller.explorer_data is None


def test_explorer_does_not_reorder_in_browse_mode():
    controller = with_repertoire("1. e4 (1. d4)")
    controller.enter_browse_mode()
    controller.navigate(controller.tree.root_id)
    assert not controller.apply_explorer_response(controller.node.position, explorer_response(("d2d4", 10)))
    assert controller.explorer_data is not None


def test_engine_lines_are_cleared_when_cursor_moves():
    controller = with_repertoire()
    line = EngineLine(rank=1, best_move_code="e2e4", best_move_notation="e4", score_text="0.30",
                      eval_value=30, pv="e2e4")
    assert controller.set_engine_lines(controller.node.position, [line])
    assert Shape("e2", "e4", "engine") in controller.shapes()
    controller.make_move("e2", "e4")
    assert controller.engine_lines == []


def test_evaluate_tree_annotates_deep_leaves():
    class FakeEngine:
        def analyse(self, board, limit, multipv=None):
            return [{"score": chess.engine.PovScore(chess.engine.Cp(12), chess.WHITE),
                     "pv": [next(iter(board.legal_moves))]}]

    controller = with_repertoire("1. e4 (1. d4 d5) e5 2. Nf3 Nc6 3. Bc4 Bc5 4. c3 Nf6")
    assert controller.evaluate_tree(FakeEngine(), movetime=0.01) == 1
    annotations = [n.annotation for n in controller.tree.nodes.values() if n.annotation]
    assert annotations == ["0.12"]
    assert controller.status == "Evaluated 1 positions"
