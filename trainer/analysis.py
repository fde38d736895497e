#!/usr/bin/env python3
"""
Engine Analysis — Stockfish lines for positions and leaf evaluation for trees

Multi-line analysis of a single position (score text, best move, principal variation)
and batch evaluation of every repertoire leaf at ply 8 or deeper. Leaf scores are stored
as node annotations and exported as [%eval] comments.

Usage:
  python analysis.py
  python analysis.py --side white --movetime 5
  STOCKFISH_PATH=/usr/bin/stockfish python analysis.py --parallel  # Celery workers
"""

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Callable

import chess
import chess.engine

sys.path.insert(0, str(Path(__file__).resolve().parent))
import move_tree
import rules
from models import SIDES, EngineLine, MoveNode, MoveTree

logger = logging.getLogger("repertoire_trainer")

PV_NOTATION_LIMIT = 8
MATE_SCALE = 100000
TREE_EVAL_MIN_PLY = 8
TREE_EVAL_MOVETIME = 10.0


def format_score(score: chess.engine.PovScore) -> tuple[str, int]:
    """Score text and sortable value from White's perspective: ('0.32', 32) or ('M3', 300000)."""
    white_score = score.white()
    if white_score.is_mate():
        m = white_score.mate()
        return f"M{m}", m * MATE_SCALE
    cp = white_score.score()
    return f"{cp / 100:.2f}", cp


def info_to_line(board: chess.Board, info: dict, rank: int) -> EngineLine | None:
    """EngineLine from one engine info dict; None when it carries no principal variation."""
    pv = info.get("pv") or []
    if not pv:
        return None
    score = info.get("score")
    score_text, eval_value = format_score(score) if score is not None else ("?", 0)

    replay = board.copy(stack=False)
    notation = []
    for move in pv[:PV_NOTATION_LIMIT]:
        if not replay.is_legal(move):
            break
        notation.append(replay.san(move))
        replay.push(move)

    return EngineLine(
        rank=rank,
        best_move_code=pv[0].uci(),
        best_move_notation=notation[0] if notation else pv[0].uci(),
        score_text=score_text,
        eval_value=eval_value,
        pv=" ".join(move.uci() for move in pv),
        pv_notation=" ".join(notation),
    )


def analyse_position(engine: chess.engine.SimpleEngine, position: str, depth: int, lines: int) -> list[EngineLine]:
    """Ranked lines for a position at a fixed depth."""
    board = rules.board_for(position)
    infos = engine.analyse(board, chess.engine.Limit(depth=depth), multipv=lines)
    result = []
    for i, info in enumerate(infos):
        line = info_to_line(board, info, info.get("multipv", i + 1))
        if line is not None:
            result.append(line)
    result.sort(key=lambda line: line.rank)
    return result


class AnalysisSession:
    """Streams ranked lines for one position at a time.

    start() on a new position stops the running search first. Updates from a
    superseded search are dropped, never delivered.
    """

    def __init__(
        self,
        engine: chess.engine.SimpleEngine,
        on_update: Callable[[str, list[EngineLine]], None],
        on_complete: Callable[[str], None] | None = None,
    ):
        self.engine = engine
        self.on_update = on_update
        self.on_complete = on_complete
        self._lock = threading.Lock()
        self._generation = 0
        self._analysis = None
        self._thread: threading.Thread | None = None

    def start(self, position: str, depth: int, lines: int) -> None:
        self.stop()
        board = rules.board_for(position)
        with self._lock:
            self._generation += 1
            generation = self._generation
            analysis = self.engine.analysis(board, chess.engine.Limit(depth=depth), multipv=lines)
            self._analysis = analysis
        self._thread = threading.Thread(
            target=self._pump, args=(analysis, board, position, generation), daemon=True
        )
        self._thread.start()

    def _current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _pump(self, analysis, board: chess.Board, position: str, generation: int) -> None:
        lines: dict[int, EngineLine] = {}
        try:
            for info in analysis:
                line = info_to_line(board, info, info.get("multipv", 1))
                if line is None:
                    continue
                lines[line.rank] = line
                if not self._current(generation):
                    return
                self.on_update(position, [lines[rank] for rank in sorted(lines)])
        except chess.engine.EngineError as e:
            logger.warning("Engine analysis failed: %s", e)
        if self.on_complete is not None and self._current(generation):
            self.on_complete(position)

    def stop(self) -> None:
        with self._lock:
            analysis, self._analysis = self._analysis, None
            self._generation += 1
        if analysis is not None:
            analysis.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


def leaves_to_evaluate(tree: MoveTree, min_ply: int = TREE_EVAL_MIN_PLY) -> list[MoveNode]:
    """Leaves at least min_ply half-moves deep."""
    return [node for node in move_tree.iter_leaves(tree) if move_tree.ply_depth(tree, node.id) >= min_ply]


def evaluate_position(engine: chess.engine.SimpleEngine, position: str, movetime: float) -> str | None:
    """Score text of the best line after a fixed think time."""
    board = rules.board_for(position)
    info = engine.analyse(board, chess.engine.Limit(time=movetime), multipv=1)
    if not info:
        return None
    score = info[0].get("score")
    if score is None:
        return None
    return format_score(score)[0]


def apply_scores(tree: MoveTree, scores: dict[str, str | None]) -> MoveTree:
    for node_id, score_text in scores.items():
        if score_text is not None:
            tree = move_tree.set_annotation(tree, node_id, score_text)
    return tree


def annotate_tree(
    tree: MoveTree,
    engine: chess.engine.SimpleEngine,
    movetime: float = TREE_EVAL_MOVETIME,
    min_ply: int = TREE_EVAL_MIN_PLY,
    should_stop: Callable[[], bool] | None = None,
) -> MoveTree:
    """Store the engine score of every deep leaf as its annotation."""
    scores: dict[str, str | None] = {}
    leaves = leaves_to_evaluate(tree, min_ply)
    for i, node in enumerate(leaves):
        if should_stop is not None and should_stop():
            break
        try:
            scores[node.id] = evaluate_position(engine, node.position, movetime)
        except chess.engine.EngineError as e:
            logger.warning("Evaluation of %s failed: %s", node.id, e)
            continue
        logger.debug("Evaluated %d/%d leaves", i + 1, len(leaves))
    return apply_scores(tree, scores)


def annotate_tree_parallel(tree: MoveTree, stockfish_path: str, movetime: float = TREE_EVAL_MOVETIME,
                           min_ply: int = TREE_EVAL_MIN_PLY) -> MoveTree:
    """Fan leaf evaluation out to Celery workers and wait for all results."""
    from celery import group

    from celery_app import evaluate_position_task

    leaves = leaves_to_evaluate(tree, min_ply)
    if not leaves:
        return tree
    job = group(evaluate_position_task.s(rules.resolve_fen(n.position), stockfish_path, movetime) for n in leaves)
    results = job.apply_async().get()
    return apply_scores(tree, {node.id: score for node, score in zip(leaves, results)})


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--side", choices=["white", "black"], default=None, help="Only this side (default: both)")
    parser.add_argument("--movetime", type=float, default=TREE_EVAL_MOVETIME, help="Seconds per leaf")
    parser.add_argument("--min-ply", type=int, default=TREE_EVAL_MIN_PLY)
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Enqueue Celery tasks instead of running locally (requires Redis)",
    )
    args = parser.parse_args()

    from config import get_stockfish_path, setup_logging
    from db import PostgresKeyValueStore
    import persistence
    import repertoires

    setup_logging()
    path = get_stockfish_path()
    store = PostgresKeyValueStore()
    collection = persistence.load_collection(store)
    sides = [args.side] if args.side else list(SIDES)

    def annotate_all(annotate: Callable[[MoveTree], MoveTree]) -> int:
        nonlocal collection
        count = 0
        for side in sides:
            for entry in collection.side(side).entries:
                tree = annotate(entry.tree)
                collection = repertoires.update_entry(collection, side, entry.id, tree, entry.cursor_node_id)
                count += len(leaves_to_evaluate(entry.tree, args.min_ply))
        return count

    if args.parallel:
        n = annotate_all(lambda tree: annotate_tree_parallel(tree, path, args.movetime, args.min_ply))
    else:
        try:
            with chess.engine.SimpleEngine.popen_uci(path) as engine:
                n = annotate_all(lambda tree: annotate_tree(tree, engine, args.movetime, args.min_ply))
        except FileNotFoundError:
            print("Stockfish not found. Install it or set STOCKFISH_PATH.", file=sys.stderr)
            sys.exit(1)

    persistence.save_collection(store, collection)
    print(f"Evaluated {n} leaves.")


if __name__ == "__main__":
    main()
