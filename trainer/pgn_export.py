#!/usr/bin/env python3
"""
PGN Export — repertoire move trees to PGN text

The first child of a node continues the main line; every further child becomes a
parenthesized variation. Node annotations are written as [%eval] comments.

Usage:
  python pgn_export.py --output ./pgn/
  python pgn_export.py --output all.pgn --single-file
"""

import argparse
import re
import sys
from datetime import date
from pathlib import Path

import chess
import chess.pgn

sys.path.insert(0, str(Path(__file__).resolve().parent))
from models import SIDES, Collection, MoveTree, Side, normalize_repertoire_name

EVENT_PREFIX = "Repertoire Trainer - "
EVENT_NAME = "Repertoire Trainer"


def eval_comment(annotation: str) -> str:
    """'0.32' -> '[%eval 0.32]', 'M3' -> '[%eval #3]'."""
    if annotation.startswith("M"):
        return f"[%eval #{annotation[1:]}]"
    return f"[%eval {annotation}]"


def _add_pgn_node(tree: MoveTree, pgn_node: chess.pgn.GameNode, node_id: str, annotations: bool) -> None:
    """Recursively add a tree node's children as main line and variations."""
    node = tree.nodes.get(node_id)
    if node is None:
        return

    board = pgn_node.board()
    for i, child_id in enumerate(node.children):
        child = tree.nodes.get(child_id)
        if child is None or not child.move_code:
            continue
        try:
            move = chess.Move.from_uci(child.move_code)
        except chess.InvalidMoveError:
            continue
        if not board.is_legal(move):
            continue

        if i == 0 or not pgn_node.variations:
            next_node = pgn_node.add_main_variation(move)
        else:
            next_node = pgn_node.add_variation(move)

        if annotations and child.annotation:
            next_node.comment = eval_comment(child.annotation)

        _add_pgn_node(tree, next_node, child_id, annotations)


def build_game(tree: MoveTree, side: Side, name: str | None = None, export_date: date | None = None,
               annotations: bool = True) -> chess.pgn.Game:
    game = chess.pgn.Game()
    safe_name = normalize_repertoire_name(name) if name else ""
    game.headers["Event"] = f"{EVENT_PREFIX}{safe_name}" if safe_name else EVENT_NAME
    game.headers["Site"] = "Local"
    game.headers["Date"] = (export_date or date.today()).strftime("%Y.%m.%d")
    game.headers["Round"] = "-"
    game.headers["White"] = "Repertoire" if side == "white" else "Opponent"
    game.headers["Black"] = "Repertoire" if side == "black" else "Opponent"
    game.headers["Result"] = "*"
    _add_pgn_node(tree, game, tree.root_id, annotations)
    return game


def export_tree(tree: MoveTree, side: Side, name: str | None = None, export_date: date | None = None,
                annotations: bool = True) -> str:
    """PGN text for one tree. The result is always '*'."""
    game = build_game(tree, side, name, export_date, annotations)
    exporter = chess.pgn.StringExporter(headers=True, variations=True, comments=annotations)
    return game.accept(exporter)


def export_collection(collection: Collection, export_date: date | None = None) -> str:
    """Every repertoire of both sides, one game each, separated by blank lines."""
    games = [
        export_tree(entry.tree, side, entry.name, export_date)
        for side in SIDES
        for entry in collection.side(side).entries
    ]
    return "\n\n".join(games)


def safe_filename(side: Side, name: str) -> str:
    safe = re.sub(r"[^\w-]+", "_", normalize_repertoire_name(name))
    return f"{side}-{safe or 'repertoire'}.pgn"


def export_files(collection: Collection, output_dir: Path) -> int:
    """Write one PGN file per repertoire. Returns files written."""
    output_dir.mkdir(parents=True, exist_ok=True)
    count = 0
    for side in SIDES:
        for entry in collection.side(side).entries:
            path = output_dir / safe_filename(side, entry.name)
            with open(path, "w", encoding="utf-8") as f:
                print(export_tree(entry.tree, side, entry.name), file=f, end="\n\n")
            count += 1
    return count


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--output", "-o", required=True)
    parser.add_argument("--single-file", action="store_true", help="Write all repertoires to one file")
    args = parser.parse_args()

    from config import setup_logging
    from db import PostgresKeyValueStore
    import persistence

    setup_logging()
    collection = persistence.load_collection(PostgresKeyValueStore())
    out = Path(args.output)
    if args.single_file:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(export_collection(collection) + "\n", encoding="utf-8")
        print(f"Exported all repertoires to {out}")
    else:
        n = export_files(collection, out)
        print(f"Exported {n} PGN files to {out}")


if __name__ == "__main__":
    main()
