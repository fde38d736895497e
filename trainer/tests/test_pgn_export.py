"""Tests for pgn_export.py"""

import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import move_tree
import repertoires
from pgn_export import eval_comment, export_collection, export_files, export_tree, safe_filename
from pgn_import import parse_headers, parse_pgn

EXPORT_DATE = date(2024, 3, 9)


def sample_tree():
    return parse_pgn("1. e4 e5 2. Nf3 (2. Bc4 Bc5) Nc6", "white")


def test_headers():
    text = export_tree(sample_tree(), "black", "  My   Sicilian ", EXPORT_DATE)
    headers = parse_headers(text)
    assert headers["Event"] == "Repertoire Trainer - My Sicilian"
    assert headers["Site"] == "Local"
    assert headers["Date"] == "2024.03.09"
    assert headers["Round"] == "-"
    assert headers["White"] == "Opponent"
    assert headers["Black"] == "Repertoire"
    assert headers["Result"] == "*"


def test_unnamed_tree_uses_plain_event():
    text = export_tree(sample_tree(), "white", None, EXPORT_DATE)
    assert parse_headers(text)["Event"] == "Repertoire Trainer"


def test_variations_are_parenthesized():
    text = export_tree(sample_tree(), "white", "Main", EXPORT_DATE)
    assert "1. e4 e5 2. Nf3" in text
    assert "( 2. Bc4 Bc5 )" in text
    assert text.rstrip().endswith("*")


def test_export_then_import_preserves_lines():
    tree = sample_tree()
    reimported = parse_pgn(export_tree(tree, "white", "Main", EXPORT_DATE), "white")
    assert list(move_tree.iter_lines(reimported)) == list(move_tree.iter_lines(tree))


def test_annotations_become_eval_comments():
    tree, leaf = move_tree.insert_line(move_tree.create_empty_tree("white"), ["e4", "e5"])
    tree = move_tree.set_annotation(tree, leaf, "M3")
    text = export_tree(tree, "white", "Main", EXPORT_DATE)
    assert "[%eval #3]" in text

    plain = export_tree(tree, "white", "Main", EXPORT_DATE, annotations=False)
    assert "%eval" not in plain


def test_eval_comment():
    assert eval_comment("0.32") == "[%eval 0.32]"
    assert eval_comment("-1.05") == "[%eval -1.05]"
    assert eval_comment("M-2") == "[%eval #-2]"


def test_export_empty_tree():
    text = export_tree(move_tree.create_empty_tree("white"), "white", "Empty", EXPORT_DATE)
    assert parse_headers(text)["Result"] == "*"
    assert "1." not in text


def test_export_collection_has_one_game_per_entry():
    collection = repertoires.default_collection()
    collection, _ = repertoires.merge_into_entry(collection, "white", "1. e4 e5")
    collection, _ = repertoires.merge_into_entry(collection, "black", "1. d4 Nf6")
    text = export_collection(collection, EXPORT_DATE)
    assert text.count("[Event ") == 2
    assert "1. e4 e5" in text and "1. d4 Nf6" in text


def test_safe_filename():
    assert safe_filename("white", "King's Gambit / main") == "white-King_s_Gambit_main.pgn"
    assert safe_filename("black", "") == "black-Untitled_repertoire.pgn"


def test_export_files(tmp_path):
    collection = repertoires.default_collection()
    n = export_files(collection, tmp_path / "out")
    assert n == 2
    names = sorted(p.name for p in (tmp_path / "out").iterdir())
    assert names == ["black-Default.pgn", "white-Default.pgn"]
