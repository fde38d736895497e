"""Tests for pgn_import.py"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import move_tree
from pgn_import import (
    detect_side,
    parse_headers,
    parse_pgn,
    sanitize_san_token,
    split_games,
    tokenize_movetext,
)


def children_notation(tree, node_id):
    return [tree.nodes[c].move_notation for c in tree.nodes[node_id].children]


def only_child(tree, node_id):
    children = tree.nodes[node_id].children
    assert len(children) == 1
    return children[0]


def test_variation_branches_from_previous_move():
    tree = parse_pgn("1. e4 e5 2. Nf3 (2. Bc4 Bc5) Nc6", "white")

    assert children_notation(tree, tree.root_id) == ["e4"]
    e4 = only_child(tree, tree.root_id)
    e5 = only_child(tree, e4)
    assert children_notation(tree, e5) == ["Nf3", "Bc4"]
    nf3, bc4 = tree.nodes[e5].children
    assert children_notation(tree, nf3) == ["Nc6"]
    assert children_notation(tree, bc4) == ["Bc5"]
    assert move_tree.integrity_errors(tree) == []


def test_nested_variations():
    pgn = "1. d4 d5 (1... Nf6 2. c4 (2. Nf3 g6) e6) 2. c4 *"
    tree = parse_pgn(pgn, "white")
    d4 = only_child(tree, tree.root_id)
    assert children_notation(tree, d4) == ["d5", "Nf6"]
    nf6 = tree.nodes[d4].children[1]
    assert children_notation(tree, nf6) == ["c4", "Nf3"]
    c4, nf3 = tree.nodes[nf6].children
    assert children_notation(tree, c4) == ["e6"]
    assert children_notation(tree, nf3) == ["g6"]
    d5 = tree.nodes[d4].children[0]
    assert children_notation(tree, d5) == ["c4"]


def test_import_is_idempotent():
    pgn = "1. e4 e5 2. Nf3 (2. Bc4 Bc5) Nc6"
    tree = parse_pgn(pgn, "white")
    again = parse_pgn(pgn, "white", tree)
    assert again is tree


def test_merges_into_existing_tree():
    tree = parse_pgn("1. e4 e5", "white")
    merged = parse_pgn("1. e4 c5 2. Nf3", "white", tree)
    e4 = only_child(merged, merged.root_id)
    assert children_notation(merged, e4) == ["e5", "c5"]
    assert len(tree.nodes) == 3


def test_comments_nags_and_annotations_are_ignored():
    pgn = "1. e4! {best by test} e5 $1 2. Nf3?! ; a line comment\nNc6 3. Bb5 a6 1-0"
    tree = parse_pgn(pgn, "white")
    assert list(move_tree.iter_lines(tree)) == [["e4", "e5", "Nf3", "Nc6", "Bb5", "a6"]]


def test_illegal_move_stops_only_its_branch():
    pgn = "1. e4 e5 (1... c5 2. Ke3 Nc6) 2. Nf3 Ke3 3. Bc4"
    tree = parse_pgn(pgn, "white")
    assert list(move_tree.iter_lines(tree)) == [["e4", "e5", "Nf3"], ["e4", "c5"]]


def test_multiple_games_are_merged():
    pgn = (
        '[Event "One"]\n[White "Repertoire"]\n\n1. e4 e5 *\n\n'
        '[Event "Two"]\n[White "Repertoire"]\n\n1. d4 d5 *\n'
    )
    tree = parse_pgn(pgn, "white")
    assert children_notation(tree, tree.root_id) == ["e4", "d4"]


def test_empty_text_returns_tree_unchanged():
    tree = move_tree.create_empty_tree("black")
    assert parse_pgn("   \n", "black", tree) is tree
    assert len(parse_pgn("", "white").nodes) == 1


def test_split_games_without_headers_uses_blank_lines():
    assert split_games("1. e4 e5\n\n1. d4 d5") == ["1. e4 e5", "1. d4 d5"]


def test_split_games_keeps_headers_with_movetext():
    text = '[Event "A"]\n\n1. e4 *\n\n[Event "B"]\n\n1. d4 *'
    games = split_games(text)
    assert len(games) == 2
    assert games[1].startswith('[Event "B"]')


def test_games_separated_by_a_single_newline_stay_apart():
    text = '[Event "A"]\n\n1. e4 e5 *\n[Event "B"]\n\n1. d4 d5 *'
    games = split_games(text)
    assert games == ['[Event "A"]\n\n1. e4 e5 *', '[Event "B"]\n\n1. d4 d5 *']

    tree = parse_pgn(text, "white")
    assert sorted(" ".join(line) for line in move_tree.iter_lines(tree)) == ["d4 d5", "e4 e5"]


def test_parse_headers():
    headers = parse_headers('[Event "Repertoire Trainer - Main"]\n[White "Repertoire"]\n\n1. e4 *')
    assert headers == {"Event": "Repertoire Trainer - Main", "White": "Repertoire"}


def test_tokenize_movetext():
    assert tokenize_movetext("1. e4 {note (x)} (1. d4) e5") == ["1.", "e4", "(", "1.", "d4", ")", "e5"]


def test_sanitize_san_token():
    assert sanitize_san_token("1.e4") == "e4"
    assert sanitize_san_token("3...Nf6!?") == "Nf6"
    assert sanitize_san_token("Qxf7#$3") == "Qxf7#"
    assert sanitize_san_token("1-0") is None


def test_detect_side():
    assert detect_side({"White": "Repertoire", "Black": "Opponent"}, "black") == "white"
    assert detect_side({"White": "Opponent", "Black": "Repertoire"}, "white") == "black"
    assert detect_side({}, "black") == "black"
