"""Tests for rules.py"""

import sys
from pathlib import Path

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import rules
from models import START_POSITION


def test_start_sentinel_resolves_to_starting_fen():
    assert rules.resolve_fen(START_POSITION) == chess.STARTING_FEN
    assert rules.side_to_move(START_POSITION) == "white"


def test_try_move():
    result = rules.try_move(START_POSITION, "g1", "f3")
    assert result.notation == "Nf3"
    assert result.move_code == "g1f3"
    assert rules.side_to_move(result.resulting_position) == "black"
    assert rules.try_move(START_POSITION, "g1", "g3") is None
    assert rules.try_move(START_POSITION, "z9", "f3") is None


def test_promotion_letter_ignored_for_ordinary_moves():
    assert rules.try_move(START_POSITION, "e2", "e4", "q").move_code == "e2e4"


def test_try_san_rejects_bad_tokens():
    assert rules.try_san(START_POSITION, "e4").move_code == "e2e4"
    assert rules.try_san(START_POSITION, "Ke2") is None
    assert rules.try_san(START_POSITION, "xyz") is None


def test_ambiguous_san_is_rejected():
    position = "4k3/8/8/8/8/8/4K3/R6R w - - 0 1"
    # Both rooks can reach d1.
    assert rules.try_san(position, "Rd1") is None
    assert rules.try_san(position, "Rad1").move_code == "a1d1"


def test_resolve_move_accepts_codes_and_san():
    assert rules.resolve_move(START_POSITION, "e2e4").notation == "e4"
    assert rules.resolve_move(START_POSITION, "Nc3").move_code == "b1c3"
    assert rules.try_move_code(START_POSITION, "e2") is None


def test_legal_destinations():
    dests = rules.legal_destinations(START_POSITION)
    assert sorted(dests["g1"]) == ["f3", "h3"]
    assert len(dests) == 10


def test_split_move_code():
    assert rules.split_move_code("e7e8q") == ("e7", "e8")
    assert rules.split_move_code(None) is None
    assert rules.split_move_code("e7") is None
