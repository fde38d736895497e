#!/usr/bin/env python3
"""
PGN Import — text to repertoire move tree

Splits multi-game PGN text, tokenizes each game's movetext and merges every line and
nested variation into a move tree. Importing the same text twice adds nothing.

Usage:
  python pgn_import.py --pgn lines.pgn --side white
  python pgn_import.py --pgn book.pgn --database
"""

import argparse
import logging
import re
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
import move_tree
import rules
from models import MoveTree, Side

logger = logging.getLogger("repertoire_trainer")

RESULT_TOKENS = {"*", "1-0", "0-1", "1/2-1/2"}
HEADER_PATTERN = re.compile(r'^\[([A-Za-z0-9_]+)\s+"(.*)"\]$')
MOVE_NUMBER_PATTERN = re.compile(r"^\d+\.(\.\.)?$|^\d+\.\.\.$")
NAG_PATTERN = re.compile(r"^\$\d+$")


def split_games(pgn: str) -> list[str]:
    """Split before each [Event header line; on blank lines when there are none."""
    normalized = pgn.replace("\r\n", "\n").strip()
    if not normalized:
        return []
    chunks = [part.strip() for part in re.split(r"\n+(?=\[Event )", normalized) if part.strip()]
    if any(chunk.startswith("[") for chunk in chunks):
        return chunks
    return [part.strip() for part in re.split(r"\n{2,}", normalized) if part.strip()]


def parse_headers(chunk: str) -> dict[str, str]:
    headers = {}
    for line in chunk.split("\n"):
        match = HEADER_PATTERN.match(line.strip())
        if match:
            headers[match.group(1)] = match.group(2).replace('\\"', '"')
    return headers


def movetext_of(chunk: str) -> str:
    return "\n".join(line for line in chunk.split("\n") if not line.strip().startswith("[")).strip()


def tokenize_movetext(text: str) -> list[str]:
    """Flat token list: parentheses kept, {comments} and ;line comments dropped."""
    tokens = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "{":
            end = text.find("}", i + 1)
            i = n if end < 0 else end + 1
            continue
        if ch == ";":
            end = text.find("\n", i + 1)
            i = n if end < 0 else end + 1
            continue
        if ch in "()":
            tokens.append(ch)
            i += 1
            continue
        j = i
        while j < n and not text[j].isspace() and text[j] not in "(){;":
            j += 1
        tokens.append(text[i:j])
        i = j
    return tokens


def is_ignorable_token(token: str) -> bool:
    if not token or token in RESULT_TOKENS:
        return True
    return bool(NAG_PATTERN.match(token) or MOVE_NUMBER_PATTERN.match(token))


def sanitize_san_token(token: str) -> str | None:
    """Strip move-number prefixes and annotation suffixes; None when nothing is left."""
    value = token.strip()
    while re.match(r"^\d+\.(\.\.)?", value):
        value = re.sub(r"^\d+\.(\.\.)?", "", value, count=1)
    value = re.sub(r"^\.\.\.", "", value)
    value = re.sub(r"(?:\$\d+)+$", "", value)
    value = re.sub(r"[!?]+$", "", value)
    value = re.sub(r"\*$", "", value).strip()
    if not value or value in RESULT_TOKENS:
        return None
    return value


class _VariationParser:
    """Recursive descent over one game's tokens, merging into a TreeBuilder."""

    def __init__(self, builder: move_tree.TreeBuilder, tokens: list[str]):
        self.builder = builder
        self.tokens = tokens

    def parse_sequence(self, node_id: str, index: int, nested: bool) -> int:
        """Consume one line starting at node_id. Returns the index after its closing ')'."""
        branch_point: str | None = None

        while index < len(self.tokens):
            token = self.tokens[index]
            index += 1

            if token == ")":
                if nested:
                    return index
                continue

            if token == "(":
                start = branch_point if branch_point is not None else node_id
                index = self.parse_sequence(start, index, nested=True)
                continue

            if is_ignorable_token(token):
                continue
            san = sanitize_san_token(token)
            if san is None:
                continue

            position = self.builder.nodes[node_id].position
            result = rules.try_san(position, san)
            if result is None:
                logger.debug("Stopping branch at unplayable move %r", token)
                return self._skip_branch(index) if nested else len(self.tokens)

            branch_point = node_id
            node_id = self.builder.ensure_child(node_id, result)

        return index

    def _skip_branch(self, index: int) -> int:
        depth = 0
        while index < len(self.tokens):
            token = self.tokens[index]
            index += 1
            if token == "(":
                depth += 1
            elif token == ")":
                if depth == 0:
                    return index
                depth -= 1
        return index


def parse_chunk_into(builder: move_tree.TreeBuilder, chunk: str) -> None:
    tokens = tokenize_movetext(movetext_of(chunk))
    if tokens:
        _VariationParser(builder, tokens).parse_sequence(builder.root_id, 0, nested=False)


def parse_pgn(pgn: str, side: Side = "white", tree: MoveTree | None = None) -> MoveTree:
    """Merge every game in pgn into tree (a fresh tree for side when omitted)."""
    base = tree if tree is not None else move_tree.create_empty_tree(side)
    chunks = split_games(pgn)
    if not chunks:
        return base

    builder = move_tree.TreeBuilder(base)
    for chunk in chunks:
        parse_chunk_into(builder, chunk)
    if builder.next_id == base.next_id:
        return base
    return builder.build()


def detect_side(headers: dict[str, str], fallback: Side) -> Side:
    if "repertoire" in headers.get("White", "").lower():
        return "white"
    if "repertoire" in headers.get("Black", "").lower():
        return "black"
    return fallback


def main():
    parser = argparse.ArgumentParser(description="Import PGN into the stored repertoire collection")
    parser.add_argument("--pgn", required=True, help="PGN file path")
    parser.add_argument("--side", choices=["white", "black"], default="white")
    parser.add_argument(
        "--database",
        action="store_true",
        help="Create one repertoire per game instead of merging into the active one",
    )
    args = parser.parse_args()

    from config import setup_logging
    from db import PostgresKeyValueStore
    import persistence
    import repertoires

    setup_logging()
    pgn_path = Path(args.pgn)
    if not pgn_path.exists():
        print(f"Error: {pgn_path} not found", file=sys.stderr)
        sys.exit(1)
    text = pgn_path.read_text(encoding="utf-8", errors="replace")

    store = PostgresKeyValueStore()
    collection = persistence.load_collection(store)
    if args.database:
        collection, created = repertoires.import_database(collection, text, args.side)
        print(f"Created {created} repertoires.")
    else:
        collection, entry = repertoires.merge_into_entry(collection, args.side, text)
        print(f"Merged into {args.side} repertoire \"{entry.name}\" ({len(entry.tree.nodes) - 1} moves).")
    persistence.save_collection(store, collection)


if __name__ == "__main__":
    main()
