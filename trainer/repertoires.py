"""Named repertoires per side, and the browse-mode union view across them.

All functions are pure: they take a Collection and return a new one.
"""

import logging
import time
import uuid
from dataclasses import replace

import move_tree
import pgn_import
from models import (
    START_POSITION,
    BrowseMoveOption,
    Collection,
    MoveTree,
    RepertoireEntry,
    Side,
    SideCollection,
    normalize_repertoire_name,
)
from pgn_export import EVENT_PREFIX

logger = logging.getLogger("repertoire_trainer")

DEFAULT_NAME = "Default"
PROTECTED_NAME = "default"


def create_repertoire_id(side: Side) -> str:
    return f"{side}-{int(time.time() * 1000):x}-{uuid.uuid4().hex[:8]}"


def create_empty_repertoire(side: Side, name: str) -> RepertoireEntry:
    tree = move_tree.create_empty_tree(side)
    return RepertoireEntry(
        id=create_repertoire_id(side),
        name=normalize_repertoire_name(name),
        tree=tree,
        cursor_node_id=tree.root_id,
    )


def default_collection() -> Collection:
    return Collection(
        white=SideCollection(entries=(create_empty_repertoire("white", DEFAULT_NAME),)),
        black=SideCollection(entries=(create_empty_repertoire("black", DEFAULT_NAME),)),
    )


def repair_cursor(tree: MoveTree, cursor_node_id: str | None) -> str:
    return cursor_node_id if cursor_node_id in tree else tree.root_id


def is_protected(entry: RepertoireEntry) -> bool:
    return normalize_repertoire_name(entry.name).lower() == PROTECTED_NAME


def create(collection: Collection, side: Side, name: str) -> tuple[Collection, RepertoireEntry]:
    """Append a new empty repertoire and make it the active one."""
    entry = create_empty_repertoire(side, name)
    current = collection.side(side)
    updated = SideCollection(entries=current.entries + (entry,), active_id=entry.id)
    return collection.with_side(side, updated), entry


def rename(collection: Collection, side: Side, entry_id: str, name: str) -> Collection:
    current = collection.side(side)
    if current.find(entry_id) is None:
        return collection
    new_name = normalize_repertoire_name(name)
    entries = tuple(replace(e, name=new_name) if e.id == entry_id else e for e in current.entries)
    return collection.with_side(side, replace(current, entries=entries))


def can_delete(collection: Collection, side: Side, entry_id: str) -> bool:
    current = collection.side(side)
    entry = current.find(entry_id)
    if entry is None or is_protected(entry):
        return False
    return len(current.entries) > 1


def delete(collection: Collection, side: Side, entry_id: str) -> Collection:
    """Remove an entry. Protected "Default" entries and the last entry are kept.

    Deleting the active entry drops back to browse mode; the caller picks the first
    remaining entry as its working tree.
    """
    if not can_delete(collection, side, entry_id):
        return collection
    current = collection.side(side)
    entries = tuple(e for e in current.entries if e.id != entry_id)
    active_id = None if current.active_id == entry_id else current.active_id
    return collection.with_side(side, SideCollection(entries=entries, active_id=active_id))


def activate(collection: Collection, side: Side, entry_id: str | None) -> Collection:
    """Select an entry for editing; None (or an unknown id) selects browse mode."""
    current = collection.side(side)
    active_id = entry_id if current.find(entry_id) is not None else None
    return collection.with_side(side, replace(current, active_id=active_id))


def update_entry(collection: Collection, side: Side, entry_id: str, tree: MoveTree, cursor_node_id: str) -> Collection:
    """Write a working tree and cursor back into its entry."""
    current = collection.side(side)
    entry = current.find(entry_id)
    if entry is None:
        return collection
    cursor = repair_cursor(tree, cursor_node_id)
    if entry.tree is tree and entry.cursor_node_id == cursor:
        return collection
    entries = tuple(
        replace(e, tree=tree, cursor_node_id=cursor) if e.id == entry_id else e for e in current.entries
    )
    return collection.with_side(side, replace(current, entries=entries))


def working_entry(collection: Collection, side: Side) -> RepertoireEntry | None:
    """The active entry, or the first entry when browsing."""
    current = collection.side(side)
    return current.active or (current.entries[0] if current.entries else None)


def options_at(collection: Collection, side: Side, position: str) -> list[BrowseMoveOption]:
    """Union of the moves all of a side's repertoires play from position.

    Nodes are matched by position, so transpositions inside or across repertoires
    contribute too. Moves known to more repertoires sort first, then by notation.
    """
    by_code: dict[str, tuple[str, dict[str, str]]] = {}
    for entry in collection.side(side).entries:
        for node in move_tree.nodes_at_position(entry.tree, position):
            for child_id in node.children:
                child = entry.tree.nodes.get(child_id)
                if child is None or not child.move_code or not child.move_notation:
                    continue
                if child.move_code not in by_code:
                    by_code[child.move_code] = (child.move_notation, {})
                by_code[child.move_code][1][entry.id] = entry.name

    options = [
        BrowseMoveOption(
            move_code=code,
            move_notation=notation,
            entry_names=tuple(owners.values()),
            entry_ids=tuple(owners),
        )
        for code, (notation, owners) in by_code.items()
    ]
    options.sort(key=lambda o: (-len(o.entry_ids), o.move_notation))
    return options


def repertoires_at(collection: Collection, side: Side, position: str) -> list[str]:
    """Sorted names of the side's repertoires that reach position."""
    if position == START_POSITION:
        return []
    names = {
        entry.name
        for entry in collection.side(side).entries
        if move_tree.nodes_at_position(entry.tree, position)
    }
    return sorted(names)


def merge_into_entry(collection: Collection, side: Side, pgn: str) -> tuple[Collection, RepertoireEntry]:
    """Merge PGN into the working entry of a side (active, else first)."""
    entry = working_entry(collection, side)
    if entry is None:
        collection, entry = create(collection, side, DEFAULT_NAME)
    tree = pgn_import.parse_pgn(pgn, side, entry.tree)
    collection = update_entry(collection, side, entry.id, tree, entry.cursor_node_id)
    return collection, collection.side(side).find(entry.id)


def import_database(collection: Collection, pgn: str, fallback_side: Side) -> tuple[Collection, int]:
    """Turn every game of pgn into a new repertoire entry. Returns (collection, entries created)."""
    chunks = pgn_import.split_games(pgn)
    imported: dict[Side, list[RepertoireEntry]] = {"white": [], "black": []}

    for index, chunk in enumerate(chunks):
        headers = pgn_import.parse_headers(chunk)
        side = pgn_import.detect_side(headers, fallback_side)
        event = headers.get("Event", "")
        if event.startswith(EVENT_PREFIX):
            name = event[len(EVENT_PREFIX):]
        else:
            name = f"Imported {side} repertoire {index + 1}"
        tree = pgn_import.parse_pgn(chunk, side)
        imported[side].append(
            RepertoireEntry(
                id=create_repertoire_id(side),
                name=normalize_repertoire_name(name),
                tree=tree,
                cursor_node_id=tree.root_id,
            )
        )

    for side, entries in imported.items():
        if entries:
            current = collection.side(side)
            collection = collection.with_side(side, replace(current, entries=current.entries + tuple(entries)))
    created = len(imported["white"]) + len(imported["black"])
    logger.info("Database import created %d repertoires", created)
    return collection, created
