"""Versioned persistence of the repertoire collection and user settings.

Payloads are JSON blobs in a key-value store:

  app-state-v1   {"version": 2, "repertoiresBySide": {...}, "activeRepertoireIdBySide": {...}}
  settings-v1    {"version": 1, "themeMode": ..., ...}

Version 1 collection payloads ({"version": 1, "trees": ..., "selectedNodeBySide": ...})
are migrated on load. Decoding never raises; anything unrecognized yields defaults.
"""

import json
import logging
import math
import threading
from typing import Any, Callable, Protocol

import move_tree
import repertoires
from models import (
    SIDES,
    Collection,
    MoveNode,
    MoveTree,
    RepertoireEntry,
    Settings,
    Side,
    SideCollection,
    normalize_repertoire_name,
)

logger = logging.getLogger("repertoire_trainer")

APP_STATE_KEY = "app-state-v1"
APP_SETTINGS_KEY = "settings-v1"
STATE_VERSION = 2
LEGACY_STATE_VERSION = 1
SETTINGS_VERSION = 1
WRITE_DELAY_SECONDS = 0.12

SPEEDS = ["bullet", "blitz", "rapid", "classical", "correspondence"]
MODES = ["casual", "rated"]
RATINGS = [1200, 1400, 1600, 1800, 2000, 2200, 2500]
DEFAULT_RATINGS = [1600, 1800, 2000, 2200]
MOVE_THRESHOLD_OPTIONS = [0, 1, 5, 10, 20]
DATE_RANGES = ["1m", "2m", "3m", "6m", "1y", "3y", "5y", "10y", "20y", "30y", "50y", None]
EXPLORER_SOURCES = ("lichess", "masters", "player")


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


# -- move trees ------------------------------------------------------------------


def node_to_dict(node: MoveNode) -> dict:
    data = {
        "id": node.id,
        "parentId": node.parent_id,
        "fen": node.position,
        "moveSan": node.move_notation,
        "moveUci": node.move_code,
        "children": list(node.children),
    }
    if node.annotation is not None:
        data["stockfishEval"] = node.annotation
    return data


def tree_to_dict(tree: MoveTree) -> dict:
    return {
        "rootId": tree.root_id,
        "nextId": tree.next_id,
        "nodes": {node_id: node_to_dict(node) for node_id, node in tree.nodes.items()},
    }


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def node_from_dict(node_id: str, value: Any) -> MoveNode | None:
    if not isinstance(value, dict) or not isinstance(value.get("fen"), str):
        return None
    children = value.get("children")
    return MoveNode(
        id=node_id,
        parent_id=_optional_str(value.get("parentId")),
        position=value["fen"],
        move_notation=_optional_str(value.get("moveSan")),
        move_code=_optional_str(value.get("moveUci")),
        children=tuple(c for c in children if isinstance(c, str)) if isinstance(children, list) else (),
        annotation=_optional_str(value.get("stockfishEval")),
    )


def tree_from_dict(value: Any) -> MoveTree | None:
    """Decode a persisted tree; None when its shape is not a tree."""
    if not isinstance(value, dict):
        return None
    root_id = value.get("rootId")
    next_id = value.get("nextId")
    nodes = value.get("nodes")
    if not isinstance(root_id, str) or not isinstance(nodes, dict):
        return None
    if isinstance(next_id, bool) or not isinstance(next_id, (int, float)) or not math.isfinite(next_id):
        return None

    decoded = {}
    for node_id, raw in nodes.items():
        node = node_from_dict(node_id, raw)
        if node is None:
            return None
        decoded[node_id] = node
    if root_id not in decoded:
        return None
    tree = MoveTree(root_id=root_id, nodes=decoded, next_id=int(next_id))
    errors = move_tree.integrity_errors(tree)
    if errors:
        logger.warning("Discarding stored tree: %s", errors[0])
        return None
    return tree


# -- collection ------------------------------------------------------------------


def entry_to_dict(entry: RepertoireEntry) -> dict:
    return {
        "id": entry.id,
        "name": entry.name,
        "tree": tree_to_dict(entry.tree),
        "selectedNodeId": entry.cursor_node_id,
    }


def encode_collection(collection: Collection) -> str:
    payload = {
        "version": STATE_VERSION,
        "repertoiresBySide": {
            side: [entry_to_dict(e) for e in collection.side(side).entries] for side in SIDES
        },
        "activeRepertoireIdBySide": {side: collection.side(side).active_id for side in SIDES},
    }
    return json.dumps(payload)


def _entries_from_list(side: Side, value: Any) -> tuple[RepertoireEntry, ...]:
    entries = []
    for index, raw in enumerate(value if isinstance(value, list) else []):
        if not isinstance(raw, dict):
            continue
        entry_id = raw.get("id")
        if not isinstance(entry_id, str) or not entry_id.strip():
            continue
        name = raw.get("name")
        cursor = raw.get("selectedNodeId")
        if not isinstance(name, str) or not isinstance(cursor, str):
            continue
        tree = tree_from_dict(raw.get("tree"))
        if tree is None:
            continue
        entries.append(
            RepertoireEntry(
                id=entry_id,
                name=normalize_repertoire_name(name or f"{side} repertoire {index + 1}"),
                tree=tree,
                cursor_node_id=repertoires.repair_cursor(tree, cursor),
            )
        )
    if not entries:
        return (repertoires.create_empty_repertoire(side, repertoires.DEFAULT_NAME),)
    return tuple(entries)


def _migrate_legacy(value: dict) -> Collection | None:
    trees = value.get("trees")
    selected = value.get("selectedNodeBySide")
    if not isinstance(trees, dict) or not isinstance(selected, dict):
        return None

    sides = {}
    for side in SIDES:
        tree = tree_from_dict(trees.get(side))
        cursor = selected.get(side)
        if tree is None or not isinstance(cursor, str):
            return None
        entry = RepertoireEntry(
            id=repertoires.create_repertoire_id(side),
            name=repertoires.DEFAULT_NAME,
            tree=tree,
            cursor_node_id=repertoires.repair_cursor(tree, cursor),
        )
        sides[side] = SideCollection(entries=(entry,), active_id=None)
    logger.info("Migrated version 1 repertoire state")
    return Collection(white=sides["white"], black=sides["black"])


def normalize_persisted_state(value: Any) -> Collection | None:
    """Validate a decoded payload field by field. None when it is not a known version."""
    if not isinstance(value, dict):
        return None

    version = value.get("version")
    if version == STATE_VERSION:
        by_side = value.get("repertoiresBySide")
        active_by_side = value.get("activeRepertoireIdBySide")
        if not isinstance(by_side, dict) or not isinstance(active_by_side, dict):
            return None
        sides = {}
        for side in SIDES:
            entries = _entries_from_list(side, by_side.get(side))
            active_id = active_by_side.get(side)
            if not isinstance(active_id, str) or not any(e.id == active_id for e in entries):
                active_id = None
            sides[side] = SideCollection(entries=entries, active_id=active_id)
        return Collection(white=sides["white"], black=sides["black"])

    if version == LEGACY_STATE_VERSION:
        return _migrate_legacy(value)
    return None


def _loads(blob: str | None) -> Any:
    if blob is None:
        return None
    try:
        return json.loads(blob)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning("Discarding unreadable stored payload: %s", e)
        return None


def decode_collection(blob: str | None) -> Collection:
    collection = normalize_persisted_state(_loads(blob))
    if collection is None:
        if blob is not None:
            logger.warning("Stored repertoire state not recognized, starting fresh")
        return repertoires.default_collection()
    return collection


def load_collection(store: KeyValueStore) -> Collection:
    return decode_collection(store.get(APP_STATE_KEY))


def save_collection(store: KeyValueStore, collection: Collection) -> None:
    store.set(APP_STATE_KEY, encode_collection(collection))


# -- settings --------------------------------------------------------------------


def clamp_int(value: Any, low: int, high: int, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return fallback
    return min(high, max(low, round(value)))


def normalize_move_threshold(value: Any) -> int:
    """Nearest allowed threshold; 5 when value is not a number."""
    numeric = value if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) else 5
    best = 5
    for option in MOVE_THRESHOLD_OPTIONS:
        if abs(option - numeric) < abs(best - numeric):
            best = option
    return best


def _bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _filtered(value: Any, allowed: list, fallback: list) -> list:
    items = [v for v in value if v in allowed and not isinstance(v, bool)] if isinstance(value, list) else []
    return items or list(fallback)


def normalize_settings(value: Any) -> Settings | None:
    """Settings from a decoded payload; None when side, source or date range are invalid."""
    if not isinstance(value, dict) or value.get("version") != SETTINGS_VERSION:
        return None
    if value.get("repertoireSide") not in SIDES:
        return None
    if value.get("lichessSource") not in EXPLORER_SOURCES:
        return None
    if value.get("dateRange") not in DATE_RANGES:
        return None

    defaults = Settings()
    handle = value.get("playerHandle")
    return Settings(
        theme_mode="dark" if value.get("themeMode") == "dark" else "light",
        repertoire_side=value["repertoireSide"],
        is_board_flipped=_bool(value.get("isTempBoardFlipped"), False),
        explorer_source=value["lichessSource"],
        player_handle=handle if isinstance(handle, str) else "",
        date_range=value.get("dateRange"),
        arrow_threshold=normalize_move_threshold(value.get("lichessArrowThreshold")),
        engine_depth=clamp_int(value.get("engineDepth"), 16, 32, 24),
        engine_lines=clamp_int(value.get("engineMultiPv"), 1, 10, 3),
        selected_speeds=_filtered(value.get("selectedSpeeds"), SPEEDS, SPEEDS),
        selected_ratings=_filtered(value.get("selectedRatings"), RATINGS, DEFAULT_RATINGS),
        selected_modes=_filtered(value.get("selectedModes"), MODES, MODES),
        show_explorer_on_tree_moves=_bool(value.get("showLichessOnTreeMoves"), defaults.show_explorer_on_tree_moves),
        show_tree_arrows=_bool(value.get("showTreeArrows"), defaults.show_tree_arrows),
        show_explorer_arrows=_bool(value.get("showLichessArrows"), defaults.show_explorer_arrows),
        show_engine_arrows=_bool(value.get("showStockfishArrows"), defaults.show_engine_arrows),
    )


def encode_settings(settings: Settings) -> str:
    return json.dumps({
        "version": SETTINGS_VERSION,
        "themeMode": settings.theme_mode,
        "repertoireSide": settings.repertoire_side,
        "isTempBoardFlipped": settings.is_board_flipped,
        "lichessSource": settings.explorer_source,
        "playerHandle": settings.player_handle,
        "dateRange": settings.date_range,
        "lichessArrowThreshold": settings.arrow_threshold,
        "engineDepth": settings.engine_depth,
        "engineMultiPv": settings.engine_lines,
        "selectedSpeeds": settings.selected_speeds,
        "selectedRatings": settings.selected_ratings,
        "selectedModes": settings.selected_modes,
        "showLichessOnTreeMoves": settings.show_explorer_on_tree_moves,
        "showTreeArrows": settings.show_tree_arrows,
        "showLichessArrows": settings.show_explorer_arrows,
        "showStockfishArrows": settings.show_engine_arrows,
    })


def load_settings(store: KeyValueStore) -> Settings:
    return normalize_settings(_loads(store.get(APP_SETTINGS_KEY))) or Settings()


def save_settings(store: KeyValueStore, settings: Settings) -> None:
    store.set(APP_SETTINGS_KEY, encode_settings(settings))


# -- debounced writes ------------------------------------------------------------


class DebouncedWriter:
    """Coalesces writes per key and flushes them after a quiet period.

    Writes run on a timer thread. A failed write is logged and handed to on_error;
    it never propagates to the caller that scheduled it.
    """

    def __init__(self, store: KeyValueStore, delay: float = WRITE_DELAY_SECONDS,
                 on_error: Callable[[str, Exception], None] | None = None):
        self.store = store
        self.delay = delay
        self.on_error = on_error
        self._pending: dict[str, str] = {}
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()

    def schedule(self, key: str, blob: str) -> None:
        with self._lock:
            self._pending[key] = blob
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        # Held across the writes so an older blob never lands after a newer one.
        with self._write_lock:
            with self._lock:
                pending, self._pending = self._pending, {}
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None

            for key, blob in pending.items():
                try:
                    self.store.set(key, blob)
                except Exception as e:
                    logger.warning("Write of %s failed: %s", key, e)
                    if self.on_error is not None:
                        self.on_error(key, e)

    def cancel(self) -> None:
        with self._lock:
            self._pending.clear()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)
