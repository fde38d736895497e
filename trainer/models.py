"""Data models for the repertoire trainer."""

import re
from dataclasses import dataclass, field, replace
from typing import Literal

Side = Literal["white", "black"]
SIDES: tuple[Side, Side] = ("white", "black")

START_POSITION = "start"
UNTITLED_NAME = "Untitled repertoire"


def normalize_repertoire_name(value: str) -> str:
    """Trim and collapse whitespace; empty names become "Untitled repertoire"."""
    return re.sub(r"\s+", " ", (value or "").strip()) or UNTITLED_NAME


@dataclass(frozen=True)
class MoveNode:
    """One position reached by one move, or the empty root."""

    id: str
    parent_id: str | None
    position: str
    move_notation: str | None = None
    move_code: str | None = None
    children: tuple[str, ...] = ()
    annotation: str | None = None


@dataclass(frozen=True)
class MoveTree:
    """Arena of nodes keyed by id. Never mutated once built."""

    root_id: str
    nodes: dict[str, MoveNode]
    next_id: int = 1

    @property
    def root(self) -> MoveNode:
        return self.nodes[self.root_id]

    def get(self, node_id: str | None) -> MoveNode | None:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes


@dataclass(frozen=True)
class RepertoireEntry:
    """One named move tree with its own cursor."""

    id: str
    name: str
    tree: MoveTree
    cursor_node_id: str


@dataclass(frozen=True)
class SideCollection:
    """Ordered repertoire entries of one side. active_id None means browse mode."""

    entries: tuple[RepertoireEntry, ...] = ()
    active_id: str | None = None

    def find(self, entry_id: str | None) -> RepertoireEntry | None:
        if entry_id is None:
            return None
        return next((e for e in self.entries if e.id == entry_id), None)

    @property
    def active(self) -> RepertoireEntry | None:
        return self.find(self.active_id)

    @property
    def is_browse_mode(self) -> bool:
        return self.active is None


@dataclass(frozen=True)
class Collection:
    """All repertoires of both sides."""

    white: SideCollection = field(default_factory=SideCollection)
    black: SideCollection = field(default_factory=SideCollection)

    def side(self, side: Side) -> SideCollection:
        return self.white if side == "white" else self.black

    def with_side(self, side: Side, value: SideCollection) -> "Collection":
        return replace(self, **{side: value})


@dataclass(frozen=True)
class BrowseMoveOption:
    """A move offered at a position by one or more repertoires of a side."""

    move_code: str
    move_notation: str
    entry_names: tuple[str, ...]
    entry_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class UndoSnapshot:
    tree: MoveTree
    cursor_node_id: str


@dataclass(frozen=True)
class TrainingSession:
    """Ephemeral drill state; never persisted."""

    side: Side
    root_node_id: str
    hint_requested: bool = False
    hint_visible: bool = False
    hint_move_code: str | None = None


@dataclass(frozen=True)
class MoveResult:
    """A legal move as resolved by the rules oracle."""

    notation: str
    move_code: str
    resulting_position: str


@dataclass(frozen=True)
class EngineLine:
    """One ranked engine line."""

    rank: int
    best_move_code: str
    best_move_notation: str
    score_text: str
    eval_value: int
    pv: str
    pv_notation: str = ""


@dataclass
class ExplorerMove:
    move_code: str
    notation: str
    white: int = 0
    draws: int = 0
    black: int = 0
    average_rating: int | None = None

    @property
    def total(self) -> int:
        return self.white + self.draws + self.black


@dataclass
class ExplorerResponse:
    """Aggregate outcome and move popularity for one position."""

    white: int = 0
    draws: int = 0
    black: int = 0
    moves: list[ExplorerMove] = field(default_factory=list)
    opening_eco: str | None = None
    opening_name: str | None = None

    @property
    def total(self) -> int:
        return self.white + self.draws + self.black


@dataclass
class Settings:
    """User preferences persisted next to the collection."""

    theme_mode: Literal["light", "dark"] = "light"
    repertoire_side: Side = "white"
    is_board_flipped: bool = False
    explorer_source: Literal["lichess", "masters", "player"] = "lichess"
    player_handle: str = ""
    date_range: str | None = None
    arrow_threshold: int = 5
    engine_depth: int = 24
    engine_lines: int = 3
    selected_speeds: list[str] = field(
        default_factory=lambda: ["bullet", "blitz", "rapid", "classical", "correspondence"]
    )
    selected_ratings: list[int] = field(default_factory=lambda: [1600, 1800, 2000, 2200])
    selected_modes: list[str] = field(default_factory=lambda: ["casual", "rated"])
    show_explorer_on_tree_moves: bool = True
    show_tree_arrows: bool = True
    show_explorer_arrows: bool = True
    show_engine_arrows: bool = True
