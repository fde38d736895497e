#!/usr/bin/env python3
"""
Opening Explorer — move popularity for a position from the Lichess explorer

Builds explorer requests from the trainer's filter settings (source, speeds, ratings,
player, date window), parses possibly streamed NDJSON responses and keeps only the
newest request alive while the position changes.

Usage:
  python explorer.py --fen "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
  python explorer.py --source player --player someone --side black
  LICHESS_TOKEN=xxx python explorer.py --source masters --date-range 10y
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent))
import rules
from models import ExplorerMove, ExplorerResponse, Settings, Side

logger = logging.getLogger("repertoire_trainer")

LICHESS_EXPLORER = "https://explorer.lichess.ovh"
VARIANT = "standard"
PLAYER_SOURCE = "analysis"
DEFAULT_MODES = ["casual", "rated"]
FETCH_DELAY_SECONDS = 0.28
REQUEST_TIMEOUT = 120.0

# Date ranges each endpoint cannot serve; they are sent without a window.
DISALLOWED_RANGES = {
    "player": {"5y", "10y", "20y", "30y", "50y"},
    "masters": {"1m", "2m", "3m", "6m", "20y", "30y", "50y"},
    "lichess": {"1m", "2m", "3m", "6m", "20y", "30y", "50y"},
}
MONTH_OFFSETS = {"1m": 0, "2m": -1, "3m": -2, "6m": -5}
YEAR_OFFSETS = {"1y": -1, "5y": -5, "10y": -10}
DEFAULT_YEAR_OFFSET = -3


@dataclass
class ExplorerFilters:
    source: str = "lichess"
    speeds: list[str] = field(default_factory=list)
    ratings: list[int] = field(default_factory=list)
    modes: list[str] = field(default_factory=list)
    player_handle: str = ""
    date_range: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExplorerFilters":
        return cls(
            source=settings.explorer_source,
            speeds=list(settings.selected_speeds),
            ratings=list(settings.selected_ratings),
            modes=list(settings.selected_modes),
            player_handle=settings.player_handle,
            date_range=settings.date_range,
        )

    @property
    def needs_player(self) -> bool:
        return self.source == "player" and not self.player_handle.strip()


def effective_date_range(date_range: str | None, source: str) -> str | None:
    if date_range in DISALLOWED_RANGES.get(source, set()):
        return None
    return date_range


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def date_window(date_range: str | None, source: str, today: date | None = None) -> tuple[str, str] | None:
    """(since, until) for a date range; years only for masters, YYYY-MM otherwise."""
    date_range = effective_date_range(date_range, source)
    if not date_range:
        return None
    today = today or date.today()

    if date_range in MONTH_OFFSETS:
        year, month = _shift_month(today.year, today.month, MONTH_OFFSETS[date_range])
    else:
        year, month = today.year + YEAR_OFFSETS.get(date_range, DEFAULT_YEAR_OFFSET), today.month

    if source == "masters":
        return f"{year}", f"{today.year}"
    return f"{year}-{month:02d}", f"{today.year}-{today.month:02d}"


def build_explorer_request(position: str, filters: ExplorerFilters, side: Side,
                           today: date | None = None) -> tuple[str, dict[str, str]]:
    """Endpoint URL and query parameters for a position."""
    params = {"fen": rules.resolve_fen(position), "variant": VARIANT, "color": side}
    if filters.source in ("lichess", "player") and filters.speeds:
        params["speeds"] = ",".join(filters.speeds)
    if filters.source == "lichess" and filters.ratings:
        params["ratings"] = ",".join(str(r) for r in filters.ratings)
    if filters.source == "player":
        params["player"] = filters.player_handle.strip()
        params["play"] = ""
        params["modes"] = ",".join(filters.modes or DEFAULT_MODES)
        params["source"] = PLAYER_SOURCE

    window = date_window(filters.date_range, filters.source, today)
    if window:
        params["since"], params["until"] = window
    return f"{LICHESS_EXPLORER}/{filters.source}", params


def parse_last_json_object(text: str) -> Any:
    """The last complete JSON object in text, which may hold several streamed snapshots."""
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    last = None
    index = text.find("{")
    while index >= 0:
        try:
            obj, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        last = obj
        index = text.find("{", end)
    return last


def _count(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def response_from_dict(data: dict) -> ExplorerResponse:
    moves = []
    for move in data.get("moves", []) or []:
        if not isinstance(move, dict) or not move.get("uci"):
            continue
        rating = move.get("averageRating", move.get("averageElo"))
        moves.append(
            ExplorerMove(
                move_code=move["uci"],
                notation=move.get("san", ""),
                white=_count(move.get("white")),
                draws=_count(move.get("draws")),
                black=_count(move.get("black")),
                average_rating=round(rating) if isinstance(rating, (int, float)) else None,
            )
        )
    opening = data.get("opening") or {}
    return ExplorerResponse(
        white=_count(data.get("white")),
        draws=_count(data.get("draws")),
        black=_count(data.get("black")),
        moves=moves,
        opening_eco=opening.get("eco"),
        opening_name=opening.get("name"),
    )


def parse_explorer_payload(text: str) -> ExplorerResponse | None:
    data = parse_last_json_object(text)
    if not isinstance(data, dict):
        return None
    return response_from_dict(data)


async def fetch_position_stats(
    session: httpx.AsyncClient,
    position: str,
    filters: ExplorerFilters,
    side: Side,
    token: str | None = None,
    today: date | None = None,
) -> ExplorerResponse | None:
    """Fetch explorer statistics for a position. None for a player query without a handle."""
    if filters.needs_player:
        return None
    url, params = build_explorer_request(position, filters, side, today)
    logger.debug("Explorer request %s fen=%s", url, params["fen"])
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    resp = await session.get(url, params=params, headers=headers or None)
    if resp.status_code == 429:
        raise Exception("Rate limited (429)")
    resp.raise_for_status()
    return parse_explorer_payload(resp.text)


def popularity_map(response: ExplorerResponse | None) -> dict[str, int]:
    """Total games per move code."""
    if response is None:
        return {}
    return {move.move_code: move.total for move in response.moves}


def move_share(move: ExplorerMove, response: ExplorerResponse) -> float:
    """Percentage of the position's games that played move."""
    total = sum(m.total for m in response.moves)
    return move.total / total * 100 if total > 0 else 0.0


T = TypeVar("T")


class LatestOnlyFetcher(Generic[T]):
    """Runs one request at a time; a new request cancels the one in flight.

    Each request waits `delay` seconds first so rapid position changes collapse into
    one network call. A superseded request resolves to None and its result is never
    returned.
    """

    def __init__(self, fetch: Callable[..., Awaitable[T]], delay: float = FETCH_DELAY_SECONDS):
        self.fetch = fetch
        self.delay = delay
        self._generation = 0
        self._task: asyncio.Task | None = None

    async def _run(self, args: tuple, kwargs: dict) -> T:
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        return await self.fetch(*args, **kwargs)

    async def request(self, *args, **kwargs) -> T | None:
        self.cancel()
        self._generation += 1
        generation = self._generation
        task = asyncio.create_task(self._run(args, kwargs))
        self._task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                return None
            raise
        if generation != self._generation:
            return None
        return result

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


async def main_async():
    parser = argparse.ArgumentParser()
    parser.add_argument("--fen", default="start")
    parser.add_argument("--side", choices=["white", "black"], default="white")
    parser.add_argument("--source", choices=["lichess", "masters", "player"], default="lichess")
    parser.add_argument("--player", default="")
    parser.add_argument("--date-range", default=None)
    args = parser.parse_args()

    from config import get_lichess_token, setup_logging

    setup_logging()
    settings = Settings(explorer_source=args.source, player_handle=args.player, date_range=args.date_range)
    filters = ExplorerFilters.from_settings(settings)
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as session:
        try:
            data = await fetch_position_stats(session, args.fen, filters, args.side, get_lichess_token())
        except Exception as e:
            print(f"API error: {e}", file=sys.stderr)
            sys.exit(1)

    if data is None:
        print("No data (player source needs --player).", file=sys.stderr)
        return
    if data.opening_name:
        print(f"{data.opening_eco} {data.opening_name}")
    print(f"{data.total} games  (+{data.white} ={data.draws} -{data.black})")
    for move in data.moves:
        print(f"  {move.notation:8} {move.total:>10}  {move_share(move, data):5.1f}%")


def main():
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
