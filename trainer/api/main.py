"""
FastAPI surface for the Repertoire Trainer

Endpoints:
  GET  /state                       - Board, options, training and repertoire state
  POST /move                        - Board move (squares) or explorer/engine move (code)
  POST /navigate, /back, /undo      - Cursor navigation
  POST /delete-branch               - Remove the current move and its continuations
  POST /training/{start,stop,continue,hint}
  GET/POST/PATCH/DELETE /repertoires[/{id}]
  POST /browse                      - Browse mode for the current side
  POST /import, GET /export, GET /export/all
  GET  /explorer                    - Opening explorer statistics for the cursor position
"""

import functools
import sys
import threading
from pathlib import Path
from typing import Literal

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

import rules
from config import get_lichess_token
from controller import TrainerController
from db import PostgresKeyValueStore
from explorer import REQUEST_TIMEOUT, ExplorerFilters, fetch_position_stats

app = FastAPI(title="Repertoire Trainer API", version="1.0.0")

_controller: TrainerController | None = None

# Sync routes run on the threadpool; every controller call happens under this lock.
controller_lock = threading.Lock()


def get_controller() -> TrainerController:
    """Process-wide controller, hydrated from the database on first use."""
    global _controller
    with controller_lock:
        if _controller is None:
            _controller = TrainerController(store=PostgresKeyValueStore())
            _controller.hydrate()
        return _controller


def serialized(handler):
    @functools.wraps(handler)
    def wrapper(*args, **kwargs):
        with controller_lock:
            return handler(*args, **kwargs)
    return wrapper


class MoveRequest(BaseModel):
    origin: str | None = None
    destination: str | None = None
    promotion: str = "q"
    move_code: str | None = None


class NavigateRequest(BaseModel):
    node_id: str


class SideRequest(BaseModel):
    side: Literal["white", "black"]


class RepertoireCreate(BaseModel):
    name: str
    side: Literal["white", "black"] | None = None


class RepertoireRename(BaseModel):
    name: str


class ImportRequest(BaseModel):
    pgn: str
    mode: Literal["current", "db"] = "current"


class SettingsUpdate(BaseModel):
    theme_mode: Literal["light", "dark"] | None = None
    explorer_source: Literal["lichess", "masters", "player"] | None = None
    player_handle: str | None = None
    date_range: str | None = None
    arrow_threshold: int | None = None
    engine_depth: int | None = None
    engine_lines: int | None = None
    selected_speeds: list[str] | None = None
    selected_ratings: list[int] | None = None
    selected_modes: list[str] | None = None
    show_explorer_on_tree_moves: bool | None = None
    show_tree_arrows: bool | None = None
    show_explorer_arrows: bool | None = None
    show_engine_arrows: bool | None = None


def options_response(controller: TrainerController) -> list[dict]:
    return [
        {
            "move_code": row.move_code,
            "move_notation": row.move_notation,
            "leaves": row.leaves,
            "node_id": row.node_id,
            "repertoires": list(row.entry_names),
        }
        for row in controller.displayed_options()
    ]


def repertoires_response(controller: TrainerController) -> dict:
    result = {}
    for side in ("white", "black"):
        current = controller.collection.side(side)
        result[side] = {
            "active_id": current.active_id,
            "entries": [
                {"id": e.id, "name": e.name, "moves": len(e.tree.nodes) - 1} for e in current.entries
            ],
        }
    return result


def state_response(controller: TrainerController, changed: bool | None = None) -> dict:
    """Convert controller state to an API response dict."""
    node = controller.node
    session = controller.training if controller.is_training_active else None
    last_move = controller.last_move()
    response = {
        "side": controller.side,
        "orientation": controller.orientation,
        "position": rules.resolve_fen(node.position),
        "node_id": node.id,
        "last_move": list(last_move) if last_move else None,
        "path": [
            {"node_id": n.id, "notation": n.move_notation, "annotation": n.annotation}
            for n in controller.path()[1:]
        ],
        "options": options_response(controller),
        "legal_destinations": controller.legal_destinations(),
        "shapes": [
            {"origin": s.origin, "destination": s.destination, "brush": s.brush} for s in controller.shapes()
        ],
        "browse_mode": controller.is_browse_mode,
        "active_repertoire": controller.active_name,
        "repertoires_at_position": controller.repertoires_at_position(),
        "undo_depth": controller.history.depth(controller.side),
        "training": {
            "phase": controller.training_phase.value,
            "root_node_id": session.root_node_id if session else None,
            "hint_requested": session.hint_requested if session else False,
            "hint_move": session.hint_move_code if session and session.hint_visible else None,
        },
        "status": controller.status,
    }
    if changed is not None:
        response["changed"] = changed
    return response


@app.get("/state")
@serialized
def get_state(controller: TrainerController = Depends(get_controller)):
    return state_response(controller)


@app.get("/options")
@serialized
def get_options(controller: TrainerController = Depends(get_controller)):
    return options_response(controller)


@app.post("/move")
@serialized
def post_move(body: MoveRequest, controller: TrainerController = Depends(get_controller)):
    """Play a move by squares or by move code. Rejected moves return 400."""
    if body.move_code:
        if controller.is_training_active:
            raise HTTPException(status_code=400, detail="Move codes cannot be played while training")
        accepted = controller.play_move_code(body.move_code)
    elif body.origin and body.destination:
        accepted = controller.make_move(body.origin, body.destination, body.promotion)
    else:
        raise HTTPException(status_code=400, detail="Provide origin and destination, or move_code")
    if not accepted:
        raise HTTPException(status_code=400, detail="Move rejected")
    return state_response(controller, changed=True)


@app.post("/navigate")
@serialized
def post_navigate(body: NavigateRequest, controller: TrainerController = Depends(get_controller)):
    if body.node_id not in controller.tree:
        raise HTTPException(status_code=404, detail="Node not found")
    return state_response(controller, changed=controller.navigate(body.node_id))


@app.post("/back")
@serialized
def post_back(controller: TrainerController = Depends(get_controller)):
    return state_response(controller, changed=controller.go_back())


@app.post("/delete-branch")
@serialized
def post_delete_branch(controller: TrainerController = Depends(get_controller)):
    return state_response(controller, changed=controller.delete_branch())


@app.post("/undo")
@serialized
def post_undo(controller: TrainerController = Depends(get_controller)):
    return state_response(controller, changed=controller.undo())


@app.post("/training/start")
@serialized
def post_training_start(controller: TrainerController = Depends(get_controller)):
    if not controller.start_training():
        raise HTTPException(status_code=400, detail=controller.status)
    return state_response(controller, changed=True)


@app.post("/training/stop")
@serialized
def post_training_stop(controller: TrainerController = Depends(get_controller)):
    return state_response(controller, changed=controller.stop_training())


@app.post("/training/continue")
@serialized
def post_training_continue(controller: TrainerController = Depends(get_controller)):
    return state_response(controller, changed=controller.continue_training())


@app.post("/training/hint")
@serialized
def post_training_hint(controller: TrainerController = Depends(get_controller)):
    return state_response(controller, changed=controller.show_hint() is not None)


@app.post("/side")
@serialized
def post_side(body: SideRequest, controller: TrainerController = Depends(get_controller)):
    controller.set_side(body.side)
    return state_response(controller)


@app.post("/flip")
@serialized
def post_flip(controller: TrainerController = Depends(get_controller)):
    controller.flip_board()
    return state_response(controller)


@app.patch("/settings")
@serialized
def patch_settings(body: SettingsUpdate, controller: TrainerController = Depends(get_controller)):
    changes = body.model_dump(exclude_unset=True)
    if not controller.update_settings(**changes):
        raise HTTPException(status_code=400, detail=controller.status)
    return {"status": controller.status, **changes}


@app.get("/repertoires")
@serialized
def list_repertoires(controller: TrainerController = Depends(get_controller)):
    return repertoires_response(controller)


@app.post("/repertoires", status_code=201)
@serialized
def create_repertoire(body: RepertoireCreate, controller: TrainerController = Depends(get_controller)):
    entry = controller.create_repertoire(body.name, body.side)
    return {"id": entry.id, "name": entry.name, "status": controller.status}


@app.post("/repertoires/{entry_id}/load")
@serialized
def load_repertoire(entry_id: str, controller: TrainerController = Depends(get_controller)):
    if not controller.load_repertoire(entry_id):
        raise HTTPException(status_code=404, detail="Repertoire not found")
    return state_response(controller)


@app.patch("/repertoires/{entry_id}")
@serialized
def rename_repertoire(entry_id: str, body: RepertoireRename, controller: TrainerController = Depends(get_controller)):
    if not controller.rename_repertoire(entry_id, body.name):
        raise HTTPException(status_code=404, detail="Repertoire not found")
    return repertoires_response(controller)


@app.delete("/repertoires/{entry_id}")
@serialized
def delete_repertoire(entry_id: str, controller: TrainerController = Depends(get_controller)):
    if controller.collection.side(controller.side).find(entry_id) is None:
        raise HTTPException(status_code=404, detail="Repertoire not found")
    if not controller.delete_repertoire(entry_id):
        raise HTTPException(status_code=400, detail=controller.status)
    return repertoires_response(controller)


@app.post("/browse")
@serialized
def post_browse(controller: TrainerController = Depends(get_controller)):
    controller.enter_browse_mode()
    return state_response(controller)


@app.post("/import")
@serialized
def post_import(body: ImportRequest, controller: TrainerController = Depends(get_controller)):
    count = controller.import_pgn(body.pgn, body.mode)
    return {"mode": body.mode, "count": count, "status": controller.status}


def pgn_download(filename: str, text: str) -> PlainTextResponse:
    return PlainTextResponse(
        text,
        media_type="application/x-chess-pgn",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/export")
@serialized
def get_export(controller: TrainerController = Depends(get_controller)):
    filename, text = controller.export_current()
    return pgn_download(filename, text)


@app.get("/export/all")
@serialized
def get_export_all(controller: TrainerController = Depends(get_controller)):
    exported = controller.export_all()
    if exported is None:
        raise HTTPException(status_code=404, detail="No repertoires to export")
    return pgn_download(*exported)


@app.get("/explorer")
async def get_explorer(controller: TrainerController = Depends(get_controller)):
    """Fetch explorer statistics for the cursor position and re-sort its children by popularity."""
    with controller_lock:
        position = controller.node.position
        side = controller.side
        filters = ExplorerFilters.from_settings(controller.settings)
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as session:
        try:
            data = await fetch_position_stats(session, position, filters, side, get_lichess_token())
        except Exception as e:
            raise HTTPException(status_code=502, detail=f"Explorer request failed: {e}")
    with controller_lock:
        reordered = controller.apply_explorer_response(position, data)
    if data is None:
        return {"opening": None, "total": 0, "moves": [], "reordered": False}
    return {
        "opening": {"eco": data.opening_eco, "name": data.opening_name} if data.opening_name else None,
        "total": data.total,
        "moves": [
            {"move_code": m.move_code, "notation": m.notation, "total": m.total, "average_rating": m.average_rating}
            for m in data.moves
        ],
        "reordered": reordered,
    }


@app.get("/health")
def health():
    return {"status": "ok"}
