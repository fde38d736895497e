"""Rules oracle backed by python-chess.

Positions are FEN strings, except the tree root which carries the START_POSITION
sentinel; it is resolved to the real starting FEN only here.
"""

import re

import chess

from models import START_POSITION, MoveResult, Side

MOVE_ERRORS = (chess.IllegalMoveError, chess.InvalidMoveError, chess.AmbiguousMoveError)

UCI_PATTERN = re.compile(r"^[a-h][1-8][a-h][1-8][nbrq]?$")
PROMOTION_PIECES = {"q": chess.QUEEN, "r": chess.ROOK, "b": chess.BISHOP, "n": chess.KNIGHT}


def resolve_fen(position: str) -> str:
    """Real FEN for a stored position value."""
    return chess.STARTING_FEN if position == START_POSITION else position


def board_for(position: str) -> chess.Board:
    return chess.Board(resolve_fen(position))


def side_to_move(position: str) -> Side:
    return "white" if board_for(position).turn == chess.WHITE else "black"


def move_code(move: chess.Move) -> str:
    return move.uci()


def _result(board: chess.Board, move: chess.Move) -> MoveResult:
    notation = board.san(move)
    board.push(move)
    return MoveResult(notation=notation, move_code=move_code(move), resulting_position=board.fen())


def try_move(position: str, origin: str, destination: str, promotion: str | None = None) -> MoveResult | None:
    """Play origin->destination from position; None when the move is rejected.

    A promotion piece is only taken into account for a pawn reaching the last rank,
    so board views may always send a default promotion letter.
    """
    try:
        board = board_for(position)
        from_square = chess.parse_square(origin)
        to_square = chess.parse_square(destination)
    except ValueError:
        return None

    candidates = []
    if promotion and promotion.lower() in PROMOTION_PIECES:
        candidates.append(chess.Move(from_square, to_square, PROMOTION_PIECES[promotion.lower()]))
    candidates.append(chess.Move(from_square, to_square))

    for move in candidates:
        if board.is_legal(move):
            return _result(board, move)
    return None


def try_move_code(position: str, code: str) -> MoveResult | None:
    if not code or not UCI_PATTERN.match(code.lower()):
        return None
    code = code.lower()
    return try_move(position, code[0:2], code[2:4], code[4:5] or None)


def try_san(position: str, san: str) -> MoveResult | None:
    """Resolve a SAN token; None for illegal, malformed or ambiguous moves."""
    board = board_for(position)
    try:
        move = board.parse_san(san)
    except MOVE_ERRORS:
        return None
    return _result(board, move)


def resolve_move(position: str, text: str) -> MoveResult | None:
    """Accept either a move code (e2e4) or SAN (e4)."""
    if UCI_PATTERN.match(text.strip().lower()):
        result = try_move_code(position, text.strip())
        if result is not None:
            return result
    return try_san(position, text.strip())


def legal_destinations(position: str) -> dict[str, list[str]]:
    dests: dict[str, list[str]] = {}
    for move in board_for(position).legal_moves:
        dests.setdefault(chess.square_name(move.from_square), []).append(chess.square_name(move.to_square))
    return dests


def split_move_code(code: str | None) -> tuple[str, str] | None:
    """(origin, destination) squares of a move code, for last-move highlights and arrows."""
    if not code or len(code) < 4:
        return None
    return code[0:2], code[2:4]
