"""
Move parsing/validation helpers for provider replies.

Stateless and safe to share between any number of providers. Every move handed
back to a caller passes through here, so anything returned by
find_best_valid_move() is legal in the position it was validated against.

Extraction order for free text:
- exact UCI: the whole (cleaned) reply is a legal long algebraic move (e2e4, e7e8q);
- UCI scan: the first legal UCI-looking substring anywhere in the reply;
- SAN: SAN-looking tokens (Nf3, exd5, O-O, e8=Q+) parsed against the legal move generator.
"""
from __future__ import annotations

import random
import re
from functools import lru_cache
from typing import TypedDict

import chess

UCI_RE = re.compile(r"^[a-h][1-8][a-h][1-8][qrbn]?$", re.I)
UCI_SCAN_RE = re.compile(r"[a-h][1-8][a-h][1-8][qrbnQRBN]?")
SAN_SCAN_RE = re.compile(r"O-O-O|O-O|0-0-0|0-0|[KQRBN]?[a-h]?[1-8]?x?[a-h][1-8](?:=[QRBN])?[+#]?")
CASTLE_ZERO = {"0-0": "O-O", "0-0-0": "O-O-O"}
_TRIM_CHARS = "`'\".,!?;:()[]{}* \t\r\n"


class ValidationResult(TypedDict, total=False):
    ok: bool
    move: str | None
    reason: str


def _strip_code_fence(text: str) -> str:
    """Remove simple ``` fences if present."""
    text = text.strip()
    if text.startswith("```") and text.endswith("```"):
        inner = text.split("\n", 1)
        if len(inner) == 2:
            return inner[1].rsplit("\n", 1)[0].strip()
        return text.strip("`").strip()
    return text


@lru_cache(maxsize=8192)
def _legal_moves_set(fen: str) -> frozenset[str]:
    """Cache and return the set of legal UCI moves for a given FEN (empty for an invalid FEN)."""
    try:
        board = chess.Board(fen=fen)
    except ValueError:
        return frozenset()
    return frozenset(m.uci() for m in board.legal_moves)


def _board(fen: str) -> chess.Board | None:
    try:
        return chess.Board(fen=fen)
    except ValueError:
        return None


def is_valid_uci_format(move_text: str) -> bool:
    return bool(move_text) and bool(UCI_RE.match(move_text))


def legal_moves(fen: str) -> list[str]:
    """Return list of legal UCI moves for the FEN (cached)."""
    return sorted(_legal_moves_set(fen))


def _san_to_uci(board: chess.Board, token: str) -> str | None:
    token = CASTLE_ZERO.get(token, token)
    try:
        mv = board.parse_san(token)
    except ValueError:
        return None
    # parse_san maps "--", "0000", "Z0" and "@@@@" to the null move
    if not mv or mv not in board.legal_moves:
        return None
    return mv.uci()


def is_legal_move(fen: str, move_text: str) -> bool:
    """True if move_text (UCI or SAN) is legal in the position."""
    if not move_text:
        return False
    text = move_text.strip()
    if is_valid_uci_format(text):
        return text.lower() in _legal_moves_set(fen)
    board = _board(fen)
    if board is None:
        return False
    return _san_to_uci(board, text) is not None


def extract_moves_from_text(text: str) -> list[str]:
    """Return UCI-looking candidates first, then SAN-looking candidates, in reply order."""
    if not text:
        return []
    moves = [m.lower() for m in UCI_SCAN_RE.findall(text)]
    moves.extend(m for m in SAN_SCAN_RE.findall(text) if len(m) >= 2)
    return moves


def find_best_valid_move(fen: str, text: str) -> str | None:
    """Extract the first legal move from a free-text reply, as lowercase UCI."""
    if not text:
        return None
    legal = _legal_moves_set(fen)
    if not legal:
        return None

    cleaned = _strip_code_fence(text).strip(_TRIM_CHARS).lower()
    if is_valid_uci_format(cleaned) and cleaned in legal:
        return cleaned

    candidates = extract_moves_from_text(text)
    for move in candidates:
        if is_valid_uci_format(move) and move.lower() in legal:
            return move.lower()

    board = chess.Board(fen=fen)
    for move in candidates:
        if is_valid_uci_format(move):
            continue
        uci = _san_to_uci(board, move)
        if uci:
            return uci
    return None


def validate_ai_response(fen: str, text: str) -> ValidationResult:
    if not text or not isinstance(text, str):
        return {"ok": False, "move": None, "reason": "empty_reply"}
    move = find_best_valid_move(fen, text)
    if move:
        return {"ok": True, "move": move}
    return {"ok": False, "move": None, "reason": f"no valid move found in reply: {text[:200]!r}"}


def get_random_legal_move(fen: str) -> str | None:
    """Uniformly chosen legal move; None when the side to move has no legal moves."""
    moves = legal_moves(fen)
    return random.choice(moves) if moves else None


def san_for(fen: str, uci: str) -> str | None:
    board = _board(fen)
    if board is None:
        return None
    try:
        mv = chess.Move.from_uci(uci)
    except ValueError:
        return None
    if mv not in board.legal_moves:
        return None
    return board.san(mv)


def side_to_move(fen: str) -> str:
    board = _board(fen)
    if board is None:
        return "white"
    return "white" if board.turn == chess.WHITE else "black"


__all__ = [
    "ValidationResult",
    "is_valid_uci_format",
    "is_legal_move",
    "legal_moves",
    "extract_moves_from_text",
    "find_best_valid_move",
    "validate_ai_response",
    "get_random_legal_move",
    "san_for",
    "side_to_move",
]
