"""
Stockfish-backed provider.

- Resolves engine binary path from: explicit parameter, SETTINGS.stockfish_path/env, or system PATH.
- Model ids "engine-level-N" map to a UCI Skill Level plus a depth/time budget.
- get_best_move(): asks the engine under a bounded timeout; when the engine returns nothing,
  an illegal move or times out, a random legal move from the validator is used instead.
- cleanup(): terminates the engine process.
"""
from __future__ import annotations

import asyncio
import os
import re
import shutil
import time
from typing import Any, Awaitable, Callable, List, Optional

import chess
import chess.engine

from ..config import SETTINGS
from ..errors import ErrorKind, make_error
from ..move_validator import get_random_legal_move, san_for
from .base import ModelInfo, MoveCallback, MoveProvider, MoveResult, ProviderKind, RequestOptions

LEVEL_RE = re.compile(r"level-(\d+)$")
DEFAULT_LEVEL = 10
MAX_SKILL = 20
MAX_DEPTH = 25

DEFAULT_MODELS: List[ModelInfo] = [
    ModelInfo("engine-level-1", "Stockfish Level 1", "Beginner level Stockfish", "Beginner"),
    ModelInfo("engine-level-5", "Stockfish Level 5", "Intermediate level Stockfish", "Intermediate"),
    ModelInfo("engine-level-10", "Stockfish Level 10", "Advanced level Stockfish", "Advanced"),
    ModelInfo("engine-level-20", "Stockfish Level 20", "Master level Stockfish", "Master"),
]

# substring of a foreign (LLM) model id -> engine level of comparable strength
_STRENGTH_HINTS = [
    (("advanced", "thinking", "opus", "2.5-pro"), 20),
    (("pro", "sonnet", "4.1"), 10),
    (("flash", "mini", "fast", "haiku"), 5),
]

EngineFactory = Callable[[], Awaitable[Any]]


def level_for(model_id: Optional[str]) -> int:
    match = LEVEL_RE.search(model_id or "")
    return int(match.group(1)) if match else DEFAULT_LEVEL


def _score_text(info: dict) -> Optional[str]:
    score = info.get("score") if info else None
    if score is None:
        return None
    return str(score.white())


class LocalEngineProvider(MoveProvider):
    kind = ProviderKind.LOCAL_ENGINE
    supports_credentials = False

    def __init__(
        self,
        provider_id: str = "local-engine",
        name: str = "Stockfish (local)",
        engine_path: Optional[str] = None,
        engine_factory: Optional[EngineFactory] = None,
        timeout_s: Optional[float] = None,
        models: Optional[List[ModelInfo]] = None,
    ):
        super().__init__(provider_id, name, list(models if models is not None else DEFAULT_MODELS))
        self.engine_path = engine_path
        self._engine_factory = engine_factory
        self.timeout_s = SETTINGS.engine_timeout_s if timeout_s is None else timeout_s
        self._engine: Any = None
        self._lock: Optional[asyncio.Lock] = None

    def _resolve_path(self) -> Optional[str]:
        """engine_path precedence: explicit parameter, STOCKFISH_PATH env / settings, then PATH lookup."""
        candidate = self.engine_path or SETTINGS.stockfish_path or "stockfish"
        resolved = shutil.which(candidate) or (candidate if os.path.isfile(candidate) else None)
        return resolved or shutil.which("stockfish")

    async def is_ready(self) -> bool:
        if self._engine is not None or self._engine_factory is not None:
            return True
        return self._resolve_path() is not None

    async def _ensure_engine(self) -> Any:
        if self._engine is not None:
            return self._engine
        if self._engine_factory is not None:
            self._engine = await self._engine_factory()
            return self._engine
        path = self._resolve_path()
        if not path:
            raise make_error(
                ErrorKind.PROVIDER_UNAVAILABLE,
                self.id,
                message=(
                    f"Engine provider {self.id} unavailable: Stockfish not found. Install it (e.g. 'brew install stockfish') "
                    "or set STOCKFISH_PATH to the binary path."
                ),
            )
        try:
            _transport, self._engine = await chess.engine.popen_uci(path)
        except FileNotFoundError as e:
            raise make_error(ErrorKind.PROVIDER_UNAVAILABLE, self.id, message=f"Engine provider {self.id} unavailable: failed launching '{path}': {e}") from e
        self.log.info("Launched engine at %s", path)
        return self._engine

    def budget(self, model_id: Optional[str], options: Optional[RequestOptions]) -> tuple[int, chess.engine.Limit, float]:
        """Map a level model id (plus caller overrides) to (skill level, search limit, timeout seconds)."""
        level = level_for(model_id)
        skill = max(0, min(level, MAX_SKILL))
        depth = options.depth if options and options.depth else max(1, min(level, MAX_DEPTH))
        movetime = options.time_limit_s if options and options.time_limit_s else None
        limit = chess.engine.Limit(depth=depth, time=movetime)
        timeout = max(self.timeout_s, depth * 0.4) + (movetime or 0.0)
        return skill, limit, timeout

    async def get_best_move(self, fen: str, callback: Optional[MoveCallback] = None, options: Optional[RequestOptions] = None) -> MoveResult:
        board = chess.Board(fen=fen)
        if not any(board.legal_moves):
            raise make_error(ErrorKind.INVALID_MOVE, self.id, message="Invalid move request: no legal moves in position")
        model_id = (options.model_id if options else None) or self.default_model_id()
        skill, limit, timeout = self.budget(model_id, options)

        if self._lock is None:
            self._lock = asyncio.Lock()
        t0 = time.time()
        async with self._lock:
            engine = await self._ensure_engine()
            if "Skill Level" in getattr(engine, "options", {}):
                await engine.configure({"Skill Level": skill})
            try:
                res = await asyncio.wait_for(engine.play(board, limit, info=chess.engine.INFO_SCORE), timeout=timeout)
            except asyncio.TimeoutError:
                self.log.warning("Engine analysis timed out after %.1fs; using fallback move", timeout)
                res = None
            except chess.engine.EngineTerminatedError:
                self._engine = None
                raise

        move = res.move.uci() if res is not None and res.move is not None else None
        source = "engine"
        if move is None or move not in {m.uci() for m in board.legal_moves}:
            if move is not None:
                self.log.warning("Engine returned illegal move %s for %s", move, fen)
            move = get_random_legal_move(fen)
            source = "random"
        result = MoveResult(
            uci=move,
            san=san_for(fen, move),
            provider_id=self.id,
            model_id=model_id,
            latency_ms=int((time.time() - t0) * 1000),
            source=source,
            score=_score_text(res.info) if res is not None and source == "engine" else None,
        )
        return self._deliver(result, callback)

    def map_model_id(self, foreign_model_id: Optional[str]) -> Optional[str]:
        if foreign_model_id and self.get_model(foreign_model_id) is not None:
            return foreign_model_id
        lowered = (foreign_model_id or "").lower()
        level = DEFAULT_LEVEL
        for hints, hinted_level in _STRENGTH_HINTS:
            if any(h in lowered for h in hints):
                level = hinted_level
                break
        candidate = f"engine-level-{level}"
        return candidate if self.get_model(candidate) is not None else self.default_model_id()

    async def cleanup(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            await engine.quit()
        except chess.engine.EngineError:
            self.log.exception("Engine did not quit cleanly")
