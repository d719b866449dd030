"""
ask_move.py: ask the provider layer for one move.
- Builds the default orchestrator (remote LLM + local Stockfish fallback) from settings.yml / env.
- Requests a move for the given FEN and prints the MoveResult and provider status as JSON.
Usage: python scripts/ask_move.py --fen "<FEN>" --provider llm --model openai/gpt-4o-mini
"""
import argparse
import asyncio
import json
import logging
import sys

import chess

from llmchess_providers.errors import MoveProviderError
from llmchess_providers.orchestrator import MoveOrchestrator
from llmchess_providers.providers.base import RequestOptions


def _parse_log_level(name: str | None) -> int:
    name = (name or "INFO").upper()
    return getattr(logging, name, logging.INFO)


async def ask(args: argparse.Namespace) -> int:
    orch = MoveOrchestrator()
    options = RequestOptions(
        temperature=args.temperature,
        time_limit_s=args.time_limit,
        depth=args.depth,
        time_control=args.time_control,
        move_history=[m for m in (args.history or "").split() if m],
    )
    try:
        result = await orch.get_ai_move(args.provider, args.model, args.fen, options=options)
        out = {"move": result.to_dict()}
        code = 0
    except MoveProviderError as e:
        out = {"error": {"kind": e.kind.value, "message": e.message, "provider_id": e.provider_id}}
        code = 1
    finally:
        out_status = orch.get_provider_status()
        await orch.cleanup()
    out["providers"] = out_status
    print(json.dumps(out, indent=2))
    return code


def main() -> int:
    ap = argparse.ArgumentParser(description="Ask a move provider for one move")
    ap.add_argument("--fen", default=chess.STARTING_FEN, help="Position (default: start position)")
    ap.add_argument("--provider", default="llm", help="Preferred provider id (llm | local-engine)")
    ap.add_argument("--model", default=None, help="Model id (default: provider's first enabled model)")
    ap.add_argument("--temperature", type=float, default=None)
    ap.add_argument("--time-limit", type=float, default=None, help="Engine move time in seconds")
    ap.add_argument("--depth", type=int, default=None, help="Engine search depth")
    ap.add_argument("--time-control", choices=["blitz", "rapid", "classical"], default=None)
    ap.add_argument("--history", default=None, help="Space separated SAN moves played so far")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args()

    logging.basicConfig(level=_parse_log_level(args.log_level), format="%(asctime)s %(levelname)s %(message)s")
    try:
        chess.Board(fen=args.fen)
    except ValueError as e:
        ap.error(f"invalid FEN: {e}")
    return asyncio.run(ask(args))


if __name__ == "__main__":
    sys.exit(main())
