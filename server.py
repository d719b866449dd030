"""
Minimal Flask API exposing the move orchestrator for operators and the UI.

Endpoints:
- GET    /api/providers                          -> providers with their models
- GET    /api/providers/status                   -> circuit breaker state per provider
- POST   /api/providers/reset                    -> clear all breaker state
- POST   /api/move                               -> {provider_id, model_id, fen, options} -> move
- POST   /api/providers/<id>/models              -> add (or replace) a custom model
- PATCH  /api/providers/<id>/models/<model_id>   -> update model fields
- DELETE /api/providers/<id>/models/<model_id>   -> delete a custom model

The orchestrator lives on one asyncio loop running in a background thread; request
handlers hand every orchestrator call to it and block on the result.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Coroutine, Optional

import chess
from flask import Flask, jsonify, request

from llmchess_providers.errors import MoveProviderError
from llmchess_providers.orchestrator import MoveOrchestrator
from llmchess_providers.providers.base import ModelInfo, RequestOptions

log = logging.getLogger("server")

MOVE_WAIT_S = 180.0
CALL_WAIT_S = 10.0


async def _invoke(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return fn(*args, **kwargs)


class LoopThread:
    """Owns an asyncio event loop running forever in a daemon thread."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="orchestrator-loop", daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "LoopThread":
        self._thread.start()
        return self

    def run(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = CALL_WAIT_S, **kwargs: Any) -> Any:
        """Run a plain callable on the loop thread and return its result."""
        return self.run(_invoke(fn, *args, **kwargs), timeout=timeout)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self.loop.close()


def _model_payload(pid: str, model: ModelInfo) -> dict:
    d = model.to_dict()
    d["provider_id"] = pid
    return d


def create_app(orchestrator: Optional[MoveOrchestrator] = None, loop_thread: Optional[LoopThread] = None) -> Flask:
    app = Flask(__name__)
    runner = loop_thread or LoopThread().start()
    orch = orchestrator or MoveOrchestrator()
    app.config["ORCHESTRATOR"] = orch
    app.config["LOOP_THREAD"] = runner

    @app.route("/api/providers", methods=["GET"])
    def list_providers():
        return jsonify(runner.call(lambda: [p.describe() for p in orch.registry.get_all_providers()]))

    @app.route("/api/providers/status", methods=["GET"])
    def provider_status():
        return jsonify(runner.call(orch.get_provider_status))

    @app.route("/api/providers/reset", methods=["POST"])
    def reset_providers():
        runner.call(orch.reset_provider_states)
        return jsonify({"status": "reset", "providers": runner.call(orch.get_provider_status)})

    @app.route("/api/models", methods=["GET"])
    def list_models():
        return jsonify([_model_payload(pid, m) for pid, m in runner.call(orch.get_all_models)])

    @app.route("/api/move", methods=["POST"])
    def request_move():
        payload = request.get_json(force=True, silent=True) or {}
        provider_id = payload.get("provider_id")
        fen = payload.get("fen")
        if not provider_id or not fen:
            return jsonify({"error": "provider_id and fen are required"}), 400
        try:
            chess.Board(fen=fen)
        except ValueError:
            return jsonify({"error": "invalid_fen", "fen": fen}), 400
        options = RequestOptions.from_dict(payload.get("options"))
        coro = orch.get_ai_move(provider_id, payload.get("model_id"), fen, options=options)
        try:
            result = runner.run(coro, timeout=MOVE_WAIT_S)
        except MoveProviderError as e:
            return jsonify({"error": e.kind.value, "message": e.message, "provider_id": e.provider_id}), 502
        except concurrent.futures.TimeoutError:
            log.error("Move request for %s timed out after %.0fs", provider_id, MOVE_WAIT_S)
            return jsonify({"error": "timeout"}), 504
        return jsonify(result.to_dict())

    @app.route("/api/providers/<provider_id>/models", methods=["POST"])
    def add_model(provider_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        if not payload.get("id") or not payload.get("name"):
            return jsonify({"error": "id and name are required"}), 400
        fields = {k: v for k, v in payload.items() if k in ModelInfo.__dataclass_fields__}

        def _add() -> Optional[ModelInfo]:
            if not orch.add_custom_model(provider_id, ModelInfo(**fields)):
                return None
            return orch.registry.get_provider(provider_id).get_model(fields["id"])

        model = runner.call(_add)
        if model is None:
            return jsonify({"error": "not_found"}), 404
        return jsonify({"status": "added", "model": _model_payload(provider_id, model)}), 201

    @app.route("/api/providers/<provider_id>/models/<path:model_id>", methods=["PATCH"])
    def update_model(provider_id: str, model_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        unknown = sorted(k for k in payload if k not in ModelInfo.__dataclass_fields__)
        if unknown:
            return jsonify({"error": "invalid_fields", "message": f"Unknown model fields: {', '.join(unknown)}"}), 400
        try:
            ok = runner.call(orch.update_model, provider_id, model_id, **payload)
        except ValueError as e:
            return jsonify({"error": "invalid_fields", "message": str(e)}), 400
        if not ok:
            return jsonify({"error": "not_found"}), 404
        return jsonify({"status": "updated"})

    @app.route("/api/providers/<provider_id>/models/<path:model_id>", methods=["DELETE"])
    def delete_model(provider_id: str, model_id: str):
        if not runner.call(orch.delete_model, provider_id, model_id):
            return jsonify({"error": "not_deleted", "message": "Unknown or non-custom model."}), 400
        return jsonify({"status": "deleted"})

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = request.headers.get("Origin", "*")
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
        response.headers["Cache-Control"] = "no-store, max-age=0"
        return response

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    create_app().run(host="0.0.0.0", port=8000)
