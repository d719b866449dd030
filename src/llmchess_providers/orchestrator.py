"""
Single entry point for move requests.

MoveOrchestrator owns one registry and one fallback manager (an orchestration
context, so tests and servers can hold isolated instances). Concurrent identical
requests (same provider, model and FEN inside the same dedupe window) share one
in-flight task, so the caller-side move is applied once.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import SETTINGS, Settings
from .fallback import FallbackManager
from .providers.base import ModelInfo, MoveCallback, MoveResult, RequestOptions
from .registry import ProviderRegistry, create_default_registry

log = logging.getLogger("orchestrator")

DedupeKey = Tuple[str, Optional[str], str, int]


class MoveOrchestrator:
    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        fallback: Optional[FallbackManager] = None,
        settings: Settings = SETTINGS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.registry = create_default_registry(settings) if registry is None else registry
        if fallback is None:
            fallback = FallbackManager(
                self.registry,
                failure_threshold=settings.failure_threshold,
                failure_window_s=settings.failure_window_s,
                disable_duration_s=settings.disable_duration_s,
                fallback_provider_id=settings.fallback_provider,
                max_retries=settings.max_retries,
            )
        self.fallback = fallback
        self._clock = clock
        self._inflight: Dict[DedupeKey, asyncio.Task] = {}

    def _dedupe_key(self, provider_id: str, model_id: Optional[str], fen: str) -> DedupeKey:
        window = self.settings.dedupe_window_s
        bucket = int(self._clock() / window) if window > 0 else 0
        return (provider_id, model_id, fen, bucket)

    async def get_ai_move(
        self,
        provider_id: str,
        model_id: Optional[str],
        fen: str,
        callback: Optional[MoveCallback] = None,
        options: Optional[RequestOptions] = None,
    ) -> MoveResult:
        """Request a move; callback (if any) gets exactly one legal move, or an error is raised."""
        key = self._dedupe_key(provider_id, model_id, fen)
        task = self._inflight.get(key)
        if task is not None and not task.done():
            log.info("Duplicate move request for %s/%s ignored; awaiting the in-flight one", provider_id, model_id)
            return await asyncio.shield(task)

        log.info("Requesting move from %s (%s) for %s", provider_id, model_id, fen)
        task = asyncio.ensure_future(self.fallback.execute_with_fallback(provider_id, model_id, fen, callback, options))
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: DedupeKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # keep "exception was never retrieved" quiet when every awaiter went away
        if not task.cancelled():
            task.exception()

    # -- status ------------------------------------------------------------
    def get_provider_status(self) -> Dict[str, dict]:
        return self.fallback.get_provider_status()

    def reset_provider_states(self) -> None:
        self.fallback.reset()

    # -- models ------------------------------------------------------------
    def get_all_models(self) -> List[Tuple[str, ModelInfo]]:
        return self.registry.get_all_models()

    def _provider_or_warn(self, provider_id: str, action: str):
        provider = self.registry.get_provider(provider_id)
        if provider is None:
            log.warning("Cannot %s: unknown provider %s", action, provider_id)
        return provider

    def add_custom_model(self, provider_id: str, model: ModelInfo) -> bool:
        provider = self._provider_or_warn(provider_id, "add model")
        if provider is None:
            return False
        provider.add_model(model)
        return True

    def update_model(self, provider_id: str, model_id: str, **updates: Any) -> bool:
        provider = self._provider_or_warn(provider_id, "update model")
        if provider is None:
            return False
        return provider.update_model(model_id, **updates)

    def delete_model(self, provider_id: str, model_id: str) -> bool:
        provider = self._provider_or_warn(provider_id, "delete model")
        if provider is None:
            return False
        return provider.delete_model(model_id)

    def set_api_key(self, provider_id: str, api_key: str) -> bool:
        provider = self._provider_or_warn(provider_id, "set API key")
        if provider is None:
            return False
        if not provider.supports_credentials:
            log.warning("Provider %s does not take credentials", provider_id)
            return False
        provider.set_api_key(api_key)
        return True

    async def cleanup(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        await self.registry.cleanup()
