"""Registry of move providers keyed by provider id (one instance per orchestration context)."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .config import SETTINGS, Settings
from .providers.base import ModelInfo, MoveProvider
from .providers.local_engine import LocalEngineProvider
from .providers.remote_llm import RemoteLLMProvider

log = logging.getLogger("registry")


class ProviderRegistry:
    def __init__(self, providers: Optional[List[MoveProvider]] = None):
        self._providers: Dict[str, MoveProvider] = {}
        for p in providers or []:
            self.register(p)

    def register(self, provider: MoveProvider) -> None:
        if provider.id in self._providers:
            raise ValueError(f"Provider '{provider.id}' is already registered")
        self._providers[provider.id] = provider
        log.debug("Registered provider %s (%s)", provider.id, provider.kind.value)

    def unregister(self, provider_id: str) -> bool:
        return self._providers.pop(provider_id, None) is not None

    def get_provider(self, provider_id: Optional[str]) -> Optional[MoveProvider]:
        if provider_id is None:
            return None
        return self._providers.get(provider_id)

    def get_all_providers(self) -> List[MoveProvider]:
        return list(self._providers.values())

    def provider_ids(self) -> List[str]:
        return list(self._providers)

    def get_all_models(self) -> List[Tuple[str, ModelInfo]]:
        """Enabled models across providers as (provider_id, model) pairs, in registration order."""
        return [(pid, m) for pid, p in self._providers.items() for m in p.get_enabled_models()]

    async def cleanup(self) -> None:
        """Release every provider's resources; one failing provider does not stop the rest."""
        for provider in self.get_all_providers():
            try:
                await provider.cleanup()
            except Exception:
                log.exception("Error cleaning up provider %s", provider.id)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)


def create_default_registry(settings: Settings = SETTINGS) -> ProviderRegistry:
    """Registry with the remote LLM provider and the local engine provider."""
    return ProviderRegistry([
        RemoteLLMProvider(
            api_key=settings.llm_api_key,
            base_url=settings.api_base,
            max_retries=settings.max_retries,
            request_timeout_s=settings.request_timeout_s,
            max_retry_delay_s=settings.max_retry_delay_s,
        ),
        LocalEngineProvider(
            provider_id=settings.fallback_provider or "local-engine",
            engine_path=settings.stockfish_path or None,
            timeout_s=settings.engine_timeout_s,
        ),
    ])
