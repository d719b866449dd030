"""
Circuit-breaker style fallback across move providers.

Per provider id: CLOSED (eligible) -> failure_threshold failures inside a rolling
failure_window_s -> OPEN (disabled) -> disable_duration_s later -> CLOSED with counters
reset. Expiry is evaluated lazily whenever a provider's state is read, so no timers
are kept. A success resets the counter and closes the circuit early.

execute_with_fallback() tries the preferred provider and, if the recovery plan allows,
exactly one alternative. The local engine is the preferred alternative since it needs
no external quota.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from .config import SETTINGS
from .errors import ErrorKind, MoveProviderError, classify_error, create_recovery_plan, make_error
from .move_validator import is_legal_move
from .providers.base import MoveCallback, MoveProvider, MoveResult, ProviderKind, RequestOptions
from .registry import ProviderRegistry

log = logging.getLogger("fallback")


@dataclass
class ProviderHealth:
    provider_id: str
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    disabled: bool = False
    disabled_at: Optional[float] = None


@dataclass(frozen=True)
class Selection:
    provider: Optional[MoveProvider]
    provider_id: Optional[str]
    is_fallback: bool


NO_SELECTION = Selection(None, None, False)


class FallbackManager:
    def __init__(
        self,
        registry: ProviderRegistry,
        failure_threshold: Optional[int] = None,
        failure_window_s: Optional[float] = None,
        disable_duration_s: Optional[float] = None,
        fallback_provider_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.failure_threshold = SETTINGS.failure_threshold if failure_threshold is None else failure_threshold
        self.failure_window_s = SETTINGS.failure_window_s if failure_window_s is None else failure_window_s
        self.disable_duration_s = SETTINGS.disable_duration_s if disable_duration_s is None else disable_duration_s
        self.fallback_provider_id = fallback_provider_id or SETTINGS.fallback_provider
        self.max_retries = SETTINGS.max_retries if max_retries is None else max_retries
        self._clock = clock
        self._health: Dict[str, ProviderHealth] = {}

    # -- health bookkeeping ------------------------------------------------
    def _state(self, provider_id: str) -> ProviderHealth:
        h = self._health.get(provider_id)
        if h is None:
            h = self._health[provider_id] = ProviderHealth(provider_id)
        self._expire(h, self._clock())
        return h

    def _expire(self, h: ProviderHealth, now: float) -> None:
        if h.disabled:
            if h.disabled_at is not None and now - h.disabled_at >= self.disable_duration_s:
                h.disabled = False
                h.disabled_at = None
                h.failure_count = 0
                log.info("Provider %s re-enabled after %.0fs", h.provider_id, self.disable_duration_s)
        elif h.failure_count and h.last_failure_at is not None and now - h.last_failure_at > self.failure_window_s:
            h.failure_count = 0

    def record_failure(self, provider_id: str) -> ProviderHealth:
        h = self._state(provider_id)
        h.failure_count += 1
        h.last_failure_at = self._clock()
        if not h.disabled and h.failure_count >= self.failure_threshold:
            h.disabled = True
            h.disabled_at = h.last_failure_at
            log.warning("Provider %s disabled due to %d failures", provider_id, h.failure_count)
        return h

    def record_success(self, provider_id: str) -> None:
        h = self._state(provider_id)
        if h.disabled:
            log.info("Provider %s re-enabled after a successful request", provider_id)
        h.failure_count = 0
        h.disabled = False
        h.disabled_at = None

    def is_provider_available(self, provider_id: str) -> bool:
        return not self._state(provider_id).disabled

    # -- selection ---------------------------------------------------------
    def _designated_fallback(self) -> Optional[MoveProvider]:
        provider = self.registry.get_provider(self.fallback_provider_id)
        if provider is not None:
            return provider
        for p in self.registry.get_all_providers():
            if p.kind == ProviderKind.LOCAL_ENGINE:
                return p
        return None

    def get_best_available_provider(self, preferred_id: Optional[str], exclude: Iterable[str] = ()) -> Selection:
        """Preferred if eligible, else the designated fallback, else any other eligible provider."""
        excluded = set(exclude)
        preferred = self.registry.get_provider(preferred_id)
        if preferred is not None and preferred.id not in excluded and self.is_provider_available(preferred.id):
            return Selection(preferred, preferred.id, False)

        fallback = self._designated_fallback()
        if fallback is not None and fallback.id != preferred_id and fallback.id not in excluded and self.is_provider_available(fallback.id):
            return Selection(fallback, fallback.id, True)

        for p in self.registry.get_all_providers():
            if p.id == preferred_id or p.id in excluded:
                continue
            if self.is_provider_available(p.id):
                return Selection(p, p.id, True)
        return NO_SELECTION

    # -- execution ---------------------------------------------------------
    async def _attempt(self, selection: Selection, model_id: Optional[str], fen: str, options: Optional[RequestOptions]) -> MoveResult:
        provider = selection.provider
        assert provider is not None and selection.provider_id is not None
        mapped = provider.map_model_id(model_id) if selection.is_fallback else model_id
        opts = (options or RequestOptions()).with_model(mapped)
        result = await provider.get_best_move(fen, None, opts)
        if not is_legal_move(fen, result.uci):
            raise make_error(ErrorKind.INVALID_MOVE, provider.id, message=f"Provider returned illegal move {result.uci!r}")
        result.is_fallback = selection.is_fallback
        self.record_success(selection.provider_id)
        return result

    async def execute_with_fallback(
        self,
        preferred_id: str,
        model_id: Optional[str],
        fen: str,
        callback: Optional[MoveCallback] = None,
        options: Optional[RequestOptions] = None,
    ) -> MoveResult:
        """Get a move from the preferred provider, falling back at most once."""
        selection = self.get_best_available_provider(preferred_id)
        if selection.provider is None or selection.provider_id is None:
            raise make_error(ErrorKind.PROVIDER_UNAVAILABLE, preferred_id, message="No available providers for move generation")
        if selection.is_fallback:
            log.info("Using fallback provider %s instead of %s", selection.provider_id, preferred_id)

        try:
            result = await self._attempt(selection, model_id, fen, options)
        except Exception as exc:
            err = classify_error(exc, selection.provider_id)
            self.record_failure(selection.provider_id)
            if selection.is_fallback:
                self._raise(err, exc)
            plan = create_recovery_plan(err.history, self.max_retries)
            if not plan.should_continue:
                log.warning("Provider %s failed (%s); not falling back: %s", selection.provider_id, err.kind.value, plan.message)
                self._raise(err, exc)
            alternative = self.get_best_available_provider(selection.provider_id, exclude={selection.provider_id})
            if alternative.provider is None:
                log.warning("Provider %s failed (%s) and no fallback is available", selection.provider_id, err.kind.value)
                self._raise(err, exc)
            log.warning("Primary provider %s failed (%s), trying fallback %s", selection.provider_id, err.kind.value, alternative.provider_id)
            try:
                result = await self._attempt(alternative, model_id, fen, options)
            except Exception as fallback_exc:
                assert alternative.provider_id is not None
                self.record_failure(alternative.provider_id)
                log.error("Fallback provider %s failed too: %s", alternative.provider_id, fallback_exc)
                raise err from fallback_exc

        if callback is not None:
            callback(result)
        return result

    @staticmethod
    def _raise(err: MoveProviderError, exc: BaseException) -> None:
        if err is exc:
            raise err
        raise err from exc

    # -- operator surface --------------------------------------------------
    def get_provider_status(self) -> Dict[str, dict]:
        status: Dict[str, dict] = {}
        for pid in self.registry.provider_ids():
            h = self._state(pid)
            status[pid] = {
                "failures": h.failure_count,
                "last_failure_timestamp": h.last_failure_at or 0,
                "disabled": h.disabled,
            }
        return status

    def reset(self) -> None:
        self._health.clear()
        log.info("All provider states reset")
