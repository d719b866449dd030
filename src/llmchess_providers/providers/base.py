"""
Provider abstractions shared by every move source.

A provider owns an ordered list of models and answers get_best_move() for a FEN.
Contract: get_best_move() either delivers exactly one legal move (callback + return
value) or raises; it never silently drops a request.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class ProviderKind(str, Enum):
    REMOTE_LLM = "remote_llm"
    LOCAL_ENGINE = "local_engine"


@dataclass
class ModelInfo:
    id: str
    name: str
    description: Optional[str] = None
    strength: Optional[str] = None
    custom: bool = False
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RequestOptions:
    """Per-request knobs supplied by the caller's settings."""

    model_id: Optional[str] = None
    temperature: Optional[float] = None
    time_limit_s: Optional[float] = None
    depth: Optional[int] = None
    # time-control / game-phase context used for prompting
    time_control: Optional[str] = None  # "blitz" | "rapid" | "classical"
    time_remaining_s: Optional[float] = None
    move_history: List[str] = field(default_factory=list)  # SAN
    game_phase: Optional[str] = None  # "opening" | "middlegame" | "endgame"
    is_important_position: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def with_model(self, model_id: Optional[str]) -> "RequestOptions":
        return replace(self, model_id=model_id)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RequestOptions":
        data = dict(data or {})
        known = {k: data.pop(k) for k in list(data) if k in cls.__dataclass_fields__ and k != "extra"}
        extra = dict(data.pop("extra", None) or {})
        extra.update(data)
        return cls(extra=extra, **known)


@dataclass
class MoveResult:
    uci: str
    san: Optional[str]
    provider_id: str
    model_id: Optional[str]
    latency_ms: int
    source: str  # "llm" | "engine" | "random"
    score: Optional[str] = None
    is_fallback: bool = False
    raw: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


MoveCallback = Callable[[MoveResult], Any]


class MoveProvider:
    """Capability set of a move source: identity, models, move requests, readiness, cleanup."""

    kind: ProviderKind = ProviderKind.REMOTE_LLM
    supports_credentials: bool = False

    def __init__(self, provider_id: str, name: str, models: List[ModelInfo]):
        self.id = provider_id
        self.name = name
        self.log = logging.getLogger(f"provider.{provider_id}")
        self._models: List[ModelInfo] = []
        for m in models:
            if self.get_model(m.id) is None:
                self._models.append(m)

    # -- models ------------------------------------------------------------
    @property
    def models(self) -> List[ModelInfo]:
        return list(self._models)

    def get_model(self, model_id: str) -> Optional[ModelInfo]:
        for m in self._models:
            if m.id == model_id:
                return m
        return None

    def get_enabled_models(self) -> List[ModelInfo]:
        return [m for m in self._models if m.enabled]

    def default_model_id(self) -> Optional[str]:
        enabled = self.get_enabled_models()
        return enabled[0].id if enabled else None

    def add_model(self, model: ModelInfo) -> ModelInfo:
        """Add a custom model, or update the existing entry with the same id (marked custom)."""
        existing = self.get_model(model.id)
        if existing is not None:
            idx = self._models.index(existing)
            updated = replace(model, custom=True)
            self._models[idx] = updated
            self.log.info("Replaced model %s in provider %s", model.id, self.id)
            return updated
        added = replace(model, custom=True)
        self._models.append(added)
        self.log.info("Added custom model %s to provider %s", model.id, self.id)
        return added

    def update_model(self, model_id: str, **updates: Any) -> bool:
        model = self.get_model(model_id)
        if model is None:
            self.log.warning("Attempted to update non-existent model %s in provider %s", model_id, self.id)
            return False
        updates.pop("id", None)  # ids are immutable
        unknown = [k for k in updates if k not in ModelInfo.__dataclass_fields__]
        if unknown:
            raise ValueError(f"Unknown model fields: {', '.join(sorted(unknown))}")
        self._models[self._models.index(model)] = replace(model, **updates)
        self.log.debug("Updated model %s in provider %s: %s", model_id, self.id, updates)
        return True

    def delete_model(self, model_id: str) -> bool:
        model = self.get_model(model_id)
        if model is None:
            self.log.warning("Attempted to delete non-existent model %s from provider %s", model_id, self.id)
            return False
        if not model.custom:
            self.log.warning("Attempted to delete non-custom model %s from provider %s", model_id, self.id)
            return False
        self._models.remove(model)
        self.log.info("Deleted custom model %s from provider %s", model_id, self.id)
        return True

    # -- moves -------------------------------------------------------------
    async def get_best_move(self, fen: str, callback: Optional[MoveCallback] = None, options: Optional[RequestOptions] = None) -> MoveResult:
        raise NotImplementedError

    async def is_ready(self) -> bool:
        raise NotImplementedError

    async def cleanup(self) -> None:
        """Release timers, queues and processes held by the provider."""
        return

    def map_model_id(self, foreign_model_id: Optional[str]) -> Optional[str]:
        """Translate another provider's model id into one of ours (used when acting as a fallback)."""
        if foreign_model_id and self.get_model(foreign_model_id) is not None:
            return foreign_model_id
        return self.default_model_id()

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "supports_credentials": self.supports_credentials,
            "models": [m.to_dict() for m in self._models],
        }

    @staticmethod
    def _deliver(result: MoveResult, callback: Optional[MoveCallback]) -> MoveResult:
        if callback is not None:
            callback(result)
        return result
