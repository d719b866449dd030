"""
Configuration and environment loading for the move provider layer.

- Loads settings.yml (YAML) from repo root if present; falls back to environment variables.
- Exposes SETTINGS with the knobs used by providers, the request queue and the fallback manager.
"""
from dataclasses import dataclass
import os
from typing import Any, Callable

import yaml
from dotenv import load_dotenv

load_dotenv()


def _repo_root() -> str:
    # this file: src/llmchess_providers/config.py → repo root is two levels up
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))


def _load_yaml(path: str) -> dict:
    if not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


_cfg = _load_yaml(os.environ.get("LLMCHESS_SETTINGS_PATH") or os.path.join(_repo_root(), "settings.yml"))


def _get(name: str, default: Any, cast: Callable[[Any], Any] | None = None) -> Any:
    if name in _cfg:
        val = _cfg[name]
        return cast(val) if cast else val
    env = os.environ.get(name)
    if env is not None:
        return cast(env) if cast else env
    return default


@dataclass(frozen=True)
class Settings:
    # Auth / endpoint (Vercel AI Gateway, OpenAI-compatible wire format)
    llm_api_key: str
    api_base: str

    # Request queue
    request_timeout_s: float
    max_retries: int
    max_retry_delay_s: float

    # Circuit breaker
    failure_threshold: int
    failure_window_s: float
    disable_duration_s: float
    fallback_provider: str

    # Facade
    dedupe_window_s: float

    # Local engine
    stockfish_path: str
    engine_timeout_s: float


SETTINGS = Settings(
    llm_api_key=_get("LLMCHESS_LLM_API_KEY", _get("AI_GATEWAY_API_KEY", "")),
    api_base=_get("LLMCHESS_LLM_BASE_URL", _get("AI_GATEWAY_BASE_URL", "https://ai-gateway.vercel.sh/v1")),
    request_timeout_s=float(_get("LLMCHESS_REQUEST_TIMEOUT_S", 60.0, cast=float)),
    max_retries=int(_get("LLMCHESS_MAX_RETRIES", 3, cast=int)),
    max_retry_delay_s=float(_get("LLMCHESS_MAX_RETRY_DELAY_S", 30.0, cast=float)),
    failure_threshold=int(_get("LLMCHESS_FAILURE_THRESHOLD", 3, cast=int)),
    failure_window_s=float(_get("LLMCHESS_FAILURE_WINDOW_S", 300.0, cast=float)),
    disable_duration_s=float(_get("LLMCHESS_DISABLE_DURATION_S", 600.0, cast=float)),
    fallback_provider=_get("LLMCHESS_FALLBACK_PROVIDER", "local-engine"),
    dedupe_window_s=float(_get("LLMCHESS_DEDUPE_WINDOW_S", 2.0, cast=float)),
    stockfish_path=_get("STOCKFISH_PATH", ""),
    engine_timeout_s=float(_get("LLMCHESS_ENGINE_TIMEOUT_S", 8.0, cast=float)),
)
