"""
Remote LLM provider over an OpenAI-compatible chat endpoint (Vercel AI Gateway by default).

Requests are never sent directly: get_best_move() enqueues into the provider's
RequestQueue, whose single drain loop admits them per model and calls _execute().
Replies are free text and go through the move validator; a reply without a legal
move is retried with feedback, and on the last permitted attempt replaced by a
random legal move so the caller still gets one.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..config import SETTINGS
from ..errors import ErrorKind, make_error
from ..move_validator import find_best_valid_move, get_random_legal_move, san_for
from ..prompting import PromptConfig, build_move_messages
from ..rate_limit import DEFAULT_RATE_LIMIT, QueuedRequest, RateLimitConfig, RequestQueue
from .base import ModelInfo, MoveCallback, MoveProvider, MoveResult, ProviderKind, RequestOptions

DEFAULT_MODELS: List[ModelInfo] = [
    ModelInfo("openai/gpt-4o-mini", "GPT-4o mini", "Fast, inexpensive model", "Fast"),
    ModelInfo("openai/gpt-4.1", "GPT-4.1", "Strong general model", "Advanced"),
    ModelInfo("google/gemini-2.5-flash", "Gemini 2.5 Flash", "Low-latency model with a tight free-tier quota", "Very Advanced"),
    ModelInfo("anthropic/claude-sonnet-4", "Claude Sonnet 4", "Careful reasoning model", "Advanced"),
]

MODEL_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "openai/gpt-4o-mini": RateLimitConfig(max_requests_per_window=60, min_interval_s=1.0, burst_limit=10, burst_window_s=10.0),
    "openai/gpt-4.1": RateLimitConfig(max_requests_per_window=30, min_interval_s=2.0, burst_limit=5, burst_window_s=10.0),
    "google/gemini-2.5-flash": RateLimitConfig(max_requests_per_window=10, min_interval_s=6.0, burst_limit=3, burst_window_s=20.0),
    "anthropic/claude-sonnet-4": RateLimitConfig(max_requests_per_window=50, min_interval_s=1.2, burst_limit=5, burst_window_s=10.0),
}

DEFAULT_TEMPERATURE = 0.2


def _extract_text(rsp: Any) -> str:
    """Pull the assistant text out of a chat.completions response (string or content parts)."""
    choices = getattr(rsp, "choices", None)
    if not choices:
        return ""
    msg = choices[0].message
    content = getattr(msg, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for c in content:
            if isinstance(c, dict):
                if c.get("type") == "text" and isinstance(c.get("text"), str):
                    parts.append(c["text"])
                continue
            t = getattr(c, "text", None)
            if isinstance(t, str):
                parts.append(t)
        return "\n".join(parts)
    return ""


class RemoteLLMProvider(MoveProvider):
    kind = ProviderKind.REMOTE_LLM
    supports_credentials = True

    def __init__(
        self,
        provider_id: str = "llm",
        name: str = "LLM (AI Gateway)",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        models: Optional[List[ModelInfo]] = None,
        rate_limits: Optional[Dict[str, RateLimitConfig]] = None,
        default_limit: RateLimitConfig = DEFAULT_RATE_LIMIT,
        client: Any = None,
        prompt_cfg: Optional[PromptConfig] = None,
        max_retries: Optional[int] = None,
        request_timeout_s: Optional[float] = None,
        max_retry_delay_s: Optional[float] = None,
        clock=time.monotonic,
    ):
        super().__init__(provider_id, name, list(models if models is not None else DEFAULT_MODELS))
        self._base_url = base_url or SETTINGS.api_base
        self._api_key = SETTINGS.llm_api_key if api_key is None else api_key
        self._client = client
        self._owns_client = False
        self._retired_clients: List[AsyncOpenAI] = []
        if self._client is None and self._api_key:
            self._client = self._build_client(self._api_key)
        self.prompt_cfg = prompt_cfg or PromptConfig()
        self.queue = RequestQueue(
            self.id,
            self._execute,
            rate_limits=MODEL_RATE_LIMITS if rate_limits is None else rate_limits,
            default_limit=default_limit,
            max_retries=max_retries,
            request_timeout_s=request_timeout_s,
            max_retry_delay_s=max_retry_delay_s,
            clock=clock,
        )

    def _build_client(self, api_key: str) -> AsyncOpenAI:
        self._owns_client = True
        return AsyncOpenAI(api_key=api_key, base_url=self._base_url or None)

    # -- credentials -------------------------------------------------------
    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key or ""
        # in-flight requests may still hold the old client; it is closed in cleanup()
        if self._owns_client and self._client is not None:
            self._retired_clients.append(self._client)
        if self._api_key:
            self._client = self._build_client(self._api_key)
            self.log.info("API key set for %s", self.id)
        else:
            self._client = None
            self._owns_client = False
            self.log.info("API key cleared for %s", self.id)

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    async def is_ready(self) -> bool:
        if not self._api_key or self._client is None:
            self.log.debug("%s not ready: API key not set", self.id)
            return False
        return True

    # -- moves -------------------------------------------------------------
    async def get_best_move(self, fen: str, callback: Optional[MoveCallback] = None, options: Optional[RequestOptions] = None) -> MoveResult:
        if not self._api_key or self._client is None:
            raise make_error(ErrorKind.API_KEY_MISSING, self.id, message=f"{self.name} API key not set")
        opts = options or RequestOptions()
        model_id = opts.model_id or self.default_model_id()
        if model_id is None:
            raise make_error(ErrorKind.PROVIDER_UNAVAILABLE, self.id, message=f"Provider {self.id} unavailable: no enabled models")
        self.log.info("Queuing request for %s... using model %s", fen[:20], model_id)
        result = await self.queue.submit(fen, model_id, opts)
        return self._deliver(result, callback)

    async def _execute(self, req: QueuedRequest) -> MoveResult:
        if self._client is None:
            raise make_error(ErrorKind.API_KEY_MISSING, self.id, message=f"{self.name} API key not set")
        opts: RequestOptions = req.options or RequestOptions()
        t0 = time.time()
        messages = build_move_messages(req.fen, opts, self.prompt_cfg, req.invalid_feedback)
        rsp = await self._client.chat.completions.create(
            model=req.model_id,
            messages=messages,
            temperature=DEFAULT_TEMPERATURE if opts.temperature is None else opts.temperature,
        )
        text = _extract_text(rsp).strip()
        self.log.debug("Reply from %s for %s: %r", req.model_id, req.id, text[:200])

        move = find_best_valid_move(req.fen, text)
        source = "llm"
        if move is None:
            last_attempt = len(req.errors) + 1 >= self.queue.max_retries
            if not last_attempt:
                req.invalid_feedback = text or "(empty reply)"
                raise make_error(ErrorKind.INVALID_MOVE, self.id, message=f"Invalid move in reply from {req.model_id}")
            move = get_random_legal_move(req.fen)
            if move is None:
                raise make_error(ErrorKind.INVALID_MOVE, self.id, message="Invalid move in reply and no legal moves available")
            self.log.warning("Using random fallback move %s for %s after invalid reply %r", move, req.id, text[:80])
            source = "random"

        return MoveResult(
            uci=move,
            san=san_for(req.fen, move),
            provider_id=self.id,
            model_id=req.model_id,
            latency_ms=int((time.time() - t0) * 1000),
            source=source,
            raw=text,
        )

    # -- monitoring / lifecycle ---------------------------------------------
    def get_queue_status(self) -> Dict[str, Any]:
        return self.queue.status()

    def clear_queue(self) -> int:
        return self.queue.clear()

    async def cleanup(self) -> None:
        await self.queue.close()
        retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            await client.close()
        if self._owns_client and self._client is not None:
            await self._client.close()
        self.log.debug("Cleaned up %s", self.id)
