"""
Per-provider request queue with per-model admission control.

- One drain task per queue dispatches requests strictly one at a time, in submission
  order where possible (near-FIFO: a request held back for one model never blocks
  requests for another model).
- Admission per model: request window and burst window expire lazily when read; the
  minimum gap since the model's last dispatch is waited out cooperatively; an exhausted
  burst/window budget defers the request (counts as a retry) until the budget resets.
- Failures are classified; rate-limit/quota failures grow a provider-wide backoff
  (factor x previous, capped) that resets on the next success. Locally recoverable
  failures are pushed back to the front of the queue and picked up by the next loop
  iteration, never retried inline.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import SETTINGS
from .errors import BACKOFF_KINDS, ErrorKind, MoveProviderError, create_recovery_plan, handle_error, make_error


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests_per_window: int = 10
    min_interval_s: float = 6.0
    burst_limit: int = 3
    burst_window_s: float = 20.0
    window_s: float = 60.0


# Unknown models get the most restrictive free-tier style budget.
DEFAULT_RATE_LIMIT = RateLimitConfig()


@dataclass(frozen=True)
class BackoffPolicy:
    base_s: float = 6.0
    factor: float = 1.5
    max_s: float = 60.0


@dataclass
class ModelWindow:
    window_start: Optional[float] = None
    request_count: int = 0
    burst_start: Optional[float] = None
    burst_count: int = 0
    last_request_at: Optional[float] = None

    def refresh(self, cfg: RateLimitConfig, now: float) -> None:
        if self.window_start is None or now - self.window_start >= cfg.window_s:
            self.window_start = now
            self.request_count = 0
        if self.burst_start is None or now - self.burst_start >= cfg.burst_window_s:
            self.burst_start = now
            self.burst_count = 0

    def budget_reset_at(self, cfg: RateLimitConfig) -> Optional[float]:
        """When the exhausted budget frees up again, or None if a request may go now."""
        if self.burst_count >= cfg.burst_limit:
            return (self.burst_start or 0.0) + cfg.burst_window_s
        if self.request_count >= cfg.max_requests_per_window:
            return (self.window_start or 0.0) + cfg.window_s
        return None

    def record_dispatch(self, now: float) -> None:
        self.request_count += 1
        self.burst_count += 1
        self.last_request_at = now


@dataclass
class QueuedRequest:
    id: str
    fen: str
    model_id: str
    options: Any
    future: asyncio.Future
    submitted_at: float
    callback: Optional[Callable[..., Any]] = None
    retry_count: int = 0
    not_before: float = 0.0
    errors: List[MoveProviderError] = field(default_factory=list)
    invalid_feedback: Optional[str] = None


Handler = Callable[[QueuedRequest], Awaitable[Any]]


class RequestQueue:
    def __init__(
        self,
        provider_id: str,
        handler: Handler,
        rate_limits: Optional[Dict[str, RateLimitConfig]] = None,
        default_limit: RateLimitConfig = DEFAULT_RATE_LIMIT,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: Optional[int] = None,
        request_timeout_s: Optional[float] = None,
        max_retry_delay_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider_id = provider_id
        self.log = logging.getLogger(f"request_queue.{provider_id}")
        self._handler = handler
        self.rate_limits: Dict[str, RateLimitConfig] = dict(rate_limits or {})
        self.default_limit = default_limit
        self.backoff = backoff or BackoffPolicy()
        self.max_retries = SETTINGS.max_retries if max_retries is None else max_retries
        self.request_timeout_s = SETTINGS.request_timeout_s if request_timeout_s is None else request_timeout_s
        self.max_retry_delay_s = SETTINGS.max_retry_delay_s if max_retry_delay_s is None else max_retry_delay_s
        self._clock = clock

        self._pending: List[QueuedRequest] = []
        self._windows: Dict[str, ModelWindow] = {}
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._active: Optional[QueuedRequest] = None
        self._seq = itertools.count(1)

        self.current_backoff_s = 0.0
        self.consecutive_failures = 0

    # -- configuration -----------------------------------------------------
    def config_for(self, model_id: str) -> RateLimitConfig:
        return self.rate_limits.get(model_id, self.default_limit)

    def _window(self, model_id: str) -> ModelWindow:
        win = self._windows.get(model_id)
        if win is None:
            win = self._windows[model_id] = ModelWindow()
        return win

    def _required_gap(self, cfg: RateLimitConfig) -> float:
        if self.consecutive_failures:
            return max(cfg.min_interval_s, self.current_backoff_s)
        return cfg.min_interval_s

    # -- submission --------------------------------------------------------
    def submit(self, fen: str, model_id: str, options: Any = None, callback: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        """Enqueue a request and return the future its result (or classified error) lands on."""
        loop = asyncio.get_running_loop()
        req = QueuedRequest(
            id=f"{model_id}-{next(self._seq)}-{uuid.uuid4().hex[:7]}",
            fen=fen,
            model_id=model_id,
            options=options,
            callback=callback,
            future=loop.create_future(),
            submitted_at=self._clock(),
        )
        self._pending.append(req)
        self.log.debug("Queued request %s (%d waiting)", req.id, len(self._pending))
        self._ensure_running(loop)
        return req.future

    def _ensure_running(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._task is None or self._task.done():
            self._wakeup = asyncio.Event()
            self._task = loop.create_task(self._drain())
        elif self._wakeup is not None:
            self._wakeup.set()

    # -- drain loop --------------------------------------------------------
    async def _drain(self) -> None:
        self.log.debug("Queue processor started with %d requests", len(self._pending))
        while self._pending:
            now = self._clock()
            req, wait_s = self._select(now)
            if req is None:
                if wait_s is None:
                    continue
                await self._idle(wait_s)
                continue
            self._pending.remove(req)
            await self._dispatch(req)
        self.log.debug("Queue processor finished, queue is empty")

    def _select(self, now: float) -> tuple[Optional[QueuedRequest], Optional[float]]:
        """Return the first admissible request, or (None, seconds until something may become admissible)."""
        earliest: Optional[float] = None

        def _later(ts: float) -> None:
            nonlocal earliest
            earliest = ts if earliest is None else min(earliest, ts)

        for req in list(self._pending):
            if req.future.done():
                # caller went away (cancelled); nothing to deliver
                self._pending.remove(req)
                continue
            if req.not_before > now:
                _later(req.not_before)
                continue
            cfg = self.config_for(req.model_id)
            win = self._window(req.model_id)
            win.refresh(cfg, now)
            if win.last_request_at is not None:
                ready_at = win.last_request_at + self._required_gap(cfg)
                if ready_at > now:
                    _later(ready_at)
                    continue
            reset_at = win.budget_reset_at(cfg)
            if reset_at is not None:
                req.retry_count += 1
                if req.retry_count > self.max_retries:
                    self._pending.remove(req)
                    self.log.error("Request %s failed after %d admission retries", req.id, self.max_retries)
                    err = make_error(ErrorKind.RATE_LIMIT, self.provider_id, message="Rate limit exceeded after maximum retries")
                    self._reject(req, err)
                    continue
                req.not_before = reset_at
                self.log.warning(
                    "Model %s budget exhausted (burst %d/%d, window %d/%d); deferring %s by %.1fs (%d/%d)",
                    req.model_id, win.burst_count, cfg.burst_limit, win.request_count, cfg.max_requests_per_window,
                    req.id, reset_at - now, req.retry_count, self.max_retries,
                )
                _later(reset_at)
                continue
            return req, None
        if earliest is None:
            return None, None
        return None, max(0.0, earliest - now)

    async def _idle(self, wait_s: Optional[float]) -> None:
        assert self._wakeup is not None
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=wait_s)
        except asyncio.TimeoutError:
            pass

    async def _dispatch(self, req: QueuedRequest) -> None:
        self._window(req.model_id).record_dispatch(self._clock())
        self._active = req
        try:
            result = await asyncio.wait_for(self._handler(req), timeout=self.request_timeout_s)
        except asyncio.CancelledError:
            self._reject(req, make_error(ErrorKind.UNKNOWN, self.provider_id, "Request queue cleared"))
            raise
        except asyncio.TimeoutError:
            msg = f"Request {req.id} timed out after {self.request_timeout_s:g}s"
            self._on_failure(req, make_error(ErrorKind.TIMEOUT, self.provider_id, message=msg))
        except Exception as exc:
            self._on_failure(req, exc)
        else:
            self.consecutive_failures = 0
            self.current_backoff_s = 0.0
            if not req.future.done():
                req.future.set_result(result)
            self.log.debug("Request %s completed", req.id)
        finally:
            self._active = None

    def _on_failure(self, req: QueuedRequest, exc: BaseException) -> None:
        advice = handle_error(exc, self.provider_id, context=f"request {req.id}")
        err = advice.error
        if err.kind in BACKOFF_KINDS:
            self.consecutive_failures += 1
            self.current_backoff_s = min(max(self.backoff.base_s, self.current_backoff_s * self.backoff.factor), self.backoff.max_s)
            self.log.warning("Backing off %s to %.1fs after %d consecutive failures", self.provider_id, self.current_backoff_s, self.consecutive_failures)

        req.errors.append(err)
        plan = create_recovery_plan(req.errors, self.max_retries, self.max_retry_delay_s)
        if advice.should_retry and not advice.should_fallback and plan.next_action == "retry":
            req.retry_count += 1
            req.not_before = self._clock() + plan.delay_s
            self._pending.insert(0, req)
            self.log.info("Retrying %s after %s in %.1fs (%d/%d)", req.id, err.kind.value, plan.delay_s, len(req.errors), self.max_retries)
            return
        err.history = list(req.errors)
        self.log.warning("Request %s rejected: %s (%s)", req.id, err.kind.value, plan.message)
        self._reject(req, err)

    def _reject(self, req: QueuedRequest, err: MoveProviderError) -> None:
        if not req.future.done():
            req.future.set_exception(err)

    # -- control -----------------------------------------------------------
    def clear(self) -> int:
        """Reject every waiting request with a 'cleared' error; returns how many were dropped."""
        dropped = list(self._pending)
        self._pending.clear()
        for req in dropped:
            self._reject(req, make_error(ErrorKind.UNKNOWN, self.provider_id, "Request queue cleared"))
        if dropped:
            self.log.warning("Cleared %d queued requests", len(dropped))
        if self._wakeup is not None:
            self._wakeup.set()
        return len(dropped)

    async def close(self) -> None:
        task = self._task
        self.clear()
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None

    def status(self) -> Dict[str, Any]:
        return {
            "queue_length": len(self._pending),
            "is_processing": self._task is not None and not self._task.done(),
            "active_request": self._active.id if self._active else None,
            "current_backoff_s": self.current_backoff_s,
            "consecutive_failures": self.consecutive_failures,
            "models": {
                model_id: {
                    "request_count": win.request_count,
                    "burst_count": win.burst_count,
                    "last_request_at": win.last_request_at,
                }
                for model_id, win in self._windows.items()
            },
        }
