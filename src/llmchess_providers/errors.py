"""
Error taxonomy, classification and recovery planning for move providers.

classify_error() maps any raised failure onto a closed set of kinds using ordered,
case-insensitive substring rules over the failure message (first match wins).
handle_error() turns a classified failure into retry/fallback advice, and
create_recovery_plan() decides what to do after a sequence of failures for one request.

Retry delays follow a single exponential policy: base delay of the last error's kind,
doubled per consecutive error, capped at max_delay_s.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Literal, Optional, Sequence

log = logging.getLogger("errors")


class ErrorKind(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    API_KEY_INVALID = "API_KEY_INVALID"
    API_KEY_MISSING = "API_KEY_MISSING"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_MOVE = "INVALID_MOVE"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNKNOWN = "UNKNOWN"


class MoveProviderError(Exception):
    """A classified provider failure. Immutable apart from the attached request history."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        provider_id: str = "",
        retryable: bool = False,
        retry_delay_s: float = 0.0,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider_id = provider_id
        self.retryable = retryable
        self.retry_delay_s = retry_delay_s
        self.original = original
        # classified errors seen for the same request, oldest first (includes self)
        self.history: list[MoveProviderError] = [self]

    def __repr__(self) -> str:
        return f"MoveProviderError(kind={self.kind.value}, provider_id={self.provider_id!r}, message={self.message!r})"


# kind -> (retryable, base delay seconds, user-facing message)
_KIND_DEFAULTS: dict[ErrorKind, tuple[bool, float, str]] = {
    ErrorKind.RATE_LIMIT: (True, 10.0, "Rate limit exceeded. Please wait before making more requests."),
    ErrorKind.API_KEY_INVALID: (False, 0.0, "Invalid API key. Please check your API key configuration."),
    ErrorKind.API_KEY_MISSING: (False, 0.0, "API key not set. Please configure your API key."),
    ErrorKind.NETWORK_ERROR: (True, 5.0, "Network error. Please check your internet connection."),
    ErrorKind.TIMEOUT: (True, 3.0, "Request timed out. The provider is taking too long to respond."),
    ErrorKind.QUOTA_EXCEEDED: (True, 60.0, "API quota exceeded. Please try again later or upgrade your plan."),
    ErrorKind.INVALID_MOVE: (True, 1.0, "Provider generated an invalid move."),
    ErrorKind.PROVIDER_UNAVAILABLE: (False, 0.0, "Provider is currently unavailable."),
    ErrorKind.UNKNOWN: (True, 5.0, "Unexpected error"),
}


def _any(text: str, needles: Iterable[str]) -> bool:
    return any(n in text for n in needles)


# Ordered: first matching rule wins.
_RULES: list[tuple[ErrorKind, Callable[[str], bool]]] = [
    (ErrorKind.RATE_LIMIT, lambda s: _any(s, ("rate limit", "429", "too many requests"))),
    (ErrorKind.API_KEY_INVALID, lambda s: ("api key" in s and _any(s, ("invalid", "unauthorized", "incorrect"))) or _any(s, ("401", "authentication"))),
    (ErrorKind.API_KEY_MISSING, lambda s: "api key not set" in s or ("api key" in s and "missing" in s)),
    (ErrorKind.NETWORK_ERROR, lambda s: _any(s, ("network", "fetch", "connection"))),
    (ErrorKind.TIMEOUT, lambda s: _any(s, ("timeout", "timed out"))),
    (ErrorKind.QUOTA_EXCEEDED, lambda s: _any(s, ("quota", "limit exceeded"))),
    (ErrorKind.INVALID_MOVE, lambda s: _any(s, ("invalid move", "illegal move"))),
    (ErrorKind.PROVIDER_UNAVAILABLE, lambda s: "provider" in s and _any(s, ("unavailable", "not found"))),
]

FALLBACK_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.API_KEY_INVALID,
    ErrorKind.API_KEY_MISSING,
    ErrorKind.QUOTA_EXCEEDED,
    ErrorKind.PROVIDER_UNAVAILABLE,
    ErrorKind.TIMEOUT,
})
# never retried against the same provider
NO_RETRY_KINDS = frozenset({
    ErrorKind.API_KEY_INVALID,
    ErrorKind.API_KEY_MISSING,
    ErrorKind.QUOTA_EXCEEDED,
    ErrorKind.PROVIDER_UNAVAILABLE,
})
# failures that should slow the provider's outbound request rate
BACKOFF_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.QUOTA_EXCEEDED})


def _message_of(error: BaseException | str | None) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        msg = str(error)
        return msg or type(error).__name__
    return str(error)


def make_error(
    kind: ErrorKind,
    provider_id: str,
    detail: str = "",
    original: Optional[BaseException] = None,
    message: Optional[str] = None,
) -> MoveProviderError:
    retryable, delay_s, default_message = _KIND_DEFAULTS[kind]
    if message is None:
        message = default_message
    if kind == ErrorKind.UNKNOWN:
        message = f"{message}: {detail}" if detail else message
    return MoveProviderError(kind, message, provider_id, retryable, delay_s, original)


def classify_error(error: BaseException | str | None, provider_id: str = "") -> MoveProviderError:
    """Map a raw failure onto the closed error taxonomy."""
    if isinstance(error, MoveProviderError):
        if not error.provider_id:
            error.provider_id = provider_id
        return error
    raw = _message_of(error)
    text = raw.lower()
    original = error if isinstance(error, BaseException) else None
    for kind, matches in _RULES:
        if matches(text):
            return make_error(kind, provider_id, raw, original)
    return make_error(ErrorKind.UNKNOWN, provider_id, raw, original)


@dataclass(frozen=True)
class RecoveryAdvice:
    should_retry: bool
    retry_delay_s: float
    should_fallback: bool
    user_message: str
    error: MoveProviderError


_LOG_LEVELS = {
    ErrorKind.API_KEY_INVALID: logging.ERROR,
    ErrorKind.API_KEY_MISSING: logging.ERROR,
    ErrorKind.QUOTA_EXCEEDED: logging.ERROR,
    ErrorKind.RATE_LIMIT: logging.WARNING,
    ErrorKind.PROVIDER_UNAVAILABLE: logging.WARNING,
    ErrorKind.INVALID_MOVE: logging.INFO,
    ErrorKind.NETWORK_ERROR: logging.INFO,
    ErrorKind.TIMEOUT: logging.INFO,
}


def _user_message(err: MoveProviderError) -> str:
    pid = err.provider_id or "provider"
    kind = err.kind
    if kind == ErrorKind.RATE_LIMIT:
        return f"Rate limit reached for {pid}. Switching to backup provider."
    if kind in (ErrorKind.API_KEY_INVALID, ErrorKind.API_KEY_MISSING):
        return f"API key issue with {pid}. Please check your configuration."
    if kind == ErrorKind.NETWORK_ERROR:
        return f"Network error with {pid}. Retrying in {err.retry_delay_s:g} seconds..."
    if kind == ErrorKind.PROVIDER_UNAVAILABLE:
        return f"{pid} is unavailable. Switching to backup provider."
    if kind == ErrorKind.QUOTA_EXCEEDED:
        return f"API quota exceeded for {pid}. Switching to backup provider."
    if kind == ErrorKind.INVALID_MOVE:
        return f"{pid} generated an invalid move. Retrying with feedback..."
    if kind == ErrorKind.TIMEOUT:
        return f"{pid} timed out. Retrying with backup provider..."
    return f"Unexpected error with {pid}: {err.message}"


def handle_error(error: BaseException | str, provider_id: str = "", context: str = "") -> RecoveryAdvice:
    """Classify a failure, log it at a severity matching its kind and return recovery advice."""
    err = classify_error(error, provider_id)
    should_retry = err.retryable and err.kind not in NO_RETRY_KINDS
    should_fallback = err.kind in FALLBACK_KINDS
    user_message = _user_message(err)
    log.log(
        _LOG_LEVELS.get(err.kind, logging.ERROR),
        "%s%s error in %s: %s (retryable=%s delay=%.1fs fallback=%s)",
        f"[{context}] " if context else "",
        err.kind.value,
        err.provider_id or "?",
        err.message,
        err.retryable,
        err.retry_delay_s,
        should_fallback,
    )
    return RecoveryAdvice(
        should_retry=should_retry,
        retry_delay_s=err.retry_delay_s,
        should_fallback=should_fallback,
        user_message=user_message,
        error=err,
    )


NextAction = Literal["retry", "fallback", "abort"]


@dataclass(frozen=True)
class RecoveryPlan:
    should_continue: bool
    next_action: NextAction
    delay_s: float
    message: str
    counts: dict = field(default_factory=dict)


def count_error_kinds(errors: Sequence[MoveProviderError]) -> dict[ErrorKind, int]:
    counts = {kind: 0 for kind in ErrorKind}
    for err in errors:
        counts[err.kind] += 1
    return counts


def create_recovery_plan(errors: Sequence[MoveProviderError], max_retries: int = 3, max_delay_s: float = 30.0) -> RecoveryPlan:
    """Decide the next step after consecutive classified failures of one request."""
    if not errors:
        return RecoveryPlan(True, "retry", 0.0, "No errors to recover from")

    counts = count_error_kinds(errors)
    if len(errors) >= max_retries:
        return RecoveryPlan(False, "abort", 0.0, f"Too many consecutive errors ({len(errors)}). Please try again later.", counts)

    if counts[ErrorKind.RATE_LIMIT] >= 2:
        return RecoveryPlan(True, "fallback", 0.0, "Multiple rate limit errors detected. Switching to backup provider.", counts)

    if counts[ErrorKind.API_KEY_INVALID] or counts[ErrorKind.API_KEY_MISSING]:
        return RecoveryPlan(True, "fallback", 0.0, "API key issues detected. Using backup provider.", counts)

    last = errors[-1]
    base = last.retry_delay_s or 1.0
    delay = min(base * (2 ** (len(errors) - 1)), max_delay_s)
    action: NextAction = "retry" if last.retryable else "fallback"
    return RecoveryPlan(True, action, delay, f"Retrying in {delay:g} seconds...", counts)
