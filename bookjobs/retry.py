import asyncio
import random
from typing import Optional, Tuple

from .errors import ProviderError
from .schemas import JobRecord

RETRYABLE_CATEGORIES = frozenset({"rate_limit", "timeout", "network", "unavailable", "server_error"})

_MESSAGE_CATEGORIES = [
    ("rate_limit", ("rate limit", "rate-limit", "too many requests", "429")),
    ("timeout", ("timeout", "timed out")),
    ("network", ("network", "connection reset", "connection refused", "econnreset")),
    ("unavailable", ("temporary", "temporarily", "unavailable", "503")),
    ("server_error", ("internal server error", "bad gateway", "502", "500")),
    ("content_policy", ("content policy", "safety", "policy violation")),
    ("auth", ("unauthorized", "forbidden", "api key", "authentication")),
    ("invalid_input", ("invalid", "bad request", "unsupported")),
]


def _status_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(error: BaseException) -> str:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(error, ConnectionError):
        return "network"

    status = _status_of(error)
    if status is not None:
        if status == 429:
            return "rate_limit"
        if status in (408, 504):
            return "timeout"
        if status in (502, 503):
            return "unavailable"
        if status >= 500:
            return "server_error"
        if status in (401, 403):
            return "auth"
        if 400 <= status < 500:
            return "invalid_input"

    error_str = str(error).lower()
    for category, needles in _MESSAGE_CATEGORIES:
        if any(needle in error_str for needle in needles):
            return category
    return "unknown"


def is_retryable(error: BaseException) -> bool:
    # explicit provider classification wins over message sniffing
    if isinstance(error, ProviderError):
        return error.retryable
    return classify_error(error) in RETRYABLE_CATEGORIES


def error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    status = _status_of(error)
    if status is not None:
        return f"HTTP_{status}"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"
    return "UNKNOWN_ERROR"


class RetryPolicy:
    """Decides whether a failed attempt goes back to the queue, and after how long.

    The default is a fixed delay between attempts. ``backoff="exponential"``
    multiplies the delay by ``multiplier`` per completed attempt, capped at
    ``max_delay``.
    """

    def __init__(
        self,
        delay: float = 5.0,
        backoff: str = "fixed",
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: Tuple[float, float] = (0.0, 0.0),
        enabled: bool = True,
    ):
        if backoff not in ("fixed", "exponential"):
            raise ValueError(f"unknown backoff strategy: {backoff}")
        self.delay = delay
        self.backoff = backoff
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.enabled = enabled

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable(error)

    def should_retry(self, request: JobRecord, error: BaseException) -> bool:
        if not self.enabled:
            return False
        return self.is_retryable(error) and request.attempts < request.max_attempts

    def next_delay(self, attempts: int) -> float:
        delay = self.delay
        if self.backoff == "exponential":
            delay = min(self.delay * (self.multiplier ** max(attempts - 1, 0)), self.max_delay)
        low, high = self.jitter
        if high > 0:
            delay += random.uniform(low, high)
        return delay
