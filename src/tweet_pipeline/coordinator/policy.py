from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from ..errors import ConnError, EventValidationError, PublishError

_TRANSIENT_HINTS = ("timeout", "timed out", "temporar", "busy", "retry", "loading", "tryagain")


def default_retry_classifier(exc: Exception) -> bool:
    """True if a publish failure is worth another attempt."""
    if isinstance(exc, EventValidationError):
        return False
    if isinstance(exc, (PublishError, ConnError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (TypeError, ValueError)):
        # serialization problems will not fix themselves
        return False
    msg = str(exc).lower()
    return any(h in msg for h in _TRANSIENT_HINTS)


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff.

    ``next_backoff_ms(n)`` is the delay after the n-th failed attempt:
    ``initial * multiplier ** (n - 1)``, capped at ``max_backoff_ms``.
    With jitter the value is scaled into [50%, 100%] of that.
    """

    max_attempts: int = 3
    initial_backoff_ms: int = 500
    max_backoff_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter: bool = False
    classify_retryable: Callable[[Exception], bool] = field(default=default_retry_classifier)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < 0:
            raise ValueError("backoff must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    def next_backoff_ms(self, attempt: int) -> int:
        attempt = max(1, attempt)
        raw = self.initial_backoff_ms * (self.backoff_multiplier ** (attempt - 1))
        delay = min(raw, self.max_backoff_ms)
        if self.jitter:
            delay = random.uniform(delay * 0.5, delay)
        return int(delay)

    def next_backoff_sec(self, attempt: int) -> float:
        return self.next_backoff_ms(attempt) / 1000.0
