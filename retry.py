# retry.py
from dataclasses import dataclass
from enum import Enum

from errors import InvalidConfigError, PermanentProcessingError

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 300.0


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RetryAction(str, Enum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


def default_classifier(exc):
    """PermanentProcessingError is poison; anything else is worth another try."""
    if isinstance(exc, PermanentProcessingError):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    attempts_made: int
    delay: float = 0.0
    reason: str = ""


class RetryPolicy:
    """Capped exponential backoff: ``delay = min(base * 2**attempt, cap)``."""

    def __init__(self, backoff_base=DEFAULT_BACKOFF_BASE, backoff_cap=DEFAULT_BACKOFF_CAP,
                 max_attempts=DEFAULT_MAX_ATTEMPTS):
        if backoff_base < 0:
            raise InvalidConfigError(f"backoff_base must be >= 0, got {backoff_base!r}")
        if backoff_cap < backoff_base:
            raise InvalidConfigError(f"backoff_cap ({backoff_cap}) must be >= backoff_base ({backoff_base})")
        if max_attempts < 1:
            raise InvalidConfigError(f"max_attempts must be >= 1, got {max_attempts!r}")
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_attempts = max_attempts

    def delay_for(self, attempt):
        # clamp the exponent so huge attempt counts don't overflow a float
        return min(self.backoff_base * (2 ** min(attempt, 64)), self.backoff_cap)

    def decide(self, job, kind):
        """Route a failed execution of ``job`` (whose ``attempt`` has not been bumped yet)."""
        attempts_made = job.attempt + 1
        limit = job.max_attempts or self.max_attempts
        if kind == FailureKind.PERMANENT:
            return RetryDecision(RetryAction.DEAD_LETTER, attempts_made, reason="permanent failure")
        if attempts_made >= limit:
            return RetryDecision(RetryAction.DEAD_LETTER, attempts_made,
                                 reason=f"exhausted {attempts_made}/{limit} attempts")
        return RetryDecision(RetryAction.RETRY, attempts_made, delay=self.delay_for(job.attempt),
                             reason=f"attempt {attempts_made}/{limit}")
