"""
Backoff helpers shared by waits, rate-limit retries and spawn retries.

Every schedule has a hard ceiling; callers bound the attempt count.
"""

from typing import Optional

from autopilot.core.exceptions import AgentRuntimeError

_TRANSIENT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "overloaded",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    "503",
    "502",
    "429",
)


def backoff_delay(
    attempt: int,
    base: float,
    ceiling: float,
    factor: float = 2.0,
) -> float:
    """Delay before retry ``attempt`` (0-based): ``min(base * factor**attempt, ceiling)``."""
    if attempt < 0:
        attempt = 0
    return min(base * (factor ** attempt), ceiling)


def is_transient(error: BaseException) -> bool:
    """True for errors worth retrying: flagged recoverable, or matching a known transient message."""
    if isinstance(error, AgentRuntimeError):
        return error.recoverable
    low = str(error).lower()
    return any(pattern in low for pattern in _TRANSIENT_PATTERNS)


def retry_after_or_backoff(
    retry_after: Optional[float],
    attempt: int,
    base: float,
    ceiling: float,
) -> float:
    """Prefer a server-provided retry-after, still clamped to the ceiling."""
    if retry_after is not None and retry_after > 0:
        return min(retry_after, ceiling)
    return backoff_delay(attempt, base, ceiling)
