"""
Retry Policy

Backoff timing and error classification for provider attempts.
"""

import asyncio
import random
import re
from dataclasses import dataclass

from .errors import TransportError


# Status codes and phrases that indicate a throttled or overloaded node.
# A bare number only counts when it reads as a status code ("HTTP 503", "Error code: 429").
_THROTTLE_CODES = {429, 500, 503}
_THROTTLE_PATTERN = re.compile(
    r"(?:\bhttp|\bstatus|code)\W{0,3}(?:429|500|503)\b"
    r"|\b(?:429|500|503)\s+(?:too many requests|internal server error|service unavailable)"
    r"|rate.?limit|quota|overloaded|too many requests|resource.?exhausted|service unavailable",
    re.IGNORECASE
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff between retries against the same provider.

    Attributes:
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        multiplier: Growth factor per retry
        jitter: If True, randomize each delay in [delay/2, delay]
    """
    base_delay: float = 0.25
    max_delay: float = 4.0
    multiplier: float = 2.0
    jitter: bool = False

    def delay_for(self, retry: int) -> float:
        """Delay before retry number `retry` (0-based)."""
        delay = min(self.base_delay * (self.multiplier ** retry), self.max_delay)
        if self.jitter and delay > 0:
            delay = random.uniform(delay / 2, delay)
        return max(delay, 0.0)


DEFAULT_RETRY_POLICY = RetryPolicy()


def is_transient_error(error: BaseException) -> bool:
    """Check if an error is worth retrying at all."""
    return isinstance(error, (TransportError, asyncio.TimeoutError, ConnectionError, OSError))


def is_throttling_error(error: BaseException) -> bool:
    """
    Check if an error means the provider is throttled or overloaded.

    Throttled providers are skipped immediately instead of retried.
    """
    status = getattr(error, "status_code", None)
    if status in _THROTTLE_CODES:
        return True
    return bool(_THROTTLE_PATTERN.search(str(error)))
