"""
Quota Oracle

Tracks rate-limit telemetry and daily usage per provider id, and answers
whether a provider is safe to call. An ApexLoop uses it as its ladder gate.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Mapping, Optional

logger = logging.getLogger("apexcore.quota")

DEFAULT_DAILY_THRESHOLD = 1400

# Substring of the provider id -> requests per day before the provider is skipped.
# First match wins.
FAMILY_THRESHOLDS = (
    ("gemma-3", 14000),
    ("robotics-er", 18),
    ("tts", 8),
    ("pro", 45),
)

GROQ_DAILY_THRESHOLD = 1000
GROQ_INSTANT_DAILY_THRESHOLD = 14400

# Remaining requests below which a provider is held back until its window resets
DEFAULT_REMAINING_BUFFER = 5
GROQ_REMAINING_BUFFER = 10

_HEADER_PREFIX = "llm_provider-"


@dataclass(frozen=True)
class QuotaState:
    """Latest rate-limit telemetry for one provider."""
    remaining: int
    limit: int
    reset_at: float


def _header_int(value, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _header_seconds(value) -> float:
    """Parse a reset header: plain seconds, or a duration such as "1m30s" / "250ms"."""
    if value is None:
        return 0.0
    text = str(value).strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    number = ""
    i = 0
    while i < len(text):
        ch = text[i]
        if ch.isdigit() or ch == ".":
            number += ch
            i += 1
            continue
        if not number:
            return 0.0
        if text.startswith("ms", i):
            total += float(number) / 1000
            i += 2
        elif ch == "h":
            total += float(number) * 3600
            i += 1
        elif ch == "m":
            total += float(number) * 60
            i += 1
        elif ch == "s":
            total += float(number)
            i += 1
        else:
            return 0.0
        number = ""
    return total


class QuotaOracle:
    """
    Thread-safe quota bookkeeping.

    Example:
        oracle = QuotaOracle()
        loop = ApexLoop(adapter, quota=oracle)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._telemetry: Dict[str, QuotaState] = {}
        self._usage: Dict[str, int] = {}
        self._usage_day: Optional[date] = None

    def record_telemetry(
        self,
        model_id: str,
        remaining: int,
        limit: int = -1,
        reset_seconds: float = 0.0
    ) -> None:
        """Store the provider's reported remaining requests. A remaining of -1 means unknown."""
        if remaining == -1:
            return
        with self._lock:
            self._telemetry[model_id] = QuotaState(
                remaining=remaining,
                limit=limit,
                reset_at=self._clock() + reset_seconds
            )

    def record_headers(self, model_id: str, headers: Mapping[str, str]) -> None:
        """Read x-ratelimit-* response headers (with or without the -requests suffix)."""
        normalized = {}
        for key, value in headers.items():
            key = str(key).lower()
            if key.startswith(_HEADER_PREFIX):
                key = key[len(_HEADER_PREFIX):]
            normalized[key] = value

        def pick(name):
            return normalized.get(f"x-ratelimit-{name}-requests", normalized.get(f"x-ratelimit-{name}"))

        self.record_telemetry(
            model_id,
            remaining=_header_int(pick("remaining"), -1),
            limit=_header_int(pick("limit"), -1),
            reset_seconds=_header_seconds(pick("reset"))
        )

    def record_success(self, model_id: str) -> None:
        """Count one successful request against today's usage."""
        with self._lock:
            self._roll_day()
            self._usage[model_id] = self._usage.get(model_id, 0) + 1

    def usage(self, model_id: str) -> int:
        with self._lock:
            self._roll_day()
            return self._usage.get(model_id, 0)

    def telemetry(self, model_id: str) -> Optional[QuotaState]:
        with self._lock:
            return self._telemetry.get(model_id)

    @staticmethod
    def safe_threshold(model_id: str) -> int:
        """Daily request count at which a provider stops being offered."""
        lowered = model_id.lower()
        if "groq" in lowered:
            return GROQ_INSTANT_DAILY_THRESHOLD if "instant" in lowered else GROQ_DAILY_THRESHOLD
        for family, threshold in FAMILY_THRESHOLDS:
            if family in lowered:
                return threshold
        return DEFAULT_DAILY_THRESHOLD

    def is_safe(self, model_id: str) -> bool:
        """False while the provider is near its rate limit or past its daily threshold."""
        with self._lock:
            self._roll_day()
            state = self._telemetry.get(model_id)
            used = self._usage.get(model_id, 0)

        if state is not None:
            buffer = GROQ_REMAINING_BUFFER if "groq" in model_id.lower() else DEFAULT_REMAINING_BUFFER
            if state.remaining < buffer and self._clock() < state.reset_at:
                logger.debug(f"{model_id} held back: {state.remaining} request(s) left until reset")
                return False

        if used >= self.safe_threshold(model_id):
            logger.debug(f"{model_id} held back: daily usage {used} reached threshold")
            return False
        return True

    __call__ = is_safe

    def reset(self) -> None:
        with self._lock:
            self._telemetry.clear()
            self._usage.clear()
            self._usage_day = None

    def _roll_day(self) -> None:
        # Caller holds the lock
        today = datetime.fromtimestamp(self._clock()).date()
        if self._usage_day != today:
            if self._usage_day is not None:
                logger.info("Daily quota counters reset")
            self._usage.clear()
            self._usage_day = today


_default_oracle: Optional[QuotaOracle] = None
_default_lock = threading.Lock()


def get_quota_oracle() -> QuotaOracle:
    """Get the process-wide QuotaOracle, creating it on first use."""
    global _default_oracle
    with _default_lock:
        if _default_oracle is None:
            _default_oracle = QuotaOracle()
        return _default_oracle
