"""
FeedRelay Backoff Policies
==========================

Delay calculations shared by feed failure backoff, the pause between
fallback models and publication retries.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional


class RetryStrategy(Enum):
    """Different retry strategy types."""
    FIXED_DELAY = "fixed_delay"
    EXPONENTIAL_BACKOFF = "exponential"
    LINEAR_BACKOFF = "linear"
    JITTERED_EXPONENTIAL = "jittered"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    base_delay: float = 1.0                # seconds
    max_delay: float = 60.0                # seconds
    exponential_base: float = 2.0


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number `attempt` (1-based), capped at max_delay."""
    if attempt < 1:
        return 0.0

    if config.strategy == RetryStrategy.FIXED_DELAY:
        delay = config.base_delay
    elif config.strategy == RetryStrategy.LINEAR_BACKOFF:
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
        if config.strategy == RetryStrategy.JITTERED_EXPONENTIAL:
            delay *= random.uniform(0.5, 1.0)

    return max(0.0, min(delay, config.max_delay))


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait according to a Retry-After header (delta or HTTP date)."""
    if not value:
        return None

    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    return max(0.0, (when - (now or datetime.now(timezone.utc))).total_seconds())
