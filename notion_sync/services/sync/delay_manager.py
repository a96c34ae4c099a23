"""
Backoff Policy - Retry delay computation

Computes the wait before a retry: a server-directed Retry-After when the
remote API supplies one, otherwise exponential backoff capped at max_backoff.
"""
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Optional

from ...utils.logger import get_logger

logger = get_logger('delay_manager')


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header value into seconds.

    Accepts delta-seconds (``"2"``, ``"1.5"``) or an HTTP-date.

    Args:
        value: Raw header value
        now: Reference time for HTTP-date values (defaults to current UTC time)

    Returns:
        Non-negative delay in seconds, or None if absent/unparseable
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"[Backoff] Ignoring unparseable Retry-After: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class BackoffPolicy:
    """Exponential backoff with an upper bound.

    ``delay_for(n)`` returns ``base_delay * multiplier ** (n - 1)`` capped at
    ``max_backoff``, so delays never decrease as ``n`` grows. An optional
    ±jitter ratio spreads retries from parallel workers.

    Example:
        >>> policy = BackoffPolicy(base_delay=1.0, multiplier=2.0, max_backoff=30.0)
        >>> [policy.delay_for(n) for n in (1, 2, 3)]
        [1.0, 2.0, 4.0]
        >>> policy.delay_for(1, retry_after=5)  # server-directed wait wins
        5.0
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_backoff: float = 30.0,
        jitter: float = 0.0,
        rng: Callable[[float, float], float] = random.uniform
    ):
        """Initialize the policy.

        Args:
            base_delay: Delay before the first retry, in seconds
            multiplier: Growth factor per retry
            max_backoff: Upper bound of the computed delay
            jitter: Jitter ratio in [0, 1); 0.2 means ±20%
            rng: Random source, injectable for tests
        """
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_backoff = max_backoff
        self.jitter = jitter
        self._rng = rng

    def delay_for(self, retry_count: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``retry_count`` (1-based).

        Args:
            retry_count: Retry about to be made (1 for the first retry)
            retry_after: Server-directed wait, honored as-is when present

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            return max(0.0, float(retry_after))

        exponent = max(0, retry_count - 1)
        delay = min(self.base_delay * (self.multiplier ** exponent), self.max_backoff)
        if self.jitter and delay > 0:
            delay = min(delay * self._rng(1 - self.jitter, 1 + self.jitter), self.max_backoff)
        return delay

    def get_stats(self) -> Dict:
        """Current policy settings."""
        return {
            'base_delay': self.base_delay,
            'multiplier': self.multiplier,
            'max_backoff': self.max_backoff,
            'jitter': self.jitter,
        }
