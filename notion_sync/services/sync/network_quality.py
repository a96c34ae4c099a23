"""
Network Quality - Rolling quality score and adaptive concurrency limit

The monitor keeps a rolling window of recent call outcomes and derives a
quality score in [0, 1] from error rate, rate-limit frequency and latency.
The limiter reads that score periodically and moves the concurrency limit up
or down inside its configured bounds, closing the feedback loop.
"""
import threading
import time
from collections import deque
from typing import Callable, Dict, Optional

from ...utils.logger import get_logger

logger = get_logger('network_quality')

# Outcome categories recorded per attempt
OUTCOME_SUCCESS = 'success'
OUTCOME_ERROR = 'error'                # retryable server error
OUTCOME_TIMEOUT = 'timeout'
OUTCOME_CONNECTION = 'connection'      # refused / reset / DNS
OUTCOME_RATE_LIMITED = 'rate_limited'
OUTCOME_CLIENT_ERROR = 'client_error'  # 4xx: says nothing about the network

_ERROR_OUTCOMES = (OUTCOME_ERROR, OUTCOME_TIMEOUT, OUTCOME_CONNECTION)


class NetworkQualityMonitor:
    """Rolling window of call outcomes.

    Score = (1 - error_rate) * (1 - rate_limit_rate) * (1 - 0.5 * latency_penalty)

    Timeouts count as errors and add their elapsed time to latency.
    Connection failures count as errors but carry no latency sample.
    """

    def __init__(self, window_size: int = 50, latency_target: float = 5.0):
        self.window_size = window_size
        self.latency_target = latency_target
        self._samples = deque(maxlen=window_size)
        self._lock = threading.Lock()

    def record(self, outcome: str, latency: Optional[float] = None) -> None:
        if outcome == OUTCOME_CONNECTION:
            latency = None
        with self._lock:
            self._samples.append((outcome, latency))

    def snapshot(self) -> Dict:
        """Current window metrics and score."""
        with self._lock:
            samples = list(self._samples)

        count = len(samples)
        if not count:
            return {
                'samples': 0,
                'error_rate': 0.0,
                'rate_limit_rate': 0.0,
                'avg_latency': 0.0,
                'score': 1.0,
            }

        errors = sum(1 for outcome, _ in samples if outcome in _ERROR_OUTCOMES)
        rate_limited = sum(1 for outcome, _ in samples if outcome == OUTCOME_RATE_LIMITED)
        latencies = [latency for _, latency in samples if latency is not None]
        avg_latency = sum(latencies) / len(latencies) if latencies else 0.0

        error_rate = errors / count
        rate_limit_rate = rate_limited / count
        latency_penalty = min(1.0, avg_latency / self.latency_target) if self.latency_target > 0 else 0.0
        score = (1 - error_rate) * (1 - rate_limit_rate) * (1 - 0.5 * latency_penalty)

        return {
            'samples': count,
            'error_rate': round(error_rate, 4),
            'rate_limit_rate': round(rate_limit_rate, 4),
            'avg_latency': round(avg_latency, 4),
            'score': round(score, 4),
        }

    def score(self) -> float:
        return self.snapshot()['score']

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()


class AdaptiveConcurrencyLimiter:
    """Concurrency limit driven by the network quality score.

    Every ``adjust_every`` attempts, or ``adjust_interval`` seconds, the limit is
    re-evaluated: score >= high_threshold grows it by ``increase_factor`` (at
    least +1), score <= low_threshold shrinks it by ``decrease_factor`` (at
    least -1). The limit always stays within [min_limit, max_limit].

    Example:
        >>> limiter = AdaptiveConcurrencyLimiter(NetworkQualityMonitor(), min_limit=5, max_limit=30)
        >>> limiter.observe(20)
        >>> limiter.maybe_adjust()
    """

    def __init__(
        self,
        monitor: NetworkQualityMonitor,
        min_limit: int = 5,
        max_limit: int = 30,
        initial_limit: int = 10,
        high_threshold: float = 0.85,
        low_threshold: float = 0.6,
        adjust_every: int = 20,
        adjust_interval: float = 10.0,
        increase_factor: float = 1.1,
        decrease_factor: float = 0.8,
        clock: Callable[[], float] = time.monotonic
    ):
        if min_limit < 1 or max_limit < min_limit:
            raise ValueError(f"Invalid concurrency bounds: [{min_limit}, {max_limit}]")

        self.monitor = monitor
        self.min_limit = min_limit
        self.max_limit = max_limit
        self.high_threshold = high_threshold
        self.low_threshold = low_threshold
        self.adjust_every = adjust_every
        self.adjust_interval = adjust_interval
        self.increase_factor = increase_factor
        self.decrease_factor = decrease_factor
        self._clock = clock

        self._current = max(min_limit, min(initial_limit, max_limit))
        self._since_adjust = 0
        self._last_adjust_at = clock()
        self._adjustments = 0
        self._lock = threading.Lock()

        logger.info(
            f"[AdaptiveConcurrency] Initialized: limit={self._current}, "
            f"bounds=[{min_limit}, {max_limit}]"
        )

    @property
    def current(self) -> int:
        with self._lock:
            return self._current

    def observe(self, attempts: int = 1) -> None:
        """Count attempts toward the next adjustment."""
        with self._lock:
            self._since_adjust += attempts

    def maybe_adjust(self) -> Optional[int]:
        """Re-evaluate the limit if the cadence is due.

        Returns:
            The new limit if it changed, else None
        """
        with self._lock:
            now = self._clock()
            due = (
                self._since_adjust >= self.adjust_every or
                (self._since_adjust > 0 and now - self._last_adjust_at >= self.adjust_interval)
            )
            if not due:
                return None

            self._since_adjust = 0
            self._last_adjust_at = now
            score = self.monitor.score()
            old = self._current

            if score >= self.high_threshold:
                self._current = min(self.max_limit, max(old + 1, int(old * self.increase_factor)))
            elif score <= self.low_threshold:
                self._current = max(self.min_limit, min(old - 1, int(old * self.decrease_factor)))

            if self._current == old:
                return None
            self._adjustments += 1
            new = self._current

        if new < old:
            logger.warning(f"[AdaptiveConcurrency] Quality {score:.2f}: limit {old} -> {new}")
        else:
            logger.info(f"[AdaptiveConcurrency] Quality {score:.2f}: limit {old} -> {new}")
        return new

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                'concurrency': self._current,
                'min_concurrency': self.min_limit,
                'max_concurrency': self.max_limit,
                'adjustments': self._adjustments,
            }
