"""
Concurrency Controller - Bounded-parallel HTTP executor with adaptive throttling

Runs independent remote calls in batches no larger than the current
concurrency limit, classifies every outcome, retries recoverable failures with
backoff, and feeds each attempt into a rolling network quality score that moves
the limit up or down. Individual request failures are returned as
``RequestError`` values, never raised.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import requests
from requests.structures import CaseInsensitiveDict

from ...utils.logger import get_logger
from .delay_manager import BackoffPolicy, parse_retry_after
from .network_quality import (
    AdaptiveConcurrencyLimiter,
    NetworkQualityMonitor,
    OUTCOME_CLIENT_ERROR,
    OUTCOME_CONNECTION,
    OUTCOME_ERROR,
    OUTCOME_RATE_LIMITED,
    OUTCOME_SUCCESS,
    OUTCOME_TIMEOUT,
)
from .session_pool import RequestSessionPool

logger = get_logger('concurrency')


class ErrorKind(str, Enum):
    """Classification of a failed remote call."""
    TIMEOUT = 'timeout'
    CONNECTION = 'connection'
    SERVER = 'server_error'
    RATE_LIMITED = 'rate_limited'
    NOT_FOUND = 'not_found'
    CLIENT = 'client_error'
    MALFORMED = 'malformed'


@dataclass
class Request:
    """A single remote call.

    Attributes:
        method: HTTP method
        url: Absolute target URL
        params: Query string parameters
        json: JSON body
        headers: Extra headers merged over the controller defaults
        max_retries: Retry budget for this request
        expect_json: Decode the body as a JSON object on success
        tag: Caller-supplied correlation id
    """
    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    json: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None
    max_retries: int = 3
    expect_json: bool = True
    tag: Optional[str] = None


@dataclass
class Response:
    """A successful (2xx) remote call."""
    status_code: int
    data: Any
    content: bytes
    headers: Dict[str, str]
    latency: float
    attempts: int = 1
    request: Optional[Request] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return True


@dataclass
class RequestError:
    """A remote call that ended in failure after retries were exhausted or not allowed."""
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    retryable: bool = False
    retry_after: Optional[float] = None
    attempts: int = 1
    payload: Optional[Dict[str, Any]] = None
    request: Optional[Request] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_not_found(self) -> bool:
        return self.kind == ErrorKind.NOT_FOUND

    def __str__(self):
        status = f" (HTTP {self.status_code})" if self.status_code else ''
        return f"{self.kind.value}{status}: {self.message}"


Result = Union[Response, RequestError]

_OUTCOME_BY_KIND = {
    ErrorKind.TIMEOUT: OUTCOME_TIMEOUT,
    ErrorKind.CONNECTION: OUTCOME_CONNECTION,
    ErrorKind.SERVER: OUTCOME_ERROR,
    ErrorKind.RATE_LIMITED: OUTCOME_RATE_LIMITED,
    ErrorKind.NOT_FOUND: OUTCOME_CLIENT_ERROR,
    ErrorKind.CLIENT: OUTCOME_CLIENT_ERROR,
    ErrorKind.MALFORMED: OUTCOME_CLIENT_ERROR,
}


class ConcurrencyController:
    """Bounded-parallel executor with retry, backoff and adaptive concurrency.

    Requests are split into batches of the current limit; every batch runs truly
    in parallel on a thread pool and must fully finish (success, retry
    exhaustion or terminal error for each member) before the next one starts.
    Results come back in request order.

    ``sleep`` and ``clock`` are injectable so retry timing can be tested on a
    simulated clock.

    Example:
        >>> controller = ConcurrencyController(min_concurrency=5, max_concurrency=30)
        >>> results = controller.submit([Request('GET', 'https://api.notion.com/v1/users/me')])
        >>> isinstance(results[0], Response)
        True
    """

    RETRYABLE_STATUS = frozenset({500, 502, 503, 504})
    RATE_LIMIT_STATUS = 429

    def __init__(
        self,
        session=None,
        min_concurrency: int = 5,
        max_concurrency: int = 30,
        initial_concurrency: int = 10,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        backoff: Optional[BackoffPolicy] = None,
        rate_limit_max_retries: int = 2,
        high_threshold: float = 0.85,
        low_threshold: float = 0.6,
        adjust_every: int = 20,
        adjust_interval: float = 10.0,
        default_headers: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the controller.

        Args:
            session: Object with ``request(method, url, **kwargs)``; defaults to
                a RequestSessionPool sized to ``max_concurrency``
            min_concurrency: Lower bound of the adaptive limit
            max_concurrency: Upper bound of the adaptive limit (thread pool size)
            initial_concurrency: Starting limit
            timeout: Read timeout per attempt, in seconds
            connect_timeout: Connect timeout per attempt, in seconds
            backoff: Retry delay policy
            rate_limit_max_retries: Retry cap for 429 responses, below the generic budget
            high_threshold: Quality score at or above which the limit grows
            low_threshold: Quality score at or below which the limit shrinks
            adjust_every: Attempts between limit re-evaluations
            adjust_interval: Seconds between limit re-evaluations
            default_headers: Headers sent with every request
            sleep: Sleep function used between retries
            clock: Monotonic clock used for latency and cadence
        """
        self._session = session if session is not None else RequestSessionPool(pool_maxsize=max_concurrency)
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.backoff = backoff or BackoffPolicy()
        self.rate_limit_max_retries = rate_limit_max_retries
        self.default_headers = dict(default_headers or {})
        self._sleep = sleep
        self._clock = clock

        self.monitor = NetworkQualityMonitor()
        self.limiter = AdaptiveConcurrencyLimiter(
            self.monitor,
            min_limit=min_concurrency,
            max_limit=max_concurrency,
            initial_limit=initial_concurrency,
            high_threshold=high_threshold,
            low_threshold=low_threshold,
            adjust_every=adjust_every,
            adjust_interval=adjust_interval,
            clock=clock,
        )
        self._executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix='remote_req')

        self._stats = self._empty_stats()
        self._latency_total = 0.0
        self._latency_samples = 0
        self._stats_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Mapping, session=None, **overrides) -> 'ConcurrencyController':
        """Build a controller from a Flask config mapping."""
        options = dict(
            session=session,
            min_concurrency=config.get('CONCURRENCY_MIN', 5),
            max_concurrency=config.get('CONCURRENCY_MAX', 30),
            initial_concurrency=config.get('CONCURRENCY_INITIAL', 10),
            timeout=config.get('REQUEST_TIMEOUT', 30.0),
            connect_timeout=config.get('CONNECT_TIMEOUT', 10.0),
            backoff=BackoffPolicy(
                base_delay=config.get('BACKOFF_BASE', 1.0),
                multiplier=config.get('BACKOFF_MULTIPLIER', 2.0),
                max_backoff=config.get('BACKOFF_MAX', 30.0),
                jitter=config.get('BACKOFF_JITTER', 0.0),
            ),
            rate_limit_max_retries=config.get('RATE_LIMIT_MAX_RETRIES', 2),
            high_threshold=config.get('QUALITY_HIGH_THRESHOLD', 0.85),
            low_threshold=config.get('QUALITY_LOW_THRESHOLD', 0.6),
            adjust_every=config.get('CONCURRENCY_ADJUST_EVERY', 20),
            adjust_interval=config.get('CONCURRENCY_ADJUST_INTERVAL', 10.0),
        )
        options.update(overrides)
        return cls(**options)

    @property
    def concurrency(self) -> int:
        """Current concurrency limit."""
        return self.limiter.current

    # ==================== Execution ====================

    def submit(self, requests_: Sequence[Request]) -> List[Result]:
        """Execute requests in bounded-parallel batches.

        Args:
            requests_: Independent requests

        Returns:
            One ``Response`` or ``RequestError`` per request, in request order
        """
        if not requests_:
            return []

        with self._stats_lock:
            self._stats['total'] += len(requests_)

        results: List[Optional[Result]] = [None] * len(requests_)
        position = 0
        while position < len(requests_):
            limit = self.limiter.current
            indexes = range(position, min(position + limit, len(requests_)))
            futures = {
                self._executor.submit(self._execute_with_retry, requests_[index]): index
                for index in indexes
            }
            wait(futures)
            for future, index in futures.items():
                results[index] = future.result()
            position += len(indexes)
            self.limiter.maybe_adjust()

        return results

    def execute(self, request: Request) -> Result:
        """Execute one request with retries."""
        return self.submit([request])[0]

    def _execute_with_retry(self, request: Request) -> Result:
        retry_count = 0
        while True:
            result = self._attempt(request)
            result.attempts = retry_count + 1

            if isinstance(result, Response):
                with self._stats_lock:
                    self._stats['success'] += 1
                return result

            budget = request.max_retries
            if result.kind == ErrorKind.RATE_LIMITED:
                budget = min(budget, self.rate_limit_max_retries)

            if not result.retryable or retry_count >= budget:
                with self._stats_lock:
                    self._stats['failed'] += 1
                if result.retryable:
                    logger.warning(
                        f"[Concurrency] Giving up on {request.method} {request.url} "
                        f"after {result.attempts} attempts: {result}"
                    )
                else:
                    logger.debug(f"[Concurrency] Terminal error for {request.method} {request.url}: {result}")
                return result

            retry_count += 1
            delay = self.backoff.delay_for(
                retry_count,
                result.retry_after if result.kind == ErrorKind.RATE_LIMITED else None
            )
            with self._stats_lock:
                self._stats['retried'] += 1
            logger.info(
                f"[Concurrency] Retry {retry_count}/{budget} for {request.method} {request.url} "
                f"in {delay:.2f}s ({result.kind.value})"
            )
            if delay > 0:
                self._sleep(delay)

    def _attempt(self, request: Request) -> Result:
        headers = dict(self.default_headers)
        if request.headers:
            headers.update(request.headers)

        start = self._clock()
        try:
            resp = self._session.request(
                request.method,
                request.url,
                params=request.params,
                json=request.json,
                headers=headers,
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.Timeout as e:
            return self._record_error(request, ErrorKind.TIMEOUT, f"Request timed out: {e}", True, self._clock() - start)
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema) as e:
            return self._record_error(request, ErrorKind.CLIENT, f"Invalid request target: {e}", False, self._clock() - start)
        except requests.RequestException as e:
            return self._record_error(request, ErrorKind.CONNECTION, f"Connection failed: {e}", True, None)

        latency = self._clock() - start
        return self._classify(request, resp, latency)

    def _classify(self, request: Request, resp, latency: float) -> Result:
        status = resp.status_code
        headers = CaseInsensitiveDict(resp.headers or {})

        if 200 <= status < 300:
            data = None
            if request.expect_json:
                try:
                    data = resp.json() if resp.content else {}
                except ValueError:
                    return self._record_error(request, ErrorKind.MALFORMED, 'Response body is not valid JSON', False, latency, status)
                if not isinstance(data, dict):
                    return self._record_error(request, ErrorKind.MALFORMED, 'Response body is not a JSON object', False, latency, status)
            self._record_outcome(OUTCOME_SUCCESS, latency)
            return Response(
                status_code=status,
                data=data,
                content=resp.content,
                headers=headers,
                latency=latency,
                request=request,
            )

        payload = None
        try:
            payload = resp.json() if resp.content else None
        except ValueError:
            payload = None
        message = None
        if isinstance(payload, dict):
            message = payload.get('message')
        message = message or getattr(resp, 'reason', None) or f"HTTP {status}"

        if status == self.RATE_LIMIT_STATUS:
            with self._stats_lock:
                self._stats['rate_limited'] += 1
            retry_after = parse_retry_after(resp.headers.get('Retry-After') if resp.headers else None)
            return self._record_error(
                request, ErrorKind.RATE_LIMITED, message, True, latency, status,
                retry_after=retry_after, payload=payload
            )
        if status in self.RETRYABLE_STATUS:
            return self._record_error(request, ErrorKind.SERVER, message, True, latency, status, payload=payload)
        if status == 404:
            return self._record_error(request, ErrorKind.NOT_FOUND, message, False, latency, status, payload=payload)
        if status >= 500:
            return self._record_error(request, ErrorKind.SERVER, message, False, latency, status, payload=payload)
        return self._record_error(request, ErrorKind.CLIENT, message, False, latency, status, payload=payload)

    def _record_error(
        self,
        request: Request,
        kind: ErrorKind,
        message: str,
        retryable: bool,
        latency: Optional[float],
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        payload: Optional[Dict] = None
    ) -> RequestError:
        self._record_outcome(_OUTCOME_BY_KIND[kind], latency)
        if kind == ErrorKind.TIMEOUT:
            with self._stats_lock:
                self._stats['timeouts'] += 1
        elif kind == ErrorKind.CONNECTION:
            with self._stats_lock:
                self._stats['connection_errors'] += 1
        return RequestError(
            kind=kind,
            message=message,
            status_code=status_code,
            retryable=retryable,
            retry_after=retry_after,
            payload=payload,
            request=request,
        )

    def _record_outcome(self, outcome: str, latency: Optional[float]) -> None:
        self.monitor.record(outcome, latency)
        self.limiter.observe(1)
        with self._stats_lock:
            self._stats['attempts'] += 1
            if latency is not None:
                self._latency_total += latency
                self._latency_samples += 1

    # ==================== Statistics ====================

    @staticmethod
    def _empty_stats() -> Dict:
        return {
            'total': 0,
            'success': 0,
            'failed': 0,
            'retried': 0,
            'rate_limited': 0,
            'timeouts': 0,
            'connection_errors': 0,
            'attempts': 0,
        }

    def get_stats(self) -> Dict:
        """Aggregate statistics since creation or the last reset.

        Returns:
            Dictionary with request counters, avg_latency, quality and limit info
        """
        with self._stats_lock:
            stats = dict(self._stats)
            avg_latency = self._latency_total / self._latency_samples if self._latency_samples else 0.0
        stats['avg_latency'] = round(avg_latency, 4)
        stats['quality'] = self.monitor.score()
        stats.update(self.limiter.get_stats())
        return stats

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = self._empty_stats()
            self._latency_total = 0.0
            self._latency_samples = 0

    def close(self) -> None:
        """Shut down the worker pool and close pooled connections."""
        self._executor.shutdown(wait=True)
        close = getattr(self._session, 'close', None)
        if close is not None:
            close()
        logger.info("[Concurrency] Controller closed")
