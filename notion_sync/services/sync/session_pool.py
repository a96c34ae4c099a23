"""
Request Session Pool - HTTP connection pooling for the remote API

Wraps one requests.Session whose adapter pool is sized to the concurrency
controller's maximum parallelism, so worker threads reuse TCP/TLS connections
instead of opening a socket per call.
"""
import threading
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from ...utils.logger import get_logger

logger = get_logger('session_pool')


class RequestSessionPool:
    """Pooled HTTP session shared by the worker threads of one controller.

    Adapter-level retries are disabled: the concurrency controller classifies
    failures and owns every retry decision.

    Example:
        >>> pool = RequestSessionPool(pool_maxsize=30)
        >>> response = pool.request('GET', 'https://api.notion.com/v1/users/me', timeout=10)
        >>> stats = pool.get_stats()
    """

    POOL_CONNECTIONS = 10  # Number of per-host pools to cache
    POOL_MAXSIZE = 10      # Default max connections per host

    def __init__(self, pool_maxsize: Optional[int] = None, headers: Optional[Dict[str, str]] = None):
        self.pool_maxsize = pool_maxsize or self.POOL_MAXSIZE

        self._session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=self.POOL_CONNECTIONS,
            pool_maxsize=self.pool_maxsize,
            max_retries=0,
            pool_block=False
        )
        self._session.mount('http://', adapter)
        self._session.mount('https://', adapter)
        if headers:
            self._session.headers.update(headers)

        self._stats = {'requests': 0, 'errors': 0}
        self._stats_lock = threading.Lock()

        logger.info(
            f"[RequestSessionPool] Initialized: "
            f"pool_connections={self.POOL_CONNECTIONS}, pool_maxsize={self.pool_maxsize}"
        )

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request through the pooled session.

        Args:
            method: HTTP method
            url: Target URL
            **kwargs: Passed to ``requests.Session.request``

        Returns:
            requests.Response object

        Raises:
            requests.RequestException: On transport failure
        """
        with self._stats_lock:
            self._stats['requests'] += 1

        try:
            return self._session.request(method, url, **kwargs)
        except requests.RequestException:
            with self._stats_lock:
                self._stats['errors'] += 1
            raise

    @property
    def session(self) -> requests.Session:
        """The underlying requests.Session."""
        return self._session

    def get_stats(self) -> Dict:
        """Request and transport-error counts."""
        with self._stats_lock:
            return self._stats.copy()

    def close(self) -> None:
        """Close all pooled connections."""
        self._session.close()
        logger.info("[RequestSessionPool] Session pool closed")
