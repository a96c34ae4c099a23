"""
Session Cache - Short-lived TTL cache for remote reads

Instance-owned cache for decoded remote objects (record listings, block trees).
Entries are replaced whole, expire by TTL, and can be dropped one key at a time
or by scope prefix. Every miss degrades to a live fetch, so the cache never
changes what callers see, only how often the remote API is hit.
"""
import hashlib
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from ...utils.logger import get_logger
from ...utils.timeutils import stable_json_dumps

logger = get_logger('session_cache')


class _Miss:
    """Sentinel returned by ``SessionCache.get`` when no valid entry exists."""

    def __repr__(self):
        return 'MISS'

    def __bool__(self):
        return False


MISS = _Miss()


def make_cache_key(operation: str, object_id: str, filter: Optional[Dict] = None, detail: Any = None) -> str:
    """Build a deterministic fingerprint for a remote read.

    The key keeps ``operation`` and ``object_id`` readable so callers can
    invalidate a whole scope by prefix; the filter and detail level are hashed.

    Args:
        operation: Operation name, e.g. ``list_records`` or ``block_tree``
        object_id: Remote object id (database or block id)
        filter: Optional server-side filter
        detail: Detail level (depth, version, ...)

    Returns:
        Key of the form ``operation:object_id:md5``

    Example:
        >>> make_cache_key('list_records', 'db1', {'property': 'Status'})
        'list_records:db1:...'
    """
    digest = hashlib.md5(stable_json_dumps({'filter': filter, 'detail': detail}).encode('utf-8')).hexdigest()
    return f"{operation}:{object_id}:{digest}"


class SessionCache:
    """TTL cache keyed by request fingerprint.

    No eviction beyond TTL expiry and explicit invalidation. The clock is
    injectable so tests can expire entries without sleeping.

    Example:
        >>> cache = SessionCache(default_ttl=300)
        >>> cache.set('k', {'a': 1})
        >>> cache.get('k')
        {'a': 1}
        >>> cache.invalidate(scope='k')
    """

    def __init__(self, default_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        # key -> (value, stored_at, ttl)
        self._entries: Dict[str, Tuple[Any, float, float]] = {}
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'invalidations': 0}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        """Return the cached value or ``MISS``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                value, stored_at, ttl = entry
                if self._clock() - stored_at < ttl:
                    self._stats['hits'] += 1
                    return value
                del self._entries[key]
            self._stats['misses'] += 1
            return MISS

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value`` under ``key``, replacing any previous entry."""
        if ttl is None:
            ttl = self.default_ttl
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (value, self._clock(), ttl)
            self._stats['sets'] += 1

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value, or call ``loader`` and cache its result.

        Exceptions raised by ``loader`` propagate and nothing is cached.
        """
        value = self.get(key)
        if value is not MISS:
            return value
        value = loader()
        self.set(key, value, ttl)
        return value

    def invalidate(self, key: Optional[str] = None, scope: Optional[str] = None) -> int:
        """Drop one key, every key starting with ``scope``, or everything.

        Args:
            key: Exact key to drop
            scope: Key prefix to drop (e.g. ``list_records:db1``)

        Returns:
            Number of entries removed
        """
        with self._lock:
            if key is not None:
                removed = 1 if self._entries.pop(key, None) is not None else 0
            elif scope is not None:
                doomed = [k for k in self._entries if k.startswith(scope)]
                for k in doomed:
                    del self._entries[k]
                removed = len(doomed)
            else:
                removed = len(self._entries)
                self._entries.clear()
            self._stats['invalidations'] += removed

        if removed:
            logger.debug(f"[SessionCache] Invalidated {removed} entries (key={key}, scope={scope})")
        return removed

    def purge_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        with self._lock:
            doomed = [k for k, (_, stored_at, ttl) in self._entries.items() if now - stored_at >= ttl]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict:
        """Snapshot of hit/miss counters.

        Returns:
            Dictionary with hits, misses, sets, invalidations, size and hit_rate
        """
        with self._lock:
            snapshot = dict(self._stats)
            snapshot['size'] = len(self._entries)
        lookups = snapshot['hits'] + snapshot['misses']
        snapshot['hit_rate'] = round(snapshot['hits'] / lookups, 4) if lookups else 0.0
        return snapshot
