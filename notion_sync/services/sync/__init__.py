"""
Sync Engine Components

- cache: Instance-owned TTL cache for remote reads
- session_pool: Pooled HTTP session
- delay_manager: Retry backoff policy
- network_quality: Quality score and adaptive concurrency limit
- concurrency: Bounded-parallel executor with retry and classification
- remote_objects: Records, block nodes and the block type registry
- fetch_client: Paginated listings and recursive block trees
- run_lock: Database-backed run lock
- log_collector: Run statistics
- media_queue: Durable asset download queue and its worker
"""
from .cache import MISS, SessionCache, make_cache_key
from .session_pool import RequestSessionPool
from .delay_manager import BackoffPolicy, parse_retry_after
from .network_quality import AdaptiveConcurrencyLimiter, NetworkQualityMonitor
from .concurrency import ConcurrencyController, ErrorKind, Request, RequestError, Response
from .remote_objects import BlockHandler, BlockNode, BlockTypeRegistry, RemoteRecord, block_registry
from .errors import BlockTreeError, FetchError, ListingError, LockLostError, SyncError, SyncInProgressError
from .fetch_client import NotionFetchClient
from .run_lock import RunLock
from .log_collector import RunStats
from .media_queue import AssetDownloadQueue, QueueWorker, canonicalize_url

__all__ = [
    'MISS',
    'SessionCache',
    'make_cache_key',
    'RequestSessionPool',
    'BackoffPolicy',
    'parse_retry_after',
    'AdaptiveConcurrencyLimiter',
    'NetworkQualityMonitor',
    'ConcurrencyController',
    'ErrorKind',
    'Request',
    'RequestError',
    'Response',
    'BlockHandler',
    'BlockNode',
    'BlockTypeRegistry',
    'RemoteRecord',
    'block_registry',
    'BlockTreeError',
    'FetchError',
    'ListingError',
    'LockLostError',
    'SyncError',
    'SyncInProgressError',
    'NotionFetchClient',
    'RunLock',
    'RunStats',
    'AssetDownloadQueue',
    'QueueWorker',
    'canonicalize_url',
]
