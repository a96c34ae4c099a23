"""
Sync Engine - Wires the sync components from application config

One engine per Flask app, stored in ``app.extensions['notion_sync']``. Every
component (cache, controller, queue) is owned by the engine instance instead
of living in module-level singletons.
"""
from dataclasses import dataclass
from typing import Mapping, Optional

from flask import current_app

from ..utils.logger import get_logger
from .stores import FileAssetStore, MarkdownRenderer, SqlLocalStore
from .sync.cache import SessionCache
from .sync.concurrency import ConcurrencyController
from .sync.fetch_client import NotionFetchClient
from .sync.media_queue import AssetDownloadQueue, QueueWorker
from .sync.run_lock import RunLock
from .sync_service import SyncCoordinator

logger = get_logger('engine')

EXTENSION_KEY = 'notion_sync'


@dataclass
class SyncEngine:
    controller: ConcurrencyController
    download_controller: ConcurrencyController
    cache: SessionCache
    fetch_client: NotionFetchClient
    local_store: object
    asset_store: object
    renderer: object
    download_queue: AssetDownloadQueue
    coordinator: SyncCoordinator
    worker: Optional[QueueWorker] = None

    def stats(self):
        return {
            'controller': self.controller.get_stats(),
            'download_controller': self.download_controller.get_stats(),
            'cache': self.cache.stats(),
        }

    def close(self):
        if self.worker is not None:
            self.worker.stop()
        self.controller.close()
        self.download_controller.close()


def build_download_controller(config: Mapping, session=None) -> ConcurrencyController:
    """Controller for asset downloads.

    Separate from the API controller: slow or failing file hosts lower only
    the download quality score and limit, never the API's.
    """
    initial = max(1, config.get('DOWNLOAD_CONCURRENCY', 5))
    return ConcurrencyController.from_config(
        config,
        session=session,
        min_concurrency=1,
        initial_concurrency=initial,
        max_concurrency=max(initial, config.get('DOWNLOAD_CONCURRENCY_MAX', 10)),
        timeout=config.get('DOWNLOAD_TIMEOUT', 60.0),
    )


def build_sync_engine(config: Mapping, session=None, local_store=None, asset_store=None,
                      renderer=None) -> SyncEngine:
    """Build every sync component from a config mapping.

    Args:
        config: Flask config (or any mapping with the same keys)
        session: HTTP session override (tests pass a fake)
        local_store: LocalStore override
        asset_store: AssetStore override
        renderer: ContentRenderer override

    Returns:
        A wired SyncEngine
    """
    controller = ConcurrencyController.from_config(config, session=session)
    download_controller = build_download_controller(config, session=session)
    cache = SessionCache(default_ttl=config.get('CACHE_TTL', 300))
    fetch_client = NotionFetchClient(
        controller,
        cache,
        api_key=config.get('NOTION_API_KEY', ''),
        api_base=config.get('NOTION_API_BASE', NotionFetchClient.API_BASE),
        notion_version=config.get('NOTION_VERSION', NotionFetchClient.NOTION_VERSION),
        max_depth=config.get('BLOCK_TREE_MAX_DEPTH', 3),
    )
    local_store = local_store or SqlLocalStore()
    asset_store = asset_store or FileAssetStore(
        config.get('MEDIA_PATH'),
        url_prefix=config.get('MEDIA_URL_PREFIX', '/media'),
    )
    renderer = renderer or MarkdownRenderer()
    download_queue = AssetDownloadQueue(
        download_controller,
        asset_store,
        local_store,
        batch_size=config.get('DOWNLOAD_BATCH_SIZE', 5),
        max_retries=config.get('DOWNLOAD_MAX_RETRIES', 3),
        retry_delay=config.get('DOWNLOAD_RETRY_DELAY', 60.0),
        stale_timeout=config.get('DOWNLOAD_STALE_TIMEOUT', 300),
        history_size=config.get('DOWNLOAD_HISTORY_SIZE', 100),
    )
    coordinator = SyncCoordinator(
        fetch_client,
        local_store,
        renderer,
        download_queue=download_queue,
        lock=RunLock(ttl_seconds=config.get('SYNC_LOCK_TTL', 300)),
        max_depth=config.get('BLOCK_TREE_MAX_DEPTH', 3),
        timestamp_tolerance=config.get('TIMESTAMP_TOLERANCE', 0.0),
    )
    return SyncEngine(
        controller=controller,
        download_controller=download_controller,
        cache=cache,
        fetch_client=fetch_client,
        local_store=local_store,
        asset_store=asset_store,
        renderer=renderer,
        download_queue=download_queue,
        coordinator=coordinator,
    )


def init_sync_engine(app, **overrides) -> SyncEngine:
    """Build the engine for ``app`` and register it as an extension."""
    engine = build_sync_engine(app.config, **overrides)
    if app.config.get('QUEUE_WORKER_ENABLED'):
        engine.worker = QueueWorker(
            app,
            engine.download_queue,
            interval=app.config.get('QUEUE_WORKER_INTERVAL', 30.0),
        )
    app.extensions[EXTENSION_KEY] = engine
    logger.info(
        f"Sync engine initialized: concurrency={engine.controller.concurrency}, "
        f"cache_ttl={engine.cache.default_ttl}s"
    )
    return engine


def get_sync_engine(app=None) -> SyncEngine:
    """The engine of ``app`` (defaults to the current app)."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
