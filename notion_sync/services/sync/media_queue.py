"""
Asset Download Queue - Durable, retryable queue of asset downloads

Download tasks live in the ``download_tasks`` table so they survive process
restarts. Each ``process_batch`` tick claims due tasks, downloads them through
the concurrency controller, stores the bytes through the asset store and
rewrites the owning record's references. Failed tasks are retried with
exponential backoff up to a fixed bound before they are marked failed.
The queue never blocks the caller that enqueued work: ticks come from an
external scheduler, the CLI, the HTTP API or a ``QueueWorker`` thread.
"""
import mimetypes
import os
import threading
from collections import OrderedDict
from datetime import timedelta
from typing import Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError

from ...extensions import db
from ...models import DownloadTask
from ...utils.logger import get_logger
from ...utils.timeutils import utc_now
from .concurrency import ConcurrencyController, Request, RequestError

logger = get_logger('media_queue')


def canonicalize_url(url: str) -> str:
    """Source URL without query string or fragment; scheme and host lower-cased.

    Signed URLs of the same file differ only in their query string, so the
    canonical form identifies the file itself.
    """
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, '', ''))


def filename_for(url: str, content_type: Optional[str] = None) -> str:
    """Derive a file name from the URL path, guessing the extension if missing."""
    path = urlsplit(url).path
    name = os.path.basename(path) or 'asset'
    ext = os.path.splitext(name)[1]
    if not ext or len(ext) > 5:
        guessed = mimetypes.guess_extension((content_type or '').split(';')[0].strip()) if content_type else None
        name = f"{os.path.splitext(name)[0]}{guessed or '.bin'}"
    return name


class AssetDownloadQueue:
    """Persisted download queue.

    Must be used inside a Flask application context.

    Example:
        >>> queue = AssetDownloadQueue(controller, asset_store, local_store)
        >>> queue.enqueue('https://files.example.com/a.png?X-Amz=1', target_record_id='12', is_primary=True)
        >>> queue.process_batch(5)
        {'claimed': 1, 'downloaded': 1, 'reused': 0, 'succeeded': 1, 'retried': 0, 'failed': 0}
        >>> queue.queue_size()
        0
    """

    DEFAULT_BATCH_SIZE = 5
    MAX_RETRIES = 3
    MAX_HISTORY = 100

    def __init__(
        self,
        controller: ConcurrencyController,
        asset_store,
        local_store,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = 60.0,
        stale_timeout: int = 300,
        history_size: int = MAX_HISTORY,
        clock: Callable = utc_now
    ):
        """Initialize the queue.

        Args:
            controller: Executes the downloads
            asset_store: Stores downloaded bytes, finds assets by source URL
            local_store: Rewrites references in the owning records
            batch_size: Default number of tasks claimed per tick
            max_retries: Retries allowed before a task is marked failed
            retry_delay: Base retry delay in seconds, doubled per retry
            stale_timeout: Seconds after which a 'processing' task is reclaimed
            history_size: Default number of finished tasks returned by history()
            clock: Returns the current naive UTC datetime
        """
        self.controller = controller
        self.asset_store = asset_store
        self.local_store = local_store
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.stale_timeout = stale_timeout
        self.history_size = history_size
        self._clock = clock
        self._listeners: List[Callable[[], None]] = []
        self._listeners_lock = threading.Lock()

    # ==================== Producer side ====================

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after work is enqueued (e.g. QueueWorker.wake)."""
        with self._listeners_lock:
            self._listeners.append(callback)

    def enqueue(self, url: str, target_record_id: str, is_primary: bool = False,
                caption: Optional[str] = None) -> DownloadTask:
        """Persist a download task.

        An identical unfinished task (same canonical URL and record) is reused
        instead of creating a duplicate.

        Args:
            url: Source URL as found in the remote content
            target_record_id: Local id of the record referencing the asset
            is_primary: Whether the asset becomes the record's featured asset
            caption: Optional caption

        Returns:
            The persisted DownloadTask
        """
        canonical = canonicalize_url(url)
        existing = DownloadTask.query.filter(
            DownloadTask.canonical_url == canonical,
            DownloadTask.target_record_id == str(target_record_id),
            DownloadTask.status.in_((DownloadTask.STATUS_PENDING, DownloadTask.STATUS_PROCESSING))
        ).first()
        if existing is not None:
            # Newer signed URL replaces the old one
            if existing.status == DownloadTask.STATUS_PENDING and existing.url != url:
                existing.url = url
                existing.is_primary_asset = existing.is_primary_asset or is_primary
                self._commit()
            return existing

        task = DownloadTask(
            url=url,
            canonical_url=canonical,
            target_record_id=str(target_record_id),
            is_primary_asset=is_primary,
            caption=(caption or '')[:512] or None,
            status=DownloadTask.STATUS_PENDING,
            retry_count=0,
            next_attempt_at=self._clock(),
        )
        db.session.add(task)
        self._commit()
        logger.debug(f"[DownloadQueue] Enqueued {canonical} for record {target_record_id}")
        self._notify()
        return task

    def _notify(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback()
            except Exception as e:
                logger.warning(f"[DownloadQueue] Enqueue listener failed: {e}")

    # ==================== Consumer side ====================

    def process_batch(self, n: Optional[int] = None) -> Dict:
        """Claim up to ``n`` due tasks and process them.

        Tasks sharing a canonical URL are downloaded once; an asset already in
        the asset store is reused without downloading.

        Args:
            n: Maximum tasks to claim (defaults to ``batch_size``)

        Returns:
            Counters: claimed, downloaded, reused, succeeded, retried, failed
        """
        n = n or self.batch_size
        result = {'claimed': 0, 'downloaded': 0, 'reused': 0, 'succeeded': 0, 'retried': 0, 'failed': 0}

        self.recover_stale()
        tasks = self._claim(n)
        if not tasks:
            return result
        result['claimed'] = len(tasks)

        groups: 'OrderedDict[str, List[DownloadTask]]' = OrderedDict()
        for task in tasks:
            groups.setdefault(task.canonical_url, []).append(task)

        to_download = []
        for canonical, group in groups.items():
            asset_id = self.asset_store.find_by_source_url(canonical)
            if asset_id:
                result['reused'] += len(group)
                self._complete(group, asset_id, result)
            else:
                to_download.append(canonical)

        if to_download:
            # Latest task carries the freshest signed URL
            requests_ = [
                Request('GET', max(groups[c], key=lambda t: t.id).url, expect_json=False, max_retries=1, tag=c)
                for c in to_download
            ]
            responses = self.controller.submit(requests_)
            for canonical, response in zip(to_download, responses):
                group = groups[canonical]
                if isinstance(response, RequestError):
                    self._fail(group, str(response), result)
                    continue
                try:
                    filename = filename_for(canonical, response.headers.get('Content-Type'))
                    asset_id = self.asset_store.store(response.content, filename, source_url=canonical)
                except Exception as e:
                    logger.error(f"[DownloadQueue] Failed to store {canonical}: {e}")
                    self._fail(group, f"store failed: {e}", result)
                    continue
                result['downloaded'] += 1
                self._complete(group, asset_id, result)

        self._commit()
        logger.info(
            f"[DownloadQueue] Batch done: claimed={result['claimed']}, downloaded={result['downloaded']}, "
            f"reused={result['reused']}, retried={result['retried']}, failed={result['failed']}"
        )
        return result

    def _claim(self, n: int) -> List[DownloadTask]:
        now = self._clock()
        tasks = DownloadTask.query.filter(
            DownloadTask.status == DownloadTask.STATUS_PENDING,
            db.or_(DownloadTask.next_attempt_at.is_(None), DownloadTask.next_attempt_at <= now)
        ).order_by(DownloadTask.id).limit(n).all()

        for task in tasks:
            task.status = DownloadTask.STATUS_PROCESSING
            task.started_at = now
        if tasks:
            self._commit()
        return tasks

    def _complete(self, group: List[DownloadTask], asset_id: str, result: Dict) -> None:
        try:
            asset_url = self.asset_store.url_of(asset_id)
        except Exception as e:
            self._fail(group, f"asset lookup failed: {e}", result)
            return

        for task in group:
            try:
                self.local_store.replace_asset_reference(
                    task.target_record_id, task.url, asset_url, task.is_primary_asset
                )
            except Exception as e:
                logger.warning(f"[DownloadQueue] Reference rewrite failed for task {task.id}: {e}")
                self._fail([task], f"reference rewrite failed: {e}", result)
                continue
            task.status = DownloadTask.STATUS_DONE
            task.asset_id = str(asset_id)
            task.asset_url = asset_url
            task.last_error = None
            result['succeeded'] += 1

    def _fail(self, group: List[DownloadTask], message: str, result: Dict) -> None:
        now = self._clock()
        for task in group:
            task.retry_count = (task.retry_count or 0) + 1
            task.last_error = message[:1000]
            if task.retry_count <= self.max_retries:
                delay = self.retry_delay * (2 ** (task.retry_count - 1))
                task.status = DownloadTask.STATUS_PENDING
                task.next_attempt_at = now + timedelta(seconds=delay)
                result['retried'] += 1
                logger.warning(
                    f"[DownloadQueue] Task {task.id} failed ({message}), "
                    f"retry {task.retry_count}/{self.max_retries} in {delay:.0f}s"
                )
            else:
                task.status = DownloadTask.STATUS_FAILED
                result['failed'] += 1
                logger.error(f"[DownloadQueue] Task {task.id} failed permanently: {message}")

    # ==================== Maintenance ====================

    def recover_stale(self) -> int:
        """Return 'processing' tasks older than ``stale_timeout`` to 'pending'."""
        cutoff = self._clock() - timedelta(seconds=self.stale_timeout)
        try:
            recovered = DownloadTask.query.filter(
                DownloadTask.status == DownloadTask.STATUS_PROCESSING,
                db.or_(DownloadTask.started_at.is_(None), DownloadTask.started_at < cutoff)
            ).update(
                {'status': DownloadTask.STATUS_PENDING, 'started_at': None},
                synchronize_session=False
            )
            if recovered:
                db.session.commit()
                logger.warning(f"[DownloadQueue] Recovered {recovered} stale processing tasks")
            return recovered
        except SQLAlchemyError as e:
            logger.error(f"[DownloadQueue] Stale task recovery failed: {e}")
            db.session.rollback()
            return 0

    def retry_failed(self) -> int:
        """Re-arm permanently failed tasks with a fresh retry budget."""
        try:
            count = DownloadTask.query.filter_by(status=DownloadTask.STATUS_FAILED).update(
                {'status': DownloadTask.STATUS_PENDING, 'retry_count': 0, 'next_attempt_at': self._clock()},
                synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[DownloadQueue] Retry of failed tasks failed: {e}")
            db.session.rollback()
            return 0
        if count:
            self._notify()
        return count

    def purge_finished(self, older_than_seconds: int = 7 * 24 * 3600) -> int:
        """Delete done/failed tasks last updated before the cutoff."""
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        try:
            count = DownloadTask.query.filter(
                DownloadTask.status.in_((DownloadTask.STATUS_DONE, DownloadTask.STATUS_FAILED)),
                DownloadTask.updated_at < cutoff
            ).delete(synchronize_session=False)
            db.session.commit()
            return count
        except SQLAlchemyError as e:
            logger.error(f"[DownloadQueue] Purge failed: {e}")
            db.session.rollback()
            return 0

    # ==================== Introspection ====================

    def queue_size(self) -> int:
        """Number of unfinished (pending or processing) tasks."""
        return DownloadTask.query.filter(
            DownloadTask.status.in_((DownloadTask.STATUS_PENDING, DownloadTask.STATUS_PROCESSING))
        ).count()

    def has_due_work(self) -> bool:
        now = self._clock()
        return db.session.query(DownloadTask.id).filter(
            DownloadTask.status == DownloadTask.STATUS_PENDING,
            db.or_(DownloadTask.next_attempt_at.is_(None), DownloadTask.next_attempt_at <= now)
        ).first() is not None

    def stats(self) -> Dict:
        rows = db.session.query(DownloadTask.status, db.func.count(DownloadTask.id)).group_by(DownloadTask.status).all()
        counts = {status: 0 for status in (
            DownloadTask.STATUS_PENDING, DownloadTask.STATUS_PROCESSING,
            DownloadTask.STATUS_DONE, DownloadTask.STATUS_FAILED,
        )}
        counts.update({status: count for status, count in rows})
        counts['queue_size'] = counts[DownloadTask.STATUS_PENDING] + counts[DownloadTask.STATUS_PROCESSING]
        return counts

    def history(self, limit: Optional[int] = None) -> List[Dict]:
        """Most recently finished tasks, newest first."""
        limit = limit or self.history_size
        tasks = DownloadTask.query.filter(
            DownloadTask.status.in_((DownloadTask.STATUS_DONE, DownloadTask.STATUS_FAILED))
        ).order_by(DownloadTask.updated_at.desc(), DownloadTask.id.desc()).limit(limit).all()
        return [task.to_dict() for task in tasks]

    @staticmethod
    def _commit() -> None:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise


class QueueWorker:
    """Long-running thread that ticks the download queue.

    Sleeps ``interval`` seconds between ticks, wakes early when work is
    enqueued, and ticks again immediately while due work remains.

    Example:
        >>> worker = QueueWorker(app, queue, interval=30)
        >>> worker.start()
        >>> worker.stop()
    """

    def __init__(self, app, queue: AssetDownloadQueue, interval: float = 30.0, batch_size: Optional[int] = None):
        self.app = app
        self.queue = queue
        self.interval = interval
        self.batch_size = batch_size
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        queue.add_listener(self.wake)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='download_queue_worker')
        self._thread.daemon = True
        self._thread.start()
        logger.info(f"[QueueWorker] Started, interval={self.interval}s")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("[QueueWorker] Stopped")

    def wake(self) -> None:
        self._wake_event.set()

    def tick(self) -> bool:
        """Process one batch. Returns True if more due work remains."""
        with self.app.app_context():
            try:
                self.queue.process_batch(self.batch_size)
                return self.queue.has_due_work()
            except Exception as e:
                logger.error(f"[QueueWorker] Tick failed: {e}")
                db.session.rollback()
                return False

    def _run(self) -> None:
        while not self._stop_event.is_set():
            more = self.tick()
            if more:
                continue
            self._wake_event.wait(self.interval)
            self._wake_event.clear()
