"""
Sync Service - Orchestrates a synchronization run for one remote database

A run moves through Idle -> Locked -> Listing -> Importing -> Reconciling ->
Done | Failed. The run lock keeps two runs on the same database from
overlapping; the lock is refreshed after every record and always released.
Per-record failures are counted and never abort the run; only lock contention,
a lost lock and a failed listing end a run early.
"""
import json
import threading
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import SyncStateRecord
from ..utils.logger import get_logger, log_sync_event
from ..utils.timeutils import to_iso, utc_now
from .sync.errors import FetchError, ListingError, LockLostError, SyncInProgressError
from .sync.fetch_client import NotionFetchClient
from .sync.log_collector import RunStats
from .sync.media_queue import AssetDownloadQueue
from .sync.remote_objects import BlockNode, RemoteRecord, file_object_url, hosted_media_blocks
from .sync.run_lock import RunLock

logger = get_logger('sync')


class SyncCoordinator:
    """Runs incremental or full syncs of a remote database into the local store.

    Features:
    - Real mutual exclusion per database through a TTL run lock
    - Incremental listing filtered by the last successful run, plus a strict
      per-record ``remote > local`` watermark check
    - Deletion reconciliation on full listings only, with safety checks
    - Asset references handed to the durable download queue
    - Persisted run state with heartbeat for stale-run detection

    Example:
        >>> coordinator = SyncCoordinator(fetch_client, SqlLocalStore(), MarkdownRenderer(), queue)
        >>> stats = coordinator.run('database-id', incremental=True, check_deletions=False)
        >>> stats.summary()
        {'total': 3, 'created': 1, 'updated': 0, 'skipped': 2, 'deleted': 0, 'failed': 0}
    """

    def __init__(
        self,
        fetch_client: NotionFetchClient,
        local_store,
        renderer,
        download_queue: Optional[AssetDownloadQueue] = None,
        lock: Optional[RunLock] = None,
        max_depth: int = 3,
        timestamp_tolerance: float = 0.0,
        clock=utc_now
    ):
        """Initialize the coordinator.

        Args:
            fetch_client: Remote read client
            local_store: LocalStore implementation
            renderer: ContentRenderer implementation
            download_queue: Queue receiving asset references (optional)
            lock: Run lock (defaults to a 300s TTL RunLock)
            max_depth: Block tree depth bound
            timestamp_tolerance: Seconds a remote timestamp must exceed the local
                watermark by to count as changed; 0 means strictly greater
            clock: Returns the current naive UTC datetime
        """
        self.fetch_client = fetch_client
        self.local_store = local_store
        self.renderer = renderer
        self.download_queue = download_queue
        self.lock = lock or RunLock()
        self.max_depth = max_depth
        self.timestamp_tolerance = timedelta(seconds=timestamp_tolerance)
        self._clock = clock

    # ==================== Run ====================

    def run(self, database_id: str, incremental: bool = True, check_deletions: bool = False) -> RunStats:
        """Synchronize one remote database.

        Args:
            database_id: Remote database id
            incremental: Only import records changed since the last successful run
            check_deletions: Delete local records whose remote record is gone

        Returns:
            RunStats of the run, also when some records failed

        Raises:
            SyncInProgressError: A valid run lock is held for this database
            ListingError: The remote database could not be listed
            LockLostError: The lock expired and was taken over mid-run
        """
        owner = self.lock.acquire(database_id)
        if owner is None:
            raise SyncInProgressError(database_id)

        mode = 'incremental' if incremental else 'full'
        stats = RunStats(database_id=database_id, mode=mode)
        run_started = self._clock()
        log_sync_event(database_id, 'started', {'mode': mode, 'check_deletions': check_deletions})

        try:
            state = self._set_state(
                database_id,
                SyncStateRecord.STATUS_LOCKED,
                last_run_started_at=run_started,
                heartbeat=run_started,
                error_message=None,
            )
            watermark = state.last_success_at if state is not None else None

            self._set_state(database_id, SyncStateRecord.STATUS_LISTING)
            records, listing_is_full = self._list_records(database_id, incremental, watermark)
            stats.set_total(len(records))
            self._ensure_lock(database_id, owner)

            self._set_state(database_id, SyncStateRecord.STATUS_IMPORTING)
            for index, record in enumerate(records, 1):
                self._import_record(record, stats, incremental)
                self._ensure_lock(database_id, owner)
                if index % 50 == 0:
                    logger.info(f"[SyncCoordinator] {database_id}: {index}/{len(records)} records processed")

            if check_deletions:
                self._ensure_lock(database_id, owner)
                self._set_state(database_id, SyncStateRecord.STATUS_RECONCILING)
                self._reconcile(database_id, records if listing_is_full else None, stats)

            # A run with failed records keeps the old watermark so they are listed again
            success_at = run_started if stats.failed == 0 else None
            self._finish(database_id, SyncStateRecord.STATUS_DONE, stats, success_at=success_at)
            log_sync_event(database_id, 'finished', stats.summary())
            return stats
        except LockLostError:
            # The state row now belongs to the run holding the lock
            logger.error(f"[SyncCoordinator] Run for {database_id} aborted: run lock lost")
            raise
        except Exception as e:
            logger.error(f"[SyncCoordinator] Run for {database_id} failed: {e}")
            self._finish(database_id, SyncStateRecord.STATUS_FAILED, stats, error=str(e))
            raise
        finally:
            self.lock.release(database_id, owner)

    def _list_records(self, database_id: str, incremental: bool, watermark) -> Tuple[List[RemoteRecord], bool]:
        """List records; returns ``(records, listing_is_full)``."""
        # Listings are always live at run start; the cache only serves reuse within the run
        self.fetch_client.invalidate_database(database_id)

        filter = None
        if incremental and watermark is not None:
            filter = {
                'timestamp': 'last_edited_time',
                'last_edited_time': {'after': to_iso(watermark)},
            }

        try:
            records = self.fetch_client.list_records(database_id, filter=filter)
        except FetchError as e:
            raise ListingError(f"Listing of {database_id} failed: {e}") from e

        logger.info(
            f"[SyncCoordinator] Listed {len(records)} records for {database_id} "
            f"({'changed since ' + to_iso(watermark) if filter else 'full listing'})"
        )
        return records, filter is None

    def _is_changed(self, remote_time, local_time) -> bool:
        if local_time is None or remote_time is None:
            return True
        return remote_time > local_time + self.timestamp_tolerance

    def _import_record(self, record: RemoteRecord, stats: RunStats, incremental: bool) -> None:
        blocks: List[BlockNode] = []
        try:
            local_id = self.local_store.find_by_remote_id(record.id)
            if incremental and local_id is not None:
                if not self._is_changed(record.last_edited_time, self.local_store.get_watermark(local_id)):
                    stats.record_skipped()
                    return

            blocks = self.fetch_client.get_block_tree(
                record.id, self.max_depth, version=to_iso(record.last_edited_time)
            )
            document = self.renderer.render(blocks)
            new_id = self.local_store.upsert(local_id, self._build_fields(record, document))
            self.local_store.set_watermark(new_id, record.last_edited_time)
        except FetchError as e:
            logger.warning(f"[SyncCoordinator] Fetch failed for record {record.id}: {e}")
            stats.record_failure(record.id, str(e), RunStats.TYPE_FETCH_FAILED)
            return
        except Exception as e:
            logger.error(f"[SyncCoordinator] Import failed for record {record.id}: {e}")
            db.session.rollback()
            stats.record_failure(record.id, str(e), RunStats.TYPE_IMPORT_FAILED)
            return

        if local_id is None:
            stats.record_created()
        else:
            stats.record_updated()
        self._enqueue_assets(record, blocks, new_id, stats)

    @staticmethod
    def _build_fields(record: RemoteRecord, document: str) -> Dict:
        return {
            'remote_id': record.id,
            'title': record.title,
            'content': document,
            'properties': record.properties,
            'remote_url': record.url,
            'remote_last_edited': record.last_edited_time,
        }

    def _enqueue_assets(self, record: RemoteRecord, blocks: List[BlockNode], local_id: str, stats: RunStats) -> None:
        if self.download_queue is None:
            return
        try:
            if record.cover_is_hosted and record.cover_url:
                self.download_queue.enqueue(record.cover_url, local_id, is_primary=True)
            for node in hosted_media_blocks(blocks):
                url = file_object_url(node.payload)
                if url:
                    self.download_queue.enqueue(url, local_id, is_primary=False)
        except Exception as e:
            logger.warning(f"[SyncCoordinator] Could not enqueue assets of {record.id}: {e}")
            db.session.rollback()
            stats.add_issue(RunStats.TYPE_ASSET_FAILED, record.id, str(e))

    def _reconcile(self, database_id: str, listed: Optional[List[RemoteRecord]], stats: RunStats) -> None:
        """Delete local records whose remote id is absent from a full listing.

        Args:
            listed: Records of this run's listing if it was unfiltered, else None
                (a separate unfiltered id listing is made)
        """
        if listed is None:
            try:
                remote_ids = set(self.fetch_client.list_record_ids(database_id))
            except FetchError as e:
                logger.warning(f"[SyncCoordinator] Deletion check skipped, full listing failed: {e}")
                stats.add_issue(RunStats.TYPE_RECONCILE_SKIPPED, message=f"full listing failed: {e}")
                return
        else:
            remote_ids = {record.id for record in listed}

        if not remote_ids:
            logger.warning(f"[SyncCoordinator] Deletion check skipped, remote listing of {database_id} is empty")
            stats.add_issue(RunStats.TYPE_RECONCILE_SKIPPED, message='remote listing is empty')
            return

        tracked = self.local_store.tracked_remote_ids()
        for remote_id, local_id in tracked.items():
            if remote_id in remote_ids:
                continue
            try:
                self.local_store.delete(local_id)
                stats.record_deleted()
                logger.info(f"[SyncCoordinator] Deleted local record {local_id} (remote {remote_id} is gone)")
            except Exception as e:
                logger.error(f"[SyncCoordinator] Delete of {local_id} failed: {e}")
                db.session.rollback()
                stats.add_issue(RunStats.TYPE_DELETE_FAILED, remote_id, str(e))

    # ==================== State ====================

    def _set_state(self, database_id: str, status: str, **fields) -> Optional[SyncStateRecord]:
        try:
            state = db.session.get(SyncStateRecord, database_id)
            if state is None:
                state = SyncStateRecord(database_id=database_id)
                db.session.add(state)
            state.status = status
            for name, value in fields.items():
                setattr(state, name, value)
            db.session.commit()
            return state
        except SQLAlchemyError as e:
            logger.warning(f"[SyncCoordinator] Failed to update state of {database_id}: {e}")
            db.session.rollback()
            return None

    def _ensure_lock(self, database_id: str, owner: str) -> None:
        """Refresh the run lock; abort the run if another run has taken it over."""
        if not self._heartbeat(database_id, owner):
            raise LockLostError(database_id)

    def _heartbeat(self, database_id: str, owner: str) -> bool:
        """Refresh the lock and the state heartbeat.

        Returns:
            False if the lock is no longer held by ``owner``
        """
        if not self.lock.refresh(database_id, owner):
            logger.warning(f"[SyncCoordinator] Lost run lock for {database_id}")
            return False
        try:
            SyncStateRecord.query.filter_by(database_id=database_id).update(
                {'heartbeat': self._clock()},
                synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"[SyncCoordinator] Failed to update heartbeat of {database_id}: {e}")
            db.session.rollback()
        return True

    def _finish(self, database_id: str, status: str, stats: RunStats,
                success_at=None, error: Optional[str] = None) -> None:
        fields = {
            'last_run_finished_at': self._clock(),
            'heartbeat': None,
            'last_stats': json.dumps(stats.finalize(), ensure_ascii=False),
            'error_message': error[:1000] if error else None,
        }
        if success_at is not None:
            fields['last_success_at'] = success_at
        elif status == SyncStateRecord.STATUS_DONE and stats.failed:
            fields['error_message'] = f"{stats.failed} record(s) failed"
        self._set_state(database_id, status, **fields)

    def get_state(self, database_id: str) -> Optional[SyncStateRecord]:
        return db.session.get(SyncStateRecord, database_id)

    def cleanup_stale_runs(self, timeout_seconds: Optional[int] = None) -> int:
        """Mark runs without a recent heartbeat as failed and drop expired locks.

        Args:
            timeout_seconds: Heartbeat timeout, defaults to the lock TTL

        Returns:
            Number of runs marked failed
        """
        if timeout_seconds is None:
            timeout_seconds = self.lock.ttl_seconds

        try:
            cutoff = self._clock() - timedelta(seconds=timeout_seconds)
            stale = SyncStateRecord.query.filter(
                SyncStateRecord.status.in_(SyncStateRecord.ACTIVE_STATUSES),
                db.or_(
                    SyncStateRecord.heartbeat.is_(None),
                    SyncStateRecord.heartbeat < cutoff
                )
            ).all()

            for state in stale:
                logger.warning(
                    f"[StaleRunCleanup] Run for {state.database_id} stuck in '{state.status}', marking as failed"
                )
                state.status = SyncStateRecord.STATUS_FAILED
                state.error_message = 'Sync run terminated abnormally (heartbeat timeout)'
                state.heartbeat = None

            if stale:
                db.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[StaleRunCleanup] Cleanup failed: {e}")
            db.session.rollback()
            return 0

        self.lock.cleanup_stale()
        return len(stale)

    # ==================== Background ====================

    def start_background(self, app, database_id: str, incremental: bool = True,
                         check_deletions: bool = False) -> threading.Thread:
        """Run a sync in a daemon thread with its own application context."""
        thread = threading.Thread(
            target=self._run_in_context,
            args=(app, database_id, incremental, check_deletions),
            name=f'sync_{database_id[:8]}'
        )
        thread.daemon = True
        thread.start()
        logger.info(f"Sync task started in background: database={database_id}, incremental={incremental}")
        return thread

    def _run_in_context(self, app, database_id: str, incremental: bool, check_deletions: bool) -> None:
        with app.app_context():
            try:
                self.run(database_id, incremental=incremental, check_deletions=check_deletions)
            except SyncInProgressError as e:
                logger.info(f"[SyncCoordinator] {e}")
            except (ListingError, LockLostError) as e:
                logger.error(f"[SyncCoordinator] Background sync of {database_id} aborted: {e}")
            except Exception as e:
                logger.error(f"[FatalError] Background sync of {database_id} crashed: {e}")
