"""
Sync Coordinator Tests

Run lifecycle, incremental change detection, deletion reconciliation and
failure isolation, with the remote side and the local store faked.
"""
from datetime import datetime, timedelta

import pytest

from conftest import DATABASE_ID, FakeFetchClient, FixedNow, RecordingQueue, make_record

T0 = datetime(2024, 1, 1, 10, 0, 0)


@pytest.fixture
def make_coordinator(app, local_store):
    def factory(fetch_client, queue=None, clock=None, **kwargs):
        from notion_sync.services.stores import MarkdownRenderer
        from notion_sync.services.sync.run_lock import RunLock
        from notion_sync.services.sync_service import SyncCoordinator

        options = dict(download_queue=queue, lock=RunLock(ttl_seconds=300))
        if clock is not None:
            options['clock'] = clock
        options.update(kwargs)
        return SyncCoordinator(fetch_client, local_store, MarkdownRenderer(), **options)

    return factory


class TestRunLock:
    """Single-writer guarantee per database."""

    def test_contended_run_raises_without_side_effects(self, make_coordinator, local_store):
        from notion_sync.services.sync.errors import SyncInProgressError

        fetch = FakeFetchClient(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch)
        owner = coordinator.lock.acquire(DATABASE_ID)
        assert owner

        with pytest.raises(SyncInProgressError):
            coordinator.run(DATABASE_ID)

        assert fetch.list_calls == []
        assert local_store.pages == {}

    def test_nested_run_rejected(self, make_coordinator, local_store):
        """A second run started while the first one is listing is rejected."""
        from notion_sync.services.sync.errors import SyncInProgressError

        class ReentrantFetch(FakeFetchClient):
            def list_records(self, database_id, filter=None, sorts=None):
                try:
                    coordinator.run(database_id)
                except SyncInProgressError as e:
                    self.nested_error = e
                return super().list_records(database_id, filter, sorts)

        fetch = ReentrantFetch(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch)

        stats = coordinator.run(DATABASE_ID)

        assert isinstance(fetch.nested_error, SyncInProgressError)
        assert stats.created == 1
        assert local_store.upserts == ['a']

    def test_lock_released_after_run(self, make_coordinator):
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0)]))

        coordinator.run(DATABASE_ID)

        assert coordinator.lock.is_locked(DATABASE_ID) is False

    def test_lock_released_on_unexpected_error(self, make_coordinator, local_store):
        from notion_sync.models import SyncStateRecord

        def broken():
            raise RuntimeError('store offline')

        local_store.tracked_remote_ids = broken
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0)]))

        with pytest.raises(RuntimeError):
            coordinator.run(DATABASE_ID, incremental=False, check_deletions=True)

        assert coordinator.lock.is_locked(DATABASE_ID) is False
        state = coordinator.get_state(DATABASE_ID)
        assert state.status == SyncStateRecord.STATUS_FAILED
        assert 'store offline' in state.error_message

    def test_listing_failure(self, make_coordinator, local_store):
        from notion_sync.models import SyncStateRecord
        from notion_sync.services.sync.errors import FetchError, ListingError

        fetch = FakeFetchClient()
        fetch.list_error = FetchError('POST databases/x/query failed')
        coordinator = make_coordinator(fetch)

        with pytest.raises(ListingError):
            coordinator.run(DATABASE_ID)

        assert coordinator.lock.is_locked(DATABASE_ID) is False
        assert coordinator.get_state(DATABASE_ID).status == SyncStateRecord.STATUS_FAILED
        assert local_store.upserts == []


class TestIncremental:
    """Change detection against the per-record watermark."""

    def test_strictly_newer_records_imported(self, make_coordinator, local_store):
        """Equal timestamps are unchanged; newer ones and unknown records are imported."""
        local_store.seed('same', watermark=T0)
        local_store.seed('newer', watermark=T0)
        fetch = FakeFetchClient(records=[
            make_record('same', T0),
            make_record('newer', T0 + timedelta(seconds=1)),
            make_record('new', T0),
        ])
        coordinator = make_coordinator(fetch)

        stats = coordinator.run(DATABASE_ID, incremental=True)

        assert stats.summary() == {
            'total': 3, 'created': 1, 'updated': 1, 'skipped': 1, 'deleted': 0, 'failed': 0,
        }
        assert stats.is_consistent()
        assert fetch.tree_calls == ['newer', 'new']
        assert sorted(local_store.upserts) == ['new', 'newer']

    def test_older_remote_skipped(self, make_coordinator, local_store):
        local_store.seed('a', watermark=T0)
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0 - timedelta(hours=1))]))

        stats = coordinator.run(DATABASE_ID)

        assert stats.skipped == 1
        assert local_store.upserts == []

    def test_missing_watermark_imports(self, make_coordinator, local_store):
        local_store.seed('a', watermark=None)
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0)]))

        assert coordinator.run(DATABASE_ID).updated == 1

    def test_full_mode_reimports_everything(self, make_coordinator, local_store):
        local_store.seed('a', watermark=T0)
        fetch = FakeFetchClient(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch)

        stats = coordinator.run(DATABASE_ID, incremental=False)

        assert stats.updated == 1
        assert stats.skipped == 0
        assert fetch.tree_calls == ['a']
        assert stats.mode == 'full'

    def test_watermark_advanced_on_import(self, make_coordinator, local_store):
        edited = T0 + timedelta(minutes=5)
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', edited)]))

        coordinator.run(DATABASE_ID)

        local_id = local_store.find_by_remote_id('a')
        assert local_store.get_watermark(local_id) == edited

    def test_tolerance(self, make_coordinator, local_store):
        local_store.seed('a', watermark=T0)
        fetch = FakeFetchClient(records=[make_record('a', T0 + timedelta(milliseconds=500))])
        coordinator = make_coordinator(fetch, timestamp_tolerance=1.0)

        assert coordinator.run(DATABASE_ID).skipped == 1

    def test_imported_fields(self, make_coordinator, local_store):
        from notion_sync.services.sync.remote_objects import BlockNode

        tree = [BlockNode(id='b1', type='heading_1', payload={'rich_text': [{'plain_text': 'Intro'}]})]
        fetch = FakeFetchClient(records=[make_record('a', T0, title='Doc')], trees={'a': tree})
        coordinator = make_coordinator(fetch)

        coordinator.run(DATABASE_ID)

        fields = local_store.pages[local_store.find_by_remote_id('a')]
        assert fields['title'] == 'Doc'
        assert fields['content'] == '# Intro'
        assert fields['remote_last_edited'] == T0


class TestRunWatermark:
    """Listing filter derived from the last successful run."""

    def test_first_run_lists_everything_then_filters(self, make_coordinator):
        clock = FixedNow(datetime(2024, 2, 1, 9, 0, 0))
        fetch = FakeFetchClient(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch, clock=clock)

        coordinator.run(DATABASE_ID)
        coordinator.run(DATABASE_ID)

        assert fetch.list_calls[0] is None
        assert fetch.list_calls[1] == {
            'timestamp': 'last_edited_time',
            'last_edited_time': {'after': '2024-02-01T09:00:00.000Z'},
        }
        assert coordinator.get_state(DATABASE_ID).last_success_at == clock.now

    def test_listing_cache_invalidated_each_run(self, make_coordinator):
        fetch = FakeFetchClient(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch)

        coordinator.run(DATABASE_ID)
        coordinator.run(DATABASE_ID)

        assert fetch.invalidated == [DATABASE_ID, DATABASE_ID]

    def test_failed_record_keeps_previous_watermark(self, make_coordinator):
        from notion_sync.services.sync.errors import FetchError

        fetch = FakeFetchClient(records=[make_record('a', T0), make_record('b', T0)])
        fetch.fail_trees['b'] = FetchError('GET blocks/b/children failed')
        coordinator = make_coordinator(fetch)

        coordinator.run(DATABASE_ID)
        state = coordinator.get_state(DATABASE_ID)
        assert state.last_success_at is None
        assert state.error_message == '1 record(s) failed'

        del fetch.fail_trees['b']
        coordinator.run(DATABASE_ID)

        assert fetch.list_calls == [None, None]
        assert coordinator.get_state(DATABASE_ID).last_success_at is not None

    def test_full_run_ignores_run_watermark(self, make_coordinator):
        fetch = FakeFetchClient(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch)

        coordinator.run(DATABASE_ID)
        coordinator.run(DATABASE_ID, incremental=False)

        assert fetch.list_calls[1] is None


class TestFailureIsolation:
    """Per-record failures never abort the run."""

    def test_fetch_failure_counted(self, make_coordinator, local_store):
        from notion_sync.services.sync.concurrency import ErrorKind, RequestError
        from notion_sync.services.sync.errors import BlockTreeError, FetchError

        branch_error = RequestError(kind=ErrorKind.SERVER, message='bad gateway', status_code=502, retryable=True)
        fetch = FakeFetchClient(records=[make_record(r, T0) for r in ('a', 'b', 'c')])
        fetch.fail_trees['b'] = BlockTreeError('b', [('b-child', branch_error)])
        coordinator = make_coordinator(fetch)

        stats = coordinator.run(DATABASE_ID)

        assert stats.created == 2
        assert stats.failed == 1
        assert stats.is_consistent()
        assert stats.issues[0]['type'] == 'fetch_failed'
        assert stats.issues[0]['record_id'] == 'b'
        assert isinstance(fetch.fail_trees['b'], FetchError)
        assert local_store.find_by_remote_id('b') is None

    def test_store_failure_counted(self, make_coordinator, local_store):
        local_store.fail_upsert.add('b')
        fetch = FakeFetchClient(records=[make_record(r, T0) for r in ('a', 'b', 'c')])
        coordinator = make_coordinator(fetch)

        stats = coordinator.run(DATABASE_ID)

        assert stats.summary()['created'] == 2
        assert stats.failed == 1
        assert stats.issues[0]['type'] == 'import_failed'
        assert 'rejected' in stats.errors[0]

    def test_run_state_persisted(self, make_coordinator):
        from notion_sync.models import SyncStateRecord

        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0)]))

        coordinator.run(DATABASE_ID)

        state = coordinator.get_state(DATABASE_ID)
        assert state.status == SyncStateRecord.STATUS_DONE
        assert state.heartbeat is None
        assert state.get_last_stats()['summary']['created'] == 1


class TestReconciliation:
    """Deletion of local records whose remote record is gone."""

    def test_deletes_missing_records(self, make_coordinator, local_store):
        for remote_id in ('a', 'b', 'c', 'd', 'e'):
            local_store.seed(remote_id, watermark=T0)
        fetch = FakeFetchClient(records=[make_record(r, T0) for r in ('a', 'b', 'c')])
        coordinator = make_coordinator(fetch)

        stats = coordinator.run(DATABASE_ID, incremental=False, check_deletions=True)

        assert stats.deleted == 2
        assert sorted(local_store.tracked_remote_ids()) == ['a', 'b', 'c']
        # Full listing reused, no second listing
        assert fetch.id_list_calls == 0

    def test_no_deletion_without_flag(self, make_coordinator, local_store):
        local_store.seed('gone', watermark=T0)
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0)]))

        stats = coordinator.run(DATABASE_ID, check_deletions=False)

        assert stats.deleted == 0
        assert local_store.find_by_remote_id('gone') is not None

    def test_filtered_listing_triggers_full_id_listing(self, make_coordinator, local_store):
        fetch = FakeFetchClient(records=[make_record('a', T0)])
        coordinator = make_coordinator(fetch)
        coordinator.run(DATABASE_ID)
        local_store.seed('gone', watermark=T0)

        stats = coordinator.run(DATABASE_ID, incremental=True, check_deletions=True)

        assert fetch.list_calls[1] is not None
        assert fetch.id_list_calls == 1
        assert stats.deleted == 1
        assert local_store.find_by_remote_id('gone') is None
        assert local_store.find_by_remote_id('a') is not None

    def test_empty_listing_skips_deletion(self, make_coordinator, local_store):
        local_store.seed('a', watermark=T0)
        local_store.seed('b', watermark=T0)
        coordinator = make_coordinator(FakeFetchClient(records=[]))

        stats = coordinator.run(DATABASE_ID, incremental=False, check_deletions=True)

        assert stats.deleted == 0
        assert len(local_store.pages) == 2
        assert stats.issues[0]['type'] == 'reconcile_skipped'

    def test_protected_records_kept(self, make_coordinator, local_store):
        local_store.seed('a', watermark=T0)
        local_store.seed('pinned', watermark=T0, protected=True)
        coordinator = make_coordinator(FakeFetchClient(records=[make_record('a', T0)]))

        stats = coordinator.run(DATABASE_ID, incremental=False, check_deletions=True)

        assert stats.deleted == 0
        assert local_store.find_by_remote_id('pinned') is not None


class TestAssets:
    def test_hosted_assets_enqueued(self, make_coordinator, local_store):
        from notion_sync.services.sync.remote_objects import BlockNode

        cover = {'type': 'file', 'file': {'url': 'https://s3.test/cover.png?sig=1'}}
        tree = [
            BlockNode(id='img', type='image', payload={'type': 'file', 'file': {'url': 'https://s3.test/i.png?s=2'}}),
            BlockNode(id='ext', type='image', payload={'type': 'external', 'external': {'url': 'https://cdn.test/e.png'}}),
        ]
        queue = RecordingQueue()
        fetch = FakeFetchClient(records=[make_record('a', T0, cover=cover)], trees={'a': tree})
        coordinator = make_coordinator(fetch, queue=queue)

        coordinator.run(DATABASE_ID)

        local_id = local_store.find_by_remote_id('a')
        assert queue.enqueued == [
            ('https://s3.test/cover.png?sig=1', local_id, True),
            ('https://s3.test/i.png?s=2', local_id, False),
        ]

    def test_external_cover_not_enqueued(self, make_coordinator):
        cover = {'type': 'external', 'external': {'url': 'https://cdn.test/c.png'}}
        queue = RecordingQueue()
        coordinator = make_coordinator(
            FakeFetchClient(records=[make_record('a', T0, cover=cover)]), queue=queue
        )

        coordinator.run(DATABASE_ID)

        assert queue.enqueued == []


class TestStaleRuns:
    def test_cleanup_marks_stale_runs_failed(self, make_coordinator):
        from notion_sync.extensions import db
        from notion_sync.models import SyncStateRecord

        now = datetime(2024, 3, 1, 12, 0, 0)
        coordinator = make_coordinator(FakeFetchClient(), clock=FixedNow(now))
        db.session.add(SyncStateRecord(
            database_id=DATABASE_ID,
            status=SyncStateRecord.STATUS_IMPORTING,
            heartbeat=now - timedelta(minutes=30),
        ))
        db.session.add(SyncStateRecord(
            database_id='fresh',
            status=SyncStateRecord.STATUS_IMPORTING,
            heartbeat=now - timedelta(seconds=10),
        ))
        db.session.commit()

        assert coordinator.cleanup_stale_runs(timeout_seconds=300) == 1
        assert coordinator.get_state(DATABASE_ID).status == SyncStateRecord.STATUS_FAILED
        assert coordinator.get_state('fresh').status == SyncStateRecord.STATUS_IMPORTING


class TestLockLoss:
    """A run whose lock was taken over stops writing."""

    def make_takeover_fetch(self, records, take_over_on):
        """Fetch client that lets the lock expire and hands it to another run."""
        from notion_sync.services.sync.run_lock import RunLock

        clock = FixedNow(T0)
        lock = RunLock(ttl_seconds=300, clock=clock)

        class TakeoverFetch(FakeFetchClient):
            def take_over(self):
                clock.now += timedelta(seconds=400)
                self.other_owner = RunLock(ttl_seconds=300, clock=clock).acquire(DATABASE_ID)

            def list_records(self, database_id, filter=None, sorts=None):
                result = super().list_records(database_id, filter, sorts)
                if take_over_on == 'listing':
                    self.take_over()
                return result

            def get_block_tree(self, root_id, max_depth=None, version=None):
                if root_id == take_over_on:
                    self.take_over()
                return super().get_block_tree(root_id, max_depth, version)

        return TakeoverFetch(records=records), lock

    def test_run_aborts_after_takeover(self, make_coordinator, local_store):
        from notion_sync.services.sync.errors import LockLostError

        records = [make_record(r, T0) for r in ('a', 'b', 'c')]
        fetch, lock = self.make_takeover_fetch(records, take_over_on='a')
        coordinator = make_coordinator(fetch, lock=lock)

        with pytest.raises(LockLostError):
            coordinator.run(DATABASE_ID)

        assert fetch.other_owner is not None
        assert local_store.upserts == ['a']
        # The new holder keeps its lock
        assert lock.is_locked(DATABASE_ID) is True

    def test_takeover_during_listing_imports_nothing(self, make_coordinator, local_store):
        from notion_sync.services.sync.errors import LockLostError

        fetch, lock = self.make_takeover_fetch([make_record('a', T0)], take_over_on='listing')
        coordinator = make_coordinator(fetch, lock=lock)

        with pytest.raises(LockLostError):
            coordinator.run(DATABASE_ID)

        assert fetch.tree_calls == []
        assert local_store.upserts == []

    def test_no_deletions_after_takeover(self, make_coordinator, local_store):
        from notion_sync.services.sync.errors import LockLostError

        local_store.seed('gone', watermark=T0)
        fetch, lock = self.make_takeover_fetch([make_record('a', T0)], take_over_on='a')
        coordinator = make_coordinator(fetch, lock=lock)

        with pytest.raises(LockLostError):
            coordinator.run(DATABASE_ID, incremental=False, check_deletions=True)

        assert local_store.find_by_remote_id('gone') is not None

    def test_expired_lock_without_takeover_is_refreshed(self, make_coordinator, local_store):
        from notion_sync.services.sync.run_lock import RunLock

        clock = FixedNow(T0)

        class SlowFetch(FakeFetchClient):
            def get_block_tree(self, root_id, max_depth=None, version=None):
                clock.now += timedelta(seconds=400)
                return super().get_block_tree(root_id, max_depth, version)

        fetch = SlowFetch(records=[make_record('a', T0), make_record('b', T0)])
        coordinator = make_coordinator(fetch, lock=RunLock(ttl_seconds=300, clock=clock))

        stats = coordinator.run(DATABASE_ID)

        assert stats.created == 2
