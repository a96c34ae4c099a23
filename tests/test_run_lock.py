"""
Run Lock Tests

Acquisition, stale takeover, refresh and release of the database-backed
run lock.
"""
from datetime import datetime, timedelta

import pytest

from conftest import FixedNow


@pytest.fixture
def clock():
    return FixedNow(datetime(2024, 5, 1, 8, 0, 0))


@pytest.fixture
def lock(app, clock):
    from notion_sync.services.sync.run_lock import RunLock
    return RunLock(ttl_seconds=300, clock=clock)


class TestRunLock:
    def test_scope_key_prefixed_hash(self, lock):
        key = lock.scope_key('db1')

        assert key.startswith('notion_sync_lock_')
        assert len(key) == len('notion_sync_lock_') + 32
        assert lock.scope_key('db1') == key
        assert lock.scope_key('db2') != key

    def test_acquire_and_release(self, lock):
        owner = lock.acquire('db1')

        assert owner
        assert lock.is_locked('db1') is True
        assert lock.acquire('db1') is None

        assert lock.release('db1', owner) is True
        assert lock.is_locked('db1') is False
        assert lock.acquire('db1') is not None

    def test_scopes_are_independent(self, lock):
        assert lock.acquire('db1')
        assert lock.acquire('db2')

    def test_release_by_other_owner_ignored(self, lock):
        owner = lock.acquire('db1')

        assert lock.release('db1', 'someone-else') is False
        assert lock.is_locked('db1') is True
        assert lock.release('db1', owner) is True

    def test_lock_expires_after_ttl(self, lock, clock):
        lock.acquire('db1')

        clock.now += timedelta(seconds=299)
        assert lock.is_locked('db1') is True

        clock.now += timedelta(seconds=1)
        assert lock.is_locked('db1') is False

    def test_stale_lock_taken_over(self, lock, clock):
        """After the TTL a new acquirer wins and the old holder loses ownership."""
        old_owner = lock.acquire('db1')
        clock.now += timedelta(seconds=400)

        new_owner = lock.acquire('db1')

        assert new_owner and new_owner != old_owner
        assert lock.refresh('db1', old_owner) is False
        assert lock.release('db1', old_owner) is False
        assert lock.is_locked('db1') is True

    def test_refresh_extends_lock(self, lock, clock):
        owner = lock.acquire('db1')

        clock.now += timedelta(seconds=200)
        assert lock.refresh('db1', owner) is True
        clock.now += timedelta(seconds=200)

        assert lock.is_locked('db1') is True
        assert lock.acquire('db1') is None

    def test_cleanup_stale(self, lock, clock):
        lock.acquire('db1')
        clock.now += timedelta(seconds=10)
        lock.acquire('db2')
        clock.now += timedelta(seconds=295)

        assert lock.cleanup_stale() == 1
        assert lock.is_locked('db2') is True

    def test_hold_context_manager(self, lock):
        from notion_sync.services.sync.errors import SyncInProgressError

        with lock.hold('db1') as owner:
            assert owner
            with pytest.raises(SyncInProgressError):
                with lock.hold('db1'):
                    pass

        assert lock.is_locked('db1') is False

    def test_two_instances_share_the_lock(self, lock, clock):
        """Mutual exclusion holds across lock instances, not just within one."""
        from notion_sync.services.sync.run_lock import RunLock

        other = RunLock(ttl_seconds=300, clock=clock)

        assert lock.acquire('db1')
        assert other.acquire('db1') is None
