"""
Run Lock - Database-backed mutual exclusion for sync runs

One row per scope in ``sync_locks``; the primary key guarantees at most one
holder. A lock is valid while ``now - acquired_at < ttl``. A stale lock (its
holder crashed or stopped refreshing) is taken over by the next acquirer with
a conditional update, so two acquirers can never both win the takeover.
"""
import hashlib
import uuid
from contextlib import contextmanager
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...extensions import db
from ...models import SyncLockRecord
from ...utils.logger import get_logger
from ...utils.timeutils import utc_now
from .errors import SyncInProgressError

logger = get_logger('run_lock')


class RunLock:
    """Per-scope run lock with TTL.

    Must be used inside a Flask application context.

    Example:
        >>> lock = RunLock(ttl_seconds=300)
        >>> owner = lock.acquire('database-id')
        >>> if owner:
        ...     try:
        ...         lock.refresh('database-id', owner)
        ...     finally:
        ...         lock.release('database-id', owner)
    """

    KEY_PREFIX = 'notion_sync_lock_'

    def __init__(self, ttl_seconds: int = 300, clock: Callable = utc_now):
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def scope_key(self, scope: str) -> str:
        return self.KEY_PREFIX + hashlib.md5(scope.encode('utf-8')).hexdigest()

    def acquire(self, scope: str) -> Optional[str]:
        """Try to take the lock.

        Returns:
            Owner token if acquired, None if a valid lock is held by someone else
        """
        key = self.scope_key(scope)
        now = self._clock()
        owner = uuid.uuid4().hex

        try:
            existing = db.session.get(SyncLockRecord, key)
            if existing is not None:
                if existing.is_valid(now):
                    logger.info(f"[SyncLock] Lock for {scope} held by {existing.owner}, skipping")
                    return None

                stale_owner = existing.owner
                taken = SyncLockRecord.query.filter_by(
                    scope_key=key,
                    owner=stale_owner,
                    acquired_at=existing.acquired_at,
                ).update(
                    {'owner': owner, 'acquired_at': now, 'ttl_seconds': self.ttl_seconds},
                    synchronize_session=False
                )
                db.session.commit()
                if taken != 1:
                    return None
                logger.warning(f"[SyncLock] Took over stale lock for {scope} from {stale_owner}")
            else:
                db.session.add(SyncLockRecord(
                    scope_key=key,
                    owner=owner,
                    acquired_at=now,
                    ttl_seconds=self.ttl_seconds,
                ))
                db.session.commit()
        except IntegrityError:
            # Another process inserted the row first
            db.session.rollback()
            return None

        logger.debug(f"[SyncLock] Acquired lock for {scope} ({owner})")
        return owner

    def refresh(self, scope: str, owner: str) -> bool:
        """Extend a held lock by resetting acquired_at.

        Returns:
            False if the lock is no longer owned by ``owner``
        """
        try:
            updated = SyncLockRecord.query.filter_by(scope_key=self.scope_key(scope), owner=owner).update(
                {'acquired_at': self._clock()},
                synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"[SyncLock] Failed to refresh lock for {scope}: {e}")
            db.session.rollback()
            return False
        return updated == 1

    def release(self, scope: str, owner: str) -> bool:
        """Release the lock if still owned by ``owner``."""
        try:
            deleted = SyncLockRecord.query.filter_by(scope_key=self.scope_key(scope), owner=owner).delete(
                synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[SyncLock] Failed to release lock for {scope}: {e}")
            db.session.rollback()
            return False

        if deleted:
            logger.debug(f"[SyncLock] Released lock for {scope}")
        else:
            logger.warning(f"[SyncLock] Lock for {scope} was no longer held by {owner}")
        return deleted == 1

    def is_locked(self, scope: str) -> bool:
        record = SyncLockRecord.query.filter_by(scope_key=self.scope_key(scope)).first()
        return record is not None and record.is_valid(self._clock())

    def cleanup_stale(self) -> int:
        """Delete every expired lock row. Returns the number removed."""
        now = self._clock()
        try:
            stale = [record for record in SyncLockRecord.query.all() if not record.is_valid(now)]
            for record in stale:
                db.session.delete(record)
            if stale:
                db.session.commit()
                logger.info(f"[SyncLock] Removed {len(stale)} stale locks")
            return len(stale)
        except SQLAlchemyError as e:
            logger.error(f"[SyncLock] Stale lock cleanup failed: {e}")
            db.session.rollback()
            return 0

    @contextmanager
    def hold(self, scope: str):
        """Hold the lock for the duration of a block.

        Raises:
            SyncInProgressError: If a valid lock is already held
        """
        owner = self.acquire(scope)
        if owner is None:
            raise SyncInProgressError(scope)
        try:
            yield owner
        finally:
            self.release(scope, owner)
