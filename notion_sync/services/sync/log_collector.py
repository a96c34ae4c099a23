"""
Run Stats - Statistics and issue log of one sync run

Counters only ever grow during a run. For processed records
``created + updated + skipped + failed == total`` holds once the run is
done; ``deleted`` is counted separately.
"""
import threading
from typing import Any, Dict, List, Optional

from ...utils.logger import get_logger
from ...utils.timeutils import to_iso, utc_now

logger = get_logger('run_stats')


class RunStats:
    """Accumulates the outcome of a sync run.

    Example:
        >>> stats = RunStats(database_id='db1', mode='incremental')
        >>> stats.set_total(3)
        >>> stats.record_created()
        >>> stats.record_failure('page-1', 'timeout', RunStats.TYPE_FETCH_FAILED)
        >>> stats.record_skipped()
        >>> stats.is_consistent()
        True
    """

    # Issue type constants
    TYPE_FETCH_FAILED = 'fetch_failed'            # Block tree could not be fetched
    TYPE_IMPORT_FAILED = 'import_failed'          # Renderer or local store raised
    TYPE_DELETE_FAILED = 'delete_failed'          # Reconciliation delete raised
    TYPE_ASSET_FAILED = 'asset_failed'            # Media reference could not be enqueued
    TYPE_RECONCILE_SKIPPED = 'reconcile_skipped'  # Deletion check skipped for safety

    MAX_ISSUES = 500
    MAX_MESSAGE_LENGTH = 500

    def __init__(self, database_id: str = '', mode: str = 'incremental'):
        self.database_id = database_id
        self.mode = mode
        self.start_time = utc_now()
        self.end_time = None
        self.total = 0
        self.created = 0
        self.updated = 0
        self.skipped = 0
        self.deleted = 0
        self.failed = 0
        self.errors: List[str] = []
        self.issues: List[Dict] = []
        self._lock = threading.Lock()

    def set_total(self, total: int) -> None:
        with self._lock:
            self.total = total

    def record_created(self) -> None:
        with self._lock:
            self.created += 1

    def record_updated(self) -> None:
        with self._lock:
            self.updated += 1

    def record_skipped(self) -> None:
        with self._lock:
            self.skipped += 1

    def record_deleted(self) -> None:
        with self._lock:
            self.deleted += 1

    def record_failure(self, record_id: Optional[str], message: str,
                       issue_type: str = TYPE_IMPORT_FAILED) -> None:
        """Count a failed record and log the reason."""
        with self._lock:
            self.failed += 1
        self.add_issue(issue_type, record_id, message)

    def add_issue(
        self,
        issue_type: str,
        record_id: Optional[str] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append an issue; the message also lands in ``errors``.

        Args:
            issue_type: One of the TYPE_* constants
            record_id: Related remote record id
            message: Error message (truncated to MAX_MESSAGE_LENGTH)
            extra: Additional context
        """
        issue = {
            'type': issue_type,
            'time': to_iso(utc_now()),
        }
        if record_id:
            issue['record_id'] = record_id
        if message:
            issue['message'] = message[:self.MAX_MESSAGE_LENGTH]
        if extra:
            issue['extra'] = extra

        with self._lock:
            if len(self.issues) < self.MAX_ISSUES:
                self.issues.append(issue)
            if message:
                prefix = f"{record_id}: " if record_id else ''
                self.errors.append(prefix + message[:self.MAX_MESSAGE_LENGTH])

    def is_consistent(self) -> bool:
        with self._lock:
            return self.created + self.updated + self.skipped + self.failed == self.total

    def has_problems(self) -> bool:
        with self._lock:
            return self.failed > 0 or bool(self.issues)

    def summary(self) -> Dict:
        with self._lock:
            return {
                'total': self.total,
                'created': self.created,
                'updated': self.updated,
                'skipped': self.skipped,
                'deleted': self.deleted,
                'failed': self.failed,
            }

    def finalize(self) -> Dict:
        """Stamp the end time and return the full log.

        Returns:
            Dictionary with mode, times, summary, errors and issues
        """
        self.end_time = utc_now()
        return self.to_dict(include_issues=True)

    def to_dict(self, include_issues: bool = False) -> Dict:
        data = {
            'database_id': self.database_id,
            'mode': self.mode,
            'start_time': to_iso(self.start_time),
            'end_time': to_iso(self.end_time),
            'summary': self.summary(),
        }
        with self._lock:
            data['errors'] = list(self.errors)
            if include_issues:
                data['issues'] = list(self.issues)
        return data

    def __repr__(self):
        s = self.summary()
        return (
            f"<RunStats total={s['total']} created={s['created']} updated={s['updated']} "
            f"skipped={s['skipped']} deleted={s['deleted']} failed={s['failed']}>"
        )
