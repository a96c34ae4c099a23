"""
Per-database sync state model
"""
import json
from ..extensions import db
from ..utils.timeutils import utc_now


class SyncStateRecord(db.Model):
    """Run status, heartbeat and run watermark of one remote database"""
    __tablename__ = 'sync_states'

    # Run states
    STATUS_IDLE = 'idle'
    STATUS_LOCKED = 'locked'
    STATUS_LISTING = 'listing'
    STATUS_IMPORTING = 'importing'
    STATUS_RECONCILING = 'reconciling'
    STATUS_DONE = 'done'
    STATUS_FAILED = 'failed'

    ACTIVE_STATUSES = (STATUS_LOCKED, STATUS_LISTING, STATUS_IMPORTING, STATUS_RECONCILING)

    database_id = db.Column(db.String(64), primary_key=True)
    status = db.Column(db.String(32), default=STATUS_IDLE, index=True)
    last_run_started_at = db.Column(db.DateTime)
    last_run_finished_at = db.Column(db.DateTime)
    # Start time of the last successful run; incremental listings ask for records edited after it
    last_success_at = db.Column(db.DateTime)
    heartbeat = db.Column(db.DateTime)
    error_message = db.Column(db.Text)

    # RunStats of the last run plus its issues (JSON)
    # {"mode": "incremental", "start_time": "...", "end_time": "...",
    #  "summary": {"total": 10, "created": 2, ...}, "issues": [...]}
    last_stats = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in self.ACTIVE_STATUSES

    def get_last_stats(self):
        if not self.last_stats:
            return None
        try:
            return json.loads(self.last_stats)
        except (json.JSONDecodeError, TypeError):
            return None

    def to_dict(self, include_issues=False):
        stats = self.get_last_stats()
        if stats and not include_issues:
            stats = dict(stats)
            stats['issues_count'] = len(stats.pop('issues', []) or [])

        return {
            'database_id': self.database_id,
            'status': self.status,
            'last_run_started_at': self.last_run_started_at.isoformat() + 'Z' if self.last_run_started_at else None,
            'last_run_finished_at': self.last_run_finished_at.isoformat() + 'Z' if self.last_run_finished_at else None,
            'last_success_at': self.last_success_at.isoformat() + 'Z' if self.last_success_at else None,
            'heartbeat': self.heartbeat.isoformat() + 'Z' if self.heartbeat else None,
            'error_message': self.error_message,
            'last_stats': stats,
        }

    def __repr__(self):
        return f'<SyncStateRecord {self.database_id} {self.status}>'
