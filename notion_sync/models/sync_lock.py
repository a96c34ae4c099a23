"""
Run lock model
"""
from datetime import timedelta
from ..extensions import db
from ..utils.timeutils import utc_now


class SyncLockRecord(db.Model):
    """One row per locked scope (remote database id); the primary key enforces a single holder"""
    __tablename__ = 'sync_locks'

    scope_key = db.Column(db.String(128), primary_key=True)
    owner = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    ttl_seconds = db.Column(db.Integer, nullable=False, default=300)

    def is_valid(self, now=None) -> bool:
        """A lock is valid while now - acquired_at < ttl"""
        now = now or utc_now()
        return now - self.acquired_at < timedelta(seconds=self.ttl_seconds)

    def to_dict(self):
        return {
            'scope_key': self.scope_key,
            'owner': self.owner,
            'acquired_at': self.acquired_at.isoformat() + 'Z' if self.acquired_at else None,
            'ttl_seconds': self.ttl_seconds,
            'valid': self.is_valid(),
        }

    def __repr__(self):
        return f'<SyncLockRecord {self.scope_key} owner={self.owner}>'
