"""
Asset download task model
"""
from ..extensions import db
from ..utils.timeutils import utc_now


class DownloadTask(db.Model):
    """A persisted asset download, consumed by the download queue"""
    __tablename__ = 'download_tasks'

    __table_args__ = (
        db.Index('ix_download_tasks_status_next', 'status', 'next_attempt_at'),
    )

    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_DONE = 'done'
    STATUS_FAILED = 'failed'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    url = db.Column(db.Text, nullable=False)
    # Source URL without query string or fragment, used for de-duplication
    canonical_url = db.Column(db.String(1024), nullable=False, index=True)
    target_record_id = db.Column(db.String(64), nullable=False, index=True)
    is_primary_asset = db.Column(db.Boolean, default=False)
    caption = db.Column(db.String(512))

    status = db.Column(db.String(16), default=STATUS_PENDING, nullable=False)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    next_attempt_at = db.Column(db.DateTime, default=utc_now)
    started_at = db.Column(db.DateTime)
    last_error = db.Column(db.Text)
    asset_id = db.Column(db.String(64))
    asset_url = db.Column(db.String(1024))

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (self.STATUS_DONE, self.STATUS_FAILED)

    def to_dict(self):
        return {
            'id': self.id,
            'url': self.url,
            'canonical_url': self.canonical_url,
            'target_record_id': self.target_record_id,
            'is_primary_asset': self.is_primary_asset,
            'status': self.status,
            'retry_count': self.retry_count,
            'next_attempt_at': self.next_attempt_at.isoformat() + 'Z' if self.next_attempt_at else None,
            'last_error': self.last_error,
            'asset_id': self.asset_id,
            'asset_url': self.asset_url,
            'created_at': self.created_at.isoformat() + 'Z' if self.created_at else None,
            'updated_at': self.updated_at.isoformat() + 'Z' if self.updated_at else None,
        }

    def __repr__(self):
        return f'<DownloadTask {self.id} {self.status} {self.canonical_url}>'
