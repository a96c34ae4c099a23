"""
Local content models (default local store and asset store)
"""
import json
from ..extensions import db
from ..utils.timeutils import utc_now


class LocalPage(db.Model):
    """Local counterpart of a remote record"""
    __tablename__ = 'local_pages'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    remote_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    title = db.Column(db.String(512))
    content = db.Column(db.Text)
    properties = db.Column(db.Text)  # JSON of the remote properties
    remote_url = db.Column(db.String(512))
    featured_asset_url = db.Column(db.String(1024))

    remote_last_edited = db.Column(db.DateTime)
    # Watermark: last_edited_time of the remote record when it was last imported
    last_synced_time = db.Column(db.DateTime)
    protect_from_deletion = db.Column(db.Boolean, default=False)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    def get_properties(self):
        if not self.properties:
            return {}
        try:
            return json.loads(self.properties)
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            'id': self.id,
            'remote_id': self.remote_id,
            'title': self.title,
            'content': self.content,
            'properties': self.get_properties(),
            'remote_url': self.remote_url,
            'featured_asset_url': self.featured_asset_url,
            'last_synced_time': self.last_synced_time.isoformat() + 'Z' if self.last_synced_time else None,
            'protect_from_deletion': self.protect_from_deletion,
            'updated_at': self.updated_at.isoformat() + 'Z' if self.updated_at else None,
        }

    def __repr__(self):
        return f'<LocalPage {self.id} remote={self.remote_id}>'


class Asset(db.Model):
    """A downloaded file, keyed by its canonical source URL"""
    __tablename__ = 'assets'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    source_url = db.Column(db.String(1024), unique=True, nullable=False, index=True)
    filename = db.Column(db.String(256), nullable=False)
    path = db.Column(db.String(1024), nullable=False)
    size = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self):
        return {
            'id': self.id,
            'source_url': self.source_url,
            'filename': self.filename,
            'size': self.size,
            'created_at': self.created_at.isoformat() + 'Z' if self.created_at else None,
        }

    def __repr__(self):
        return f'<Asset {self.id} {self.filename}>'
