"""
Stores - Interfaces of the sync engine's collaborators and default implementations

The engine only talks to a content renderer, a local store and an asset store
through the small protocols below. ``SqlLocalStore`` and ``FileAssetStore``
implement them on the application database and the media directory;
``MarkdownRenderer`` renders block trees through the block type registry.
"""
import hashlib
import json
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Asset, LocalPage
from ..utils.logger import get_logger
from .sync.remote_objects import BlockNode, block_registry

logger = get_logger('stores')


class ContentRenderer(Protocol):
    def render(self, blocks: List[BlockNode]) -> str:
        ...


class LocalStore(Protocol):
    def find_by_remote_id(self, remote_id: str) -> Optional[str]:
        ...

    def upsert(self, local_id: Optional[str], fields: Dict[str, Any]) -> str:
        ...

    def delete(self, local_id: str) -> None:
        ...

    def get_watermark(self, local_id: str) -> Optional[datetime]:
        ...

    def set_watermark(self, local_id: str, timestamp: Optional[datetime]) -> None:
        ...

    def tracked_remote_ids(self) -> Dict[str, str]:
        """``remote_id -> local_id`` of every record eligible for deletion."""
        ...

    def replace_asset_reference(self, local_id: str, original_url: str, asset_url: str,
                                is_primary: bool = False) -> bool:
        ...


class AssetStore(Protocol):
    def find_by_source_url(self, url: str) -> Optional[str]:
        ...

    def store(self, content: bytes, filename: str, source_url: Optional[str] = None) -> str:
        ...

    def url_of(self, asset_id: str) -> str:
        ...


# ==================== Default renderer ====================

class MarkdownRenderer:
    """Renders a block tree to Markdown-like text via the block type registry."""

    def __init__(self, registry=block_registry):
        self.registry = registry

    def render(self, blocks: List[BlockNode]) -> str:
        parts = [self._render_node(node) for node in blocks]
        return '\n\n'.join(part for part in parts if part)

    def _render_node(self, node: BlockNode) -> str:
        inner = '\n'.join(filter(None, (self._render_node(child) for child in node.children)))
        handler = self.registry.get(node.type)
        if handler.render is None:
            return inner
        return handler.render(node, inner)


# ==================== Default local store ====================

class SqlLocalStore:
    """LocalStore on the ``local_pages`` table. Local ids are the row ids as strings."""

    def find_by_remote_id(self, remote_id: str) -> Optional[str]:
        page = LocalPage.query.filter_by(remote_id=remote_id).first()
        return str(page.id) if page else None

    def upsert(self, local_id: Optional[str], fields: Dict[str, Any]) -> str:
        page = db.session.get(LocalPage, int(local_id)) if local_id else None
        if page is None:
            page = LocalPage(remote_id=fields['remote_id'])
            db.session.add(page)

        for name in ('title', 'content', 'remote_url', 'remote_last_edited'):
            if name in fields:
                setattr(page, name, fields[name])
        if 'properties' in fields:
            page.properties = json.dumps(fields['properties'], ensure_ascii=False, default=str)

        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return str(page.id)

    def delete(self, local_id: str) -> None:
        page = db.session.get(LocalPage, int(local_id))
        if page is None:
            return
        try:
            db.session.delete(page)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def get_watermark(self, local_id: str) -> Optional[datetime]:
        page = db.session.get(LocalPage, int(local_id))
        return page.last_synced_time if page else None

    def set_watermark(self, local_id: str, timestamp: Optional[datetime]) -> None:
        try:
            LocalPage.query.filter_by(id=int(local_id)).update(
                {'last_synced_time': timestamp},
                synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def tracked_remote_ids(self) -> Dict[str, str]:
        rows = db.session.query(LocalPage.remote_id, LocalPage.id).filter(
            db.or_(LocalPage.protect_from_deletion.is_(None), LocalPage.protect_from_deletion.is_(False))
        ).all()
        return {remote_id: str(local_id) for remote_id, local_id in rows}

    def replace_asset_reference(self, local_id: str, original_url: str, asset_url: str,
                                is_primary: bool = False) -> bool:
        page = db.session.get(LocalPage, int(local_id))
        if page is None:
            return False
        if page.content and original_url:
            page.content = page.content.replace(original_url, asset_url)
        if is_primary:
            page.featured_asset_url = asset_url
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return True


# ==================== Default asset store ====================

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


class FileAssetStore:
    """AssetStore writing files under ``media_path`` and indexing them in ``assets``."""

    def __init__(self, media_path: str, url_prefix: str = '/media'):
        self.media_path = media_path
        self.url_prefix = url_prefix.rstrip('/')

    def find_by_source_url(self, url: str) -> Optional[str]:
        asset = Asset.query.filter_by(source_url=url).first()
        return str(asset.id) if asset else None

    def store(self, content: bytes, filename: str, source_url: Optional[str] = None) -> str:
        if not os.path.exists(self.media_path):
            os.makedirs(self.media_path)

        digest = hashlib.md5((source_url or filename).encode('utf-8')).hexdigest()[:12]
        safe_name = f"{digest}_{_UNSAFE_CHARS.sub('_', filename) or 'asset'}"
        path = os.path.join(self.media_path, safe_name)
        with open(path, 'wb') as f:
            f.write(content)

        asset = Asset(
            source_url=source_url or f'local://{safe_name}',
            filename=safe_name,
            path=path,
            size=len(content),
        )
        try:
            db.session.add(asset)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.debug(f"[AssetStore] Stored {safe_name} ({len(content)} bytes)")
        return str(asset.id)

    def url_of(self, asset_id: str) -> str:
        asset = db.session.get(Asset, int(asset_id))
        if asset is None:
            raise KeyError(f"Unknown asset {asset_id}")
        return f"{self.url_prefix}/{asset.filename}"
