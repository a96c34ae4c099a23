"""
Database models
"""
from .sync_lock import SyncLockRecord
from .sync_state import SyncStateRecord
from .download_task import DownloadTask
from .local_page import LocalPage, Asset

__all__ = ['SyncLockRecord', 'SyncStateRecord', 'DownloadTask', 'LocalPage', 'Asset']
