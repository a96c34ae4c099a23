"""
Service Layer

This module exports the sync coordinator, the engine factory and the
default collaborator implementations.
"""
from .sync_service import SyncCoordinator
from .engine import SyncEngine, build_sync_engine, get_sync_engine, init_sync_engine
from .stores import FileAssetStore, MarkdownRenderer, SqlLocalStore

__all__ = [
    'SyncCoordinator',
    'SyncEngine',
    'build_sync_engine',
    'get_sync_engine',
    'init_sync_engine',
    'FileAssetStore',
    'MarkdownRenderer',
    'SqlLocalStore',
]
