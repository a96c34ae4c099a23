"""
API blueprints
"""
from .sync import sync_bp
from .queue import queue_bp

__all__ = ['sync_bp', 'queue_bp']
