"""
Middleware
"""
from .auth import require_auth, get_current_api_key

__all__ = ['require_auth', 'get_current_api_key']
