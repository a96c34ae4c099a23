"""
Authentication middleware
Protects endpoints that start work
"""
import os
from functools import wraps
from flask import current_app, request
from ..utils.responses import ApiResponse


def get_current_api_key() -> str:
    """API key from the X-API-Key header"""
    return request.headers.get('X-API-Key', '')


def get_expected_api_key() -> str:
    return current_app.config.get('API_KEY') or os.environ.get('API_KEY') or ''


def require_auth(f):
    """
    Require a matching X-API-Key header

    When no API_KEY is configured the check is skipped (development mode)
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        expected_key = get_expected_api_key()

        if not expected_key:
            return f(*args, **kwargs)

        api_key = get_current_api_key()
        if not api_key:
            return ApiResponse.unauthorized('Missing API key, send it in the X-API-Key header')

        if api_key != expected_key:
            return ApiResponse.unauthorized('Invalid API key')

        return f(*args, **kwargs)
    return decorated
