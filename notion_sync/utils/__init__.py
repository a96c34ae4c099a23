"""
Utilities
"""
from .responses import success_response, ApiResponse
from .validators import validate_database_id, validate_batch_size, parse_bool
from .logger import setup_logger, get_logger

__all__ = [
    'success_response',
    'ApiResponse',
    'validate_database_id',
    'validate_batch_size',
    'parse_bool',
    'setup_logger',
    'get_logger',
]
