"""
Input validation helpers
"""
import re
from typing import Any, Optional, Tuple

# Remote ids are UUIDs, with or without dashes
_DATABASE_ID_RE = re.compile(r'^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$')


def validate_database_id(database_id: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a remote database id

    Args:
        database_id: id from the URL or request body

    Returns:
        (is_valid, error_message)
    """
    if not database_id:
        return False, 'Database id must not be empty'

    if not isinstance(database_id, str):
        return False, 'Database id must be a string'

    if not _DATABASE_ID_RE.match(database_id.strip()):
        return False, 'Database id must be a 32-character hex id or a UUID'

    return True, None


def validate_batch_size(
    value: Any,
    default: int,
    max_value: int = 100
) -> Tuple[bool, Optional[str], int]:
    """
    Validate a batch size parameter

    Returns:
        (is_valid, error_message, cleaned_value)
    """
    if value is None or value == '':
        return True, None, default

    try:
        size = int(value)
    except (TypeError, ValueError):
        return False, 'batch_size must be an integer', default

    if size <= 0:
        return False, 'batch_size must be positive', default

    if size > max_value:
        return False, f'batch_size must not exceed {max_value}', default

    return True, None, size


def parse_bool(value: Any, default: bool = False) -> bool:
    """Interpret JSON booleans and common string spellings"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
