"""
Sync API
"""
from flask import Blueprint, current_app, request

from ..services.engine import get_sync_engine
from ..services.sync.errors import ListingError, LockLostError, SyncInProgressError
from ..utils.logger import get_logger, log_error
from ..utils.responses import ApiResponse, success_response
from ..utils.validators import parse_bool, validate_database_id
from ..middleware.auth import require_auth

sync_bp = Blueprint('sync', __name__)
logger = get_logger('sync_api')


@sync_bp.route('/sync/<database_id>', methods=['POST'])
@require_auth
def trigger_sync(database_id):
    """
    Start a sync run for a remote database

    Request Body:
        - incremental: only import changed records (default true)
        - check_deletions: delete local records removed remotely (default false)
        - background: run in a background thread (default false)

    Returns:
        RunStats (200), 202 when backgrounded, 409 when a run is in progress
    """
    is_valid, error_msg = validate_database_id(database_id)
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    data = request.get_json(silent=True) or {}
    incremental = parse_bool(data.get('incremental'), True)
    check_deletions = parse_bool(data.get('check_deletions'), False)
    background = parse_bool(data.get('background'), False)

    coordinator = get_sync_engine().coordinator

    if background:
        if coordinator.lock.is_locked(database_id):
            return ApiResponse.sync_error(SyncInProgressError(database_id))
        coordinator.start_background(
            current_app._get_current_object(),
            database_id,
            incremental=incremental,
            check_deletions=check_deletions,
        )
        return ApiResponse.accepted({'database_id': database_id}, 'Sync started in background')

    try:
        stats = coordinator.run(database_id, incremental=incremental, check_deletions=check_deletions)
    except SyncInProgressError as e:
        return ApiResponse.sync_error(e)
    except (ListingError, LockLostError) as e:
        logger.error(f"Sync of {database_id} aborted: {e}")
        return ApiResponse.sync_error(e)
    except Exception as e:
        log_error(e, f"sync of {database_id}", component='sync_api')
        return ApiResponse.server_error('Sync failed')

    return success_response(stats.to_dict(), 'Sync finished')


@sync_bp.route('/sync/<database_id>/status', methods=['GET'])
def get_sync_status(database_id):
    """Persisted run state of a database"""
    is_valid, error_msg = validate_database_id(database_id)
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    engine = get_sync_engine()
    state = engine.coordinator.get_state(database_id)
    if state is None:
        return ApiResponse.not_found('No sync has run for this database')

    data = state.to_dict(include_issues=parse_bool(request.args.get('issues'), False))
    data['locked'] = engine.coordinator.lock.is_locked(database_id)
    return success_response(data)


@sync_bp.route('/sync/stats', methods=['GET'])
def get_engine_stats():
    """Concurrency controller and cache statistics"""
    return success_response(get_sync_engine().stats())
