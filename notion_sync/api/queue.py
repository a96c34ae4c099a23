"""
Asset download queue API
"""
from flask import Blueprint, current_app, request

from ..services.engine import get_sync_engine
from ..utils.logger import get_logger
from ..utils.responses import ApiResponse, success_response
from ..utils.validators import validate_batch_size
from ..middleware.auth import require_auth

queue_bp = Blueprint('queue', __name__)
logger = get_logger('queue_api')


@queue_bp.route('/queue', methods=['GET'])
def get_queue():
    """
    Queue overview

    Query:
        - history: number of finished tasks to include (default 20)
    """
    is_valid, error_msg, limit = validate_batch_size(request.args.get('history'), 20, max_value=100)
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    queue = get_sync_engine().download_queue
    return success_response({
        'stats': queue.stats(),
        'history': queue.history(limit),
    })


@queue_bp.route('/queue/process', methods=['POST'])
@require_auth
def process_queue():
    """
    Run one processing tick (hook for an external scheduler)

    Request Body:
        - batch_size: tasks to claim (default DOWNLOAD_BATCH_SIZE)
    """
    data = request.get_json(silent=True) or {}
    default = current_app.config.get('DOWNLOAD_BATCH_SIZE', 5)
    is_valid, error_msg, batch_size = validate_batch_size(data.get('batch_size'), default)
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    queue = get_sync_engine().download_queue
    try:
        result = queue.process_batch(batch_size)
    except Exception as e:
        logger.error(f"Queue processing failed: {e}")
        return ApiResponse.server_error('Queue processing failed')

    result['queue_size'] = queue.queue_size()
    return success_response(result, 'Batch processed')


@queue_bp.route('/queue/retry-failed', methods=['POST'])
@require_auth
def retry_failed():
    """Re-arm permanently failed download tasks"""
    count = get_sync_engine().download_queue.retry_failed()
    return success_response({'requeued': count}, f'{count} task(s) requeued')
