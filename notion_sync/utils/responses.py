"""
Uniform API response envelopes
"""
from flask import jsonify
from typing import Any, Optional, Dict


class ApiResponse:
    """API response builder"""

    @staticmethod
    def success(data: Any = None, message: str = 'OK') -> tuple:
        """
        Success response (200)

        Args:
            data: response payload
            message: human readable message

        Returns:
            (Flask response, status code)
        """
        response = {
            'success': True,
            'message': message,
        }
        if data is not None:
            response['data'] = data
        return jsonify(response), 200

    @staticmethod
    def accepted(data: Any = None, message: str = 'Accepted') -> tuple:
        """Work scheduled in the background (202)"""
        response = {
            'success': True,
            'message': message,
        }
        if data is not None:
            response['data'] = data
        return jsonify(response), 202

    @staticmethod
    def error(
        message: str,
        code: int = 400,
        error_code: str = 'BAD_REQUEST',
        details: Optional[Dict] = None
    ) -> tuple:
        """
        Error response

        Args:
            message: error message
            code: HTTP status code
            error_code: machine readable error code
            details: extra error details

        Returns:
            (Flask response, status code)
        """
        response = {
            'success': False,
            'error': {
                'code': error_code,
                'message': message,
            }
        }
        if details:
            response['error']['details'] = details
        return jsonify(response), code

    @staticmethod
    def not_found(message: str = 'Resource not found') -> tuple:
        """404 response"""
        return ApiResponse.error(message, 404, 'NOT_FOUND')

    @staticmethod
    def unauthorized(message: str = 'Unauthorized') -> tuple:
        """401 response"""
        return ApiResponse.error(message, 401, 'UNAUTHORIZED')

    @staticmethod
    def validation_error(message: str, details: Optional[Dict] = None) -> tuple:
        """Validation error response"""
        return ApiResponse.error(message, 400, 'VALIDATION_ERROR', details)

    @staticmethod
    def server_error(message: str = 'Internal server error') -> tuple:
        """500 response"""
        return ApiResponse.error(message, 500, 'INTERNAL_ERROR')

    @staticmethod
    def sync_error(error: Exception) -> tuple:
        """
        Response for an error raised by the sync engine

        Status and code come from the error class (``http_status``,
        ``error_code``); upstream failures also report the remote error
        kind and HTTP status under ``details``.

        Args:
            error: a SyncError subclass instance

        Returns:
            (Flask response, status code)
        """
        return ApiResponse.error(
            str(error),
            getattr(error, 'http_status', 500),
            getattr(error, 'error_code', 'SYNC_FAILED'),
            getattr(error, 'details', None),
        )


def success_response(data: Any = None, message: str = 'OK') -> tuple:
    """Shortcut for ApiResponse.success"""
    return ApiResponse.success(data, message)

