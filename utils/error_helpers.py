"""
Error handling helpers for Flask routes
Keeps JSON error responses in one shape: {"ok": false, "error": <code>, ...}
"""

from functools import wraps
import logging

from flask import jsonify

logger = logging.getLogger(__name__)


def json_error(code, status, **extra):
    """
    Build a JSON error response

    Args:
        code: Machine-readable error code
        status: HTTP status
        **extra: Additional fields merged into the body

    Returns:
        tuple: (response, status) for Flask
    """
    return jsonify({"ok": False, "error": code, **extra}), status


def api_error_handler(func):
    """
    Decorator for API endpoints that turns unexpected exceptions into a 500

    Usage:
        @app.route('/api/data')
        @api_error_handler
        def get_data():
            return jsonify({'ok': True, 'data': data})
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Unexpected error in {func.__name__}: {e}", exc_info=True)
            return json_error("internal_error", 500)
    return wrapper
