from flask import jsonify

from ..errors import BackofficeError


def error_response(exc: BackofficeError):
    """Domain error -> {"error": kind, "message", "details"} with its HTTP status."""
    return jsonify(exc.to_dict()), exc.http_status


def internal_error(message: str):
    return jsonify({"error": "internal_error", "message": message}), 500
