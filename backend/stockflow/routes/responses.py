# Overview: Shared JSON error responses for service-layer exceptions.

from flask import current_app, jsonify

from ..extensions import db
from ..errors import StockflowError


def service_error_response(exc: StockflowError):
    """
    Roll back the request transaction and render a service error.

    Fatal ledger errors are logged at CRITICAL for operators and returned
    without internal detail.
    """
    db.session.rollback()

    if exc.fatal:
        current_app.logger.critical("Internal consistency error: %s %r", exc.message, exc.details)
        return jsonify({"error": "Internal consistency error"}), 500

    return jsonify(exc.to_dict()), exc.http_status


def internal_error_response(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500
