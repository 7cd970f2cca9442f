"""Billing error taxonomy and the JSON error envelope.

Services raise these; blueprints let them propagate and the handler
registered in create_app() renders:

    {"error": "Human-readable message", "code": "error_code"}
"""

import logging

from flask import jsonify

from app.extensions import db

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class. Carries the HTTP status and a stable machine code."""

    status_code = 500
    code = "billing_error"

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidRequest(BillingError):
    """Malformed input, rejected before any Stripe call."""

    status_code = 400
    code = "invalid_request"


class PreconditionFailed(BillingError):
    """Well-formed request for something that can't be purchased right now."""

    status_code = 400
    code = "precondition_failed"


class NotFound(PreconditionFailed):
    status_code = 404
    code = "not_found"


class UpstreamError(BillingError):
    """Stripe call failed. Nothing local was committed."""

    status_code = 500
    code = "upstream_error"


def register_error_handlers(app):
    """Render BillingError and unexpected failures as JSON."""

    @app.errorhandler(BillingError)
    def handle_billing_error(e):
        db.session.rollback()
        if e.status_code >= 500:
            logger.error(f"{e.code}: {e.message}")
        return jsonify({"error": e.message, "code": e.code}), e.status_code

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "code": "method_not_allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests", "code": "rate_limited"}), 429

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return jsonify({"error": "Internal server error", "code": "server_error"}), 500
