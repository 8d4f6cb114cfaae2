import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from tenant_billing.errors import BillingError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Render every error as JSON."""

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            "Billing error",
            extra={"error_code": error.error_code, "error": str(error), "path": request.path},
        )
        return jsonify({
            "error": error.error_code,
            "message": str(error),
            "path": request.path,
        }), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        logger.info("HTTP error", extra={"status_code": error.code, "path": request.path})
        return jsonify({
            "error": error.name,
            "message": error.description,
            "path": request.path,
        }), error.code

    @app.errorhandler(500)
    def server_error(error):
        logger.exception("Server error", extra={"path": request.path})
        return jsonify({
            "error": "Server error",
            "message": "An internal server error occurred. Please try again later.",
            "path": request.path,
        }), 500
