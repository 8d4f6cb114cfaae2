import logging
import logging.config
import uuid

from flask import g, has_request_context, request
from pythonjsonlogger import jsonlogger

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdFilter(logging.Filter):
    """
    Inject request_id into every log record if present.
    """

    def filter(self, record):
        record.request_id = getattr(g, "request_id", None) if has_request_context() else None
        return True


def build_logging_config(level="INFO", json_output=True):
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {
                "()": RequestIdFilter,
            },
        },
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "fmt": (
                    "%(asctime)s "
                    "%(levelname)s "
                    "%(name)s "
                    "%(message)s "
                    "%(request_id)s "
                    "%(module)s "
                    "%(funcName)s "
                    "%(lineno)d"
                ),
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json_output else "simple",
                "filters": ["request_id"],
            },
        },
        "loggers": {
            "sqlalchemy.engine": {"level": "WARNING"},
            "urllib3": {"level": "WARNING"},
            "stripe": {"level": "WARNING"},
        },
        "root": {
            "level": level,
            "handlers": ["default"],
        },
    }


def setup_logging(app):
    """Configure logging for the application"""
    logging.config.dictConfig(
        build_logging_config(
            level=app.config.get("LOG_LEVEL", "INFO"),
            json_output=app.config.get("LOG_JSON", True),
        )
    )

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

    @app.after_request
    def add_request_id_header(response):
        response.headers[REQUEST_ID_HEADER] = g.get("request_id", "")
        return response


def configure_logging_for_worker(level="INFO", json_output=True):
    """Celery processes have no Flask request cycle; only the formatter applies."""
    logging.config.dictConfig(build_logging_config(level=level, json_output=json_output))
