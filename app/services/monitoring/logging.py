"""
Structured JSON Logging with Correlation ID
JSON formatter for stdlib loggers (SQLAlchemy, pybreaker, APScheduler, uvicorn)
so their output lines up with the structlog events from the services
"""

import logging
import sys
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

from app.config import settings

SERVICE_NAME = "dual-write-monitor"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with automatic correlation ID injection.

    Adds correlation_id (from CorrelationIdMiddleware's context), service and
    environment to every record.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = settings.environment


def setup_logging(level: int = logging.INFO) -> logging.Handler:
    """
    Configure structured JSON logging to stdout on the root logger.

    Calling it twice does not add a second handler.

    Args:
        level: Root log level

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    root_logger = logging.getLogger()

    for existing in root_logger.handlers:
        if isinstance(existing.formatter, CorrelationJsonFormatter):
            return existing

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    ))

    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    return handler
