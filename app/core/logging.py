"""
Logging configuration for the fee payment service.
Console output, plain or JSON depending on LOG_JSON.
"""

import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict

from pythonjsonlogger.json import JsonFormatter

from app.core.config import settings


class FeeJsonFormatter(JsonFormatter):
    """JSON formatter that stamps level, logger name and tenant/user context."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        for key in ("tenant_id", "user_id", "student_id", "payment_id"):
            if hasattr(record, key):
                log_record[key] = str(getattr(record, key))


LOGGING_CONFIG: Dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        },
        "json": {
            "()": FeeJsonFormatter,
            "format": "%(timestamp)s %(level)s %(logger)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json" if settings.log_json else "standard",
        },
    },
    "loggers": {
        "app": {
            "handlers": ["console"],
            "level": settings.log_level,
            "propagate": False,
        },
        "sqlalchemy.engine": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}


def setup_logging() -> logging.Logger:
    """Configure application logging."""
    logging.config.dictConfig(LOGGING_CONFIG)
    logger = logging.getLogger("app")
    logger.debug("Logging initialized with level: %s", settings.log_level)
    return logger
