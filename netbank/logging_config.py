"""
Structured Logging Configuration Module

JSON log lines for every service under the ``netbank`` logger namespace.
Credential material never reaches a log line: structured fields whose names
look like passwords or tokens are masked by the formatter.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Optional


REDACTED = "***"
SENSITIVE_FIELDS = frozenset({
    "password", "password_hash", "password_salt",
    "access_token", "refresh_token", "token", "authorization", "jwt_secret",
})

STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def redact(value: Any) -> Any:
    """Mask sensitive keys at any depth of a dict/list structure"""
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_FIELDS else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        extra = getattr(record, 'extra', None)
        if extra:
            entry["extra"] = redact(extra)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "netbank") -> logging.Logger:
    """
    Configure the application logger once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, "text" for plain lines
        logger_name: Root of the application logger namespace

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for existing in logger.handlers[:]:
        logger.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "netbank") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured fields.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Human-readable message
        user_id: Identity performing the action
        action: Short action name, e.g. "login" or "decide_transfer"
        resource: "type:id" of the entity acted upon
        correlation_id: Request id for tracing one request across services
        extra: Additional structured data; sensitive keys are masked on output
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    fields = {
        'user_id': user_id,
        'action': action,
        'resource': resource,
        'correlation_id': correlation_id,
        'extra': extra,
    }
    logger.log(levelno, message, extra={k: v for k, v in fields.items() if v})
