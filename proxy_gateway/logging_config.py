"""
Structured logging sink.

Every module logs through the ``uvicorn.error`` logger so gateway records and
server records end up in the same place. Records are rendered as one JSON
object per line (timestamp, level, message, fields) and written to stderr
and, when ``LOG_FILE`` is set, to a size-rotated file.
"""

import json
import logging
import logging.handlers
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from proxy_gateway.vars import LOG_BACKUP_COUNT, LOG_FILE, LOG_LEVEL, LOG_MAX_BYTES

LOGGER_NAME = "uvicorn.error"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_log_value(value: Any, max_length: int = 512) -> Any:
    """Strip control characters from strings so request data can't forge log lines."""
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    return _CONTROL_CHARS.sub("", str(value))[:max_length]


def log_fields(**fields: Any) -> Dict[str, Dict[str, Any]]:
    """Build the ``extra`` mapping that attaches structured fields to a record."""
    return {"fields": fields}


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_log_value(record.getMessage(), max_length=4096),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            entry["fields"] = {
                str(key): sanitize_log_value(value) for key, value in fields.items()
            }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    level: str = LOG_LEVEL,
    log_file: Optional[str] = LOG_FILE,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
) -> logging.Logger:
    """
    Attach JSON handlers to the ``uvicorn`` logger hierarchy.

    Safe to call more than once; handlers are only installed on the first call.
    """
    root = logging.getLogger("uvicorn")
    root.setLevel(level)
    logger = logging.getLogger(LOGGER_NAME)

    if getattr(root, "_gateway_configured", False):
        return logger

    formatter = JsonLogFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.propagate = False
    root._gateway_configured = True
    return logger
