"""
Logging setup.

Text output for development, one JSON object per line for log shippers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Attributes every LogRecord carries; anything else came in via ``extra=``
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formatter that outputs log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = {k: v for k, v in vars(record).items() if k not in _RESERVED}
        if extra:
            log_obj["extra"] = extra
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


def configure_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Idempotent logging setup; leaves existing root handlers alone."""
    root = logging.getLogger()
    if root.handlers:
        return
    numeric_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    root.setLevel(numeric_level)
