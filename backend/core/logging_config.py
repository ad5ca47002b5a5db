"""
Logging setup for the API and for bar terminals.

LOG_FORMAT=json emits one JSON object per line (for log shipping),
anything else emits a short human readable line.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from core.config import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class PlainFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("[%(asctime)s] %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Install the stdout handler on the root logger. Calling it again replaces it."""
    level_name = (level or settings.log_level or "INFO").upper()
    fmt_name = (fmt or settings.log_format or "plain").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if fmt_name == "json" else PlainFormatter())
    handler.set_name("openbar")

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == "openbar":
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # SQL echo is controlled by DATABASE_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
