"""Logging setup for the VaultSync server."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Union

LOGGER_NAME = "vaultsync"
PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(level: Union[str, int] = logging.INFO, structured: bool = False) -> logging.Logger:
    """Attach a single stderr handler to the ``vaultsync`` logger.

    Calling it again replaces the handler instead of stacking a second one.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_vaultsync_handler", False):
            logger.removeHandler(handler)
            handler.close()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else logging.Formatter(PLAIN_FORMAT))
    handler._vaultsync_handler = True
    logger.addHandler(handler)
    return logger
