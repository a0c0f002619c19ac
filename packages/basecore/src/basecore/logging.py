"""
Logging setup

Structured JSON logs on stdout via python-json-logger. Modules keep using
`logger = logging.getLogger(__name__)` and pass context with `extra={...}`;
the formatter lifts those fields into the JSON record.
"""

import logging
import sys
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

from basecore.settings import get_settings


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with an ISO-8601 `ts` and a `level` field."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = (
                datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
            )
        log_record["level"] = record.levelname


def setup_logging(log_level: str | None = None, json_output: bool | None = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        log_level: Overrides LOG_LEVEL from settings
        json_output: Overrides LOG_JSON from settings

    Returns:
        The root logger
    """
    settings = get_settings()
    level = (log_level or settings.LOG_LEVEL).upper()
    use_json = settings.LOG_JSON if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(ServiceJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False

    return root
