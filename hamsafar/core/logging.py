"""Logging setup for the dispatcher process.

Dispatch log calls pass the request's correlation id (and conversation id
where known) through `extra`, so a single message can be followed from
acceptance to resolution in either output format.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from hamsafar.core.config import Settings, settings

CONTEXT_FIELDS = ("correlation_id", "conversation_id")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(correlation_id)s | %(message)s"


class CorrelationFilter(logging.Filter):
    """Default the context fields so records from other libraries still format."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        if record.correlation_id is None:
            record.correlation_id = "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context fields included when set."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value not in (None, "-"):
                log_data[name] = value
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(cfg: Settings | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    cfg = cfg or settings
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CorrelationFilter())
    if cfg.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)

    # httpx logs every request URL at INFO, and Gemini takes the API key as a query param
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
