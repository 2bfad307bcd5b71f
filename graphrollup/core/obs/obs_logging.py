from __future__ import annotations
import json
import logging as std_logging
import os
import sys
import time
from typing import Any, Dict

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SERVICE_NAME = os.getenv("APP_NAME", "graphrollup")

# Rollup context carried on records as `extra=` or structlog key-values
CONTEXT_KEYS = (
    "tenant_id",
    "rollup_id",
    "execution_id",
    "phase",
    "attempt",
    "error_code",
    "duration_ms",
)


class JsonFormatter(std_logging.Formatter):
    def format(self, record: std_logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": int(time.time() * 1000),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
            "service": SERVICE_NAME,
        }
        # Attach extra fields if present
        for key in CONTEXT_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                base[key] = val
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def configure_json_logging(level: str | None = None) -> None:
    handler = std_logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = std_logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(std_logging, (level or LOG_LEVEL).upper(), std_logging.INFO))
    configure_structlog()


def configure_structlog() -> None:
    """Route structlog through stdlib so both end up on the JSON handler."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Convenience logger
logger = std_logging.getLogger("graphrollup")
