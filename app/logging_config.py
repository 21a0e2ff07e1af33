"""
Logging setup for the API and the Celery workers.

Production emits one JSON object per line. Funnel, conversation, experience and
webhook identifiers passed through ``extra=`` become top-level keys so a log
search can follow one funnel or one member conversation across processes.
"""

import sys
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.config import settings

# Identifiers lifted from ``extra=`` onto the JSON record
CONTEXT_FIELDS = (
    "experience_id",
    "funnel_id",
    "conversation_id",
    "whop_user_id",
    "event_id",
    "task",
)

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "openai", "celery.app.trace")


class JSONFormatter(logging.Formatter):
    """One JSON line per record, tagged with the service name."""

    def __init__(self, service: Optional[str] = None):
        super().__init__()
        self.service = service or settings.app_name

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service,
            "env": settings.app_env,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = str(value)

        if record.levelno >= logging.WARNING:
            log_obj["location"] = f"{record.module}.{record.funcName}:{record.lineno}"

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def resolve_level() -> int:
    """LOG_LEVEL wins; unknown names fall back to the environment default."""
    default = logging.INFO if settings.is_production else logging.DEBUG
    if not settings.log_level:
        return default
    level = logging.getLevelName(settings.log_level.upper())
    return level if isinstance(level, int) else default


def configure_logging(service: Optional[str] = None):
    """Configure the root logger. ``service`` names the process, e.g. the worker."""
    root_logger = logging.getLogger()
    root_logger.setLevel(resolve_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.is_production:
        console_handler.setFormatter(JSONFormatter(service))
    else:
        console_handler.setFormatter(
            logging.Formatter(f"%(asctime)s [{service or settings.app_name}] %(levelname)s %(name)s: %(message)s")
        )

    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
