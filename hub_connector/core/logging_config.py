"""
structlog setup for the connector.

JSON lines when ENVIRONMENT=production (unless LOG_FORMAT=console), colored
console output otherwise, plain console output under pytest. Request ids and
the client IP arrive through structlog contextvars bound by the request
context middleware.

    from hub_connector.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Batch pushed", table="events", count=100)

    {"event": "Batch pushed", "table": "events", "count": 100,
     "request_id": "req_5f0c...", "level": "info", "timestamp": "..."}
"""

import logging
import os
import sys
from typing import Any, MutableMapping

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
JSON_LOGS = os.getenv("ENVIRONMENT", "").lower() == "production" and os.getenv("LOG_FORMAT") != "console"
UNDER_PYTEST = "pytest" in sys.modules

# Field names whose values are credentials
SECRET_FIELDS = frozenset({"api_key", "hub_api_key", "site_key", "authorization", "token", "secret"})

QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "asyncio", "sqlalchemy.engine")


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in SECRET_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if value:
            event_dict[key] = f"***{str(value)[-4:]}" if len(str(value)) > 12 else "***"
    return event_dict


def configure_logging() -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if JSON_LOGS and not UNDER_PYTEST:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=not UNDER_PYTEST))

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and SQLAlchemy log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
