"""JSON logging for db-hasura.

Services log through structlog; ``setup_logging()`` routes those events,
together with plain stdlib records from aiohttp and gql, into one JSON
format on the console and in a daily rotating file under ``LOG_DIR``.
"""

import logging
import os
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from typing import List, Optional

import structlog

from . import config


def _add_component(logger, method_name, event_dict):
    # Events without a bound component are attributed to their logger
    event_dict.setdefault("component", event_dict.get("logger"))
    return event_dict


SHARED_PROCESSORS: List = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    _add_component,
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
]


def build_formatter() -> structlog.stdlib.ProcessorFormatter:
    """Formatter rendering structlog events and stdlib records as JSON lines"""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=SHARED_PROCESSORS + [structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


def configure_structlog() -> None:
    """Send structlog events to the stdlib root logger handlers"""
    structlog.configure(
        processors=[structlog.stdlib.filter_by_level] + SHARED_PROCESSORS + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_logging(log_level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """Configure console and daily rotating file output.

    Args:
        log_level: Level name, defaults to ``LOG_LEVEL``
        log_dir: Directory for log files, defaults to ``LOG_DIR``
    """
    settings = config.settings
    log_level = log_level or settings.log_level
    log_dir = log_dir or settings.log_dir
    os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    root.handlers = []

    formatter = build_formatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    file_handler = TimedRotatingFileHandler(
        filename=os.path.join(log_dir, f"db_hasura_{datetime.now().strftime('%Y%m%d')}.log"),
        when="midnight",
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    configure_structlog()


def log_summary(component: str, operation: str, records_processed: int, duration_seconds: float) -> None:
    """Log a summary line for a completed operation"""
    structlog.get_logger(component).info(
        "operation_completed",
        component=component,
        operation=operation,
        records_processed=records_processed,
        duration_ms=int(duration_seconds * 1000),
    )
