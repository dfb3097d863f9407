"""Logging configuration: structlog events rendered through stdlib logging."""

from __future__ import annotations

import logging
import os
import sys

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter


def setup_logging(log_level: str | None = None) -> None:
    """Route structlog through a single stdout handler.

    Uses the console renderer on a TTY and JSON lines otherwise, so the same
    events are readable interactively and parseable when collected from a pod.
    """
    if log_level is None:
        log_level = os.getenv("NPVU_LOG_LEVEL", "INFO")
    log_level_num = getattr(logging, log_level.upper(), logging.INFO)

    renderer = structlog.dev.ConsoleRenderer() if sys.stdout.isatty() else structlog.processors.JSONRenderer()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level_num)
    handler.setFormatter(ProcessorFormatter(processor=renderer))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level_num)
    root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger("pv_upgrader").debug("Logging system initialized", log_level=log_level)
