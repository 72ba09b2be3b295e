"""
Operational logging setup.

Modules log through ``structlog.get_logger()`` with event-style names
(``logger.warning("default_model_missing", model=...)``). Applications call
``configure_logging()`` once at startup; without it structlog's defaults apply.
Per-attempt telemetry does not go through here, see ``usage.py``.
"""

import logging
import sys

import structlog
from structlog.typing import Processor


def configure_logging(json_logs: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog for the service.

    Args:
        json_logs: If True, output JSON lines. If False, colored console output.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
