# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgbackup Logging - structlog setup.

Development gets coloured console output, production gets one JSON
object per line:

    from pgbackup.logging_config import configure_logging

    configure_logging(json_logs=True, log_level="INFO")
"""

import logging
import os
import sys

import structlog


def configure_logging(
    json_logs: bool | None = None,
    log_level: str | None = None,
) -> None:
    """
    Configure structlog over the standard logging module.

    Args:
        json_logs: Render JSON instead of console output
                   (defaults to LOG_JSON)
        log_level: Minimum level name (defaults to LOG_LEVEL, then INFO)
    """
    if json_logs is None:
        json_logs = os.getenv("LOG_JSON", "false").strip().lower() in ("1", "true", "yes")
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
