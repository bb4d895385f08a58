"""
Trade Scoring Engine - Logging Setup.

Modules log through `logging.getLogger(__name__)`; this helper
only configures the root handler for scripts and hosts that
do not bring their own logging configuration.
"""

import json
import logging
import sys
from typing import Optional, TextIO


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    correlation_id: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Set up root logging.

    Args:
        level: Log level name
        log_format: Output format (json or text)
        correlation_id: Optional id stamped on every line (e.g. batch id)
        stream: Output stream (default: stdout)

    Returns:
        The package logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or '-'} | %(message)s"
        )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("trade_scoring")
