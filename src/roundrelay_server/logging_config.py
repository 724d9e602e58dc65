"""Logging configuration for the round relay."""
from __future__ import annotations

import logging
import sys
from typing import Any

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def log_channel_event(
    logger: logging.Logger,
    event: str,
    channel_id: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Log a channel lifecycle event in a structured format.

    The message stays human readable; the channel id and any extra
    fields travel in ``extra`` for structured handlers.

    Args:
        logger: Logger instance
        event: Short event name, e.g. "upstream_started"
        channel_id: Channel (round) the event belongs to
        level: Logging level
        **fields: Additional structured fields
    """
    details = " ".join(f"{k}={v}" for k, v in fields.items())
    message = f"{event} round={channel_id}"
    if details:
        message = f"{message} {details}"
    logger.log(
        level,
        message,
        extra={"event": event, "channel_id": channel_id, **fields},
    )
