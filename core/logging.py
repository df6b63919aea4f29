"""
Unified Logging Configuration

This module sets up the logging used by every component of the session core.
Modules never print; they ask for a child logger of the "sessioncore"
application logger.

Usage:
    from core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Connected to OKX private channel")

Log Levels:
    DEBUG    - Raw frames, request parameters, ledger bookkeeping
    INFO     - Lifecycle milestones (connected, subscribed, order created)
    WARNING  - Recoverable faults (reconnect, checksum mismatch, REST retry)
    ERROR    - Requests refused by the venue
    CRITICAL - Fatal invariant violations reported to the venue fatal channel

Configuration:
    Log level is controlled by the LOG_LEVEL setting in .env file.
"""

import logging
import sys
from typing import Optional

APP_LOGGER_NAME = "sessioncore"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured application logger

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Session starting")
        2024-01-01 12:00:00 [INFO] sessioncore Session starting
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    logger = logging.getLogger(APP_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

from core.config import settings  # noqa: E402

logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger of the application logger.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger named "sessioncore.<name>"

    Example:
        # In exchanges/okx/order.py:
        logger = get_logger(__name__)  # "sessioncore.exchanges.okx.order"
    """
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")


def set_log_level(level: str) -> None:
    """
    Change the log level at runtime.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, method: str, endpoint: str, params: dict = None) -> None:
    """
    Log a REST request with consistent formatting.

    Example:
        >>> log_api_request("okx", "GET", "/api/v5/market/books", {"instId": "BTC-USDT"})
        [DEBUG] API Request: okx GET /api/v5/market/books | Params: {'instId': 'BTC-USDT'}
    """
    if params:
        logger.debug(f"API Request: {exchange} {method} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {method} {endpoint}")


def log_api_response(exchange: str, endpoint: str, status: int, response_time: float = None) -> None:
    """
    Log a REST response with status and timing information.

    Example:
        >>> log_api_response("okx", "/api/v5/trade/order", 200, 0.042)
        [DEBUG] API Response: okx /api/v5/trade/order | Status: 200 | Time: 0.042s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {exchange} {endpoint} | Status: {status}{time_str}")


def log_websocket_event(exchange: str, event: str, channel: str = None, details: str = None) -> None:
    """
    Log a WebSocket lifecycle event with consistent formatting.

    Events named "error" are logged at ERROR, "reconnect" at WARNING,
    everything else at INFO.

    Example:
        >>> log_websocket_event("okx-public", "connected")
        [INFO] WebSocket: okx-public connected
    """
    channel_str = f" | Channel: {channel}" if channel else ""
    details_str = f" | {details}" if details else ""

    if event == "error":
        level = logging.ERROR
    elif event == "reconnect":
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(level, f"WebSocket: {exchange} {event}{channel_str}{details_str}")


logger.debug("Logging system initialized")
