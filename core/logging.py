"""
Unified Logging Configuration

This module sets up a centralized logging system for the whole gateway.
All modules should import and use the logger from this module instead of
using print() statements.

Usage:
    from core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Connected to exchange")

Log Levels (from most to least verbose):
    DEBUG    - Request/response traces, websocket frame routing
    INFO     - Connections opened/closed, subscriptions added/removed
    WARNING  - Rate limiting, reconnects, dropped frames
    ERROR    - Failed requests, websocket errors
    CRITICAL - Not used by the gateway itself

Configuration:
    Log level is controlled by the LOG_LEVEL setting in .env file.

Credentials never reach the log: they are SecretStr values and request
helpers below only print payload keys for signed calls.
"""

import logging
import sys
from typing import Optional


ROOT_LOGGER_NAME = "exchangegateway"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the gateway root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured logger instance

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Gateway started")
        2024-01-01 12:00:00 [INFO] exchangegateway: Gateway started
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s:")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    level = getattr(logging, log_level.upper(), logging.INFO)

    # Configure our own handler instead of basicConfig so that embedding
    # applications keep control of the root logger
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(stream=sys.stdout)
        logger.addHandler(handler)

    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(log_format, datefmt="%Y-%m-%d %H:%M:%S"))

    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

try:
    from core.config import settings
    log_level = settings.log_level if hasattr(settings, "log_level") else "INFO"
except ImportError:
    log_level = "INFO"

logger = setup_logging(log_level=log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger for a module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger named "exchangegateway.<name>"

    Example:
        # In core/pipeline.py:
        logger = get_logger(__name__)  # "exchangegateway.core.pipeline"
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, method: str, endpoint: str, params: dict = None, private: bool = False) -> None:
    """
    Log an outbound API request with consistent formatting.

    Signed requests only show parameter names, never values.

    Example:
        >>> log_api_request("binance", "GET", "/api/v3/ticker/24hr", {"symbol": "BTCUSDT"})
        [DEBUG] API Request: binance GET /api/v3/ticker/24hr | Params: {'symbol': 'BTCUSDT'}
    """
    if params and private:
        logger.debug(f"API Request: {exchange} {method} {endpoint} | Signed params: {sorted(params)}")
    elif params:
        logger.debug(f"API Request: {exchange} {method} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {method} {endpoint}")


def log_api_response(exchange: str, endpoint: str, status: int, response_time: float = None) -> None:
    """
    Log an API response with status and timing information.

    Example:
        >>> log_api_response("binance", "/api/v3/ticker/24hr", 200, 0.342)
        [DEBUG] API Response: binance /api/v3/ticker/24hr | Status: 200 | Time: 0.342s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {exchange} {endpoint} | Status: {status}{time_str}")


def log_websocket_event(exchange: str, event: str, stream: str = None, details: str = None) -> None:
    """
    Log a WebSocket event with consistent formatting.

    Args:
        exchange: Exchange name
        event: Event type (e.g., "connected", "disconnected", "subscribed", "error")
        stream: Logical stream key (optional)
        details: Additional details (optional)

    Example:
        >>> log_websocket_event("bitfinex", "subscribed", "ticker:BTC-USD")
        [INFO] WebSocket: bitfinex subscribed | Stream: ticker:BTC-USD
    """
    stream_str = f" | Stream: {stream}" if stream else ""
    details_str = f" | {details}" if details else ""

    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, f"WebSocket: {exchange} {event}{stream_str}{details_str}")


logger.debug("Logging system initialized")
