"""
Configuration Management Module

This module handles loading, validating, and providing access to gateway
configuration from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Validates all tuning values on startup
- Provides type-safe access to configuration values
- Handles optional settings with sensible defaults

Credentials are NOT part of this configuration. They are handed to each
ExchangeClient explicitly so that one process can hold several connections
with different keys.

Usage:
    from core.config import settings

    print(settings.request_timeout)
    print(settings.rate_limit_requests, settings.rate_limit_seconds)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Gateway Settings

    Defaults used by every exchange connection unless the adapter or the
    caller overrides them.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        request_timeout: Deadline for one REST call (gate wait + transport), seconds
        request_max_retries: Attempts for rate-limited (429/418/503) responses
        rate_limit_requests: Requests allowed per rate window
        rate_limit_seconds: Length of the rate window in seconds
        markets_cache_ttl: Lifetime of cached market metadata in seconds
        order_memory: Open orders (and finished order ids) each client remembers
        ws_max_reconnect_delay: Upper bound of the reconnect backoff in seconds
        ws_heartbeat: Ping interval for websocket connections in seconds
        user_agent: User-Agent header sent with every REST call
        binance_recv_window_ms: recvWindow attached to signed Binance requests
    """

    # ============================================
    # Application Configuration
    # ============================================

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # ============================================
    # REST Requests & Rate Limiting
    # ============================================

    request_timeout: float = Field(
        default=30.0,
        description="Deadline for one REST call in seconds"
    )

    request_max_retries: int = Field(
        default=3,
        description="Attempts for responses signalling rate limiting (429, 418, 503)"
    )

    rate_limit_requests: int = Field(
        default=5,
        description="Maximum requests per rate window for one exchange connection"
    )

    rate_limit_seconds: float = Field(
        default=15.0,
        description="Length of the rate window in seconds"
    )

    user_agent: str = Field(
        default="exchange-gateway/1.0",
        description="User-Agent header for REST requests"
    )

    binance_recv_window_ms: int = Field(
        default=0,
        description="recvWindow for signed Binance requests (0 = exchange default)"
    )

    # ============================================
    # Caching Configuration
    # ============================================

    markets_cache_ttl: float = Field(
        default=3600.0,
        description="Cache TTL for symbol/market metadata in seconds"
    )

    order_memory: int = Field(
        default=1000,
        description="Open orders, and finished order ids, each client keeps for folding stream fills"
    )

    # ============================================
    # WebSocket Configuration
    # ============================================

    ws_max_reconnect_delay: float = Field(
        default=30.0,
        description="Maximum delay between WebSocket reconnection attempts (seconds)"
    )

    ws_heartbeat: float = Field(
        default=20.0,
        description="WebSocket ping interval in seconds"
    )

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        # Look for .env file in the project root
        env_file=".env",
        # Ignore extra fields in .env that aren't defined here
        extra="ignore",
        # Case-insensitive environment variable matching
        case_sensitive=False
    )


# ============================================
# Global Settings Instance
# ============================================

# Loaded once and reused by every module
settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Settings = None) -> None:
    """
    Validate tuning values before opening any exchange connection.

    Args:
        config: Settings to validate (defaults to the global instance)

    Raises:
        ValueError: If a value is out of range
    """
    # Import logger here to avoid circular import
    # (logging.py imports config.py, so we can't import at module level)
    from core.logging import logger

    config = config or settings

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    if config.request_timeout <= 0:
        raise ValueError(f"REQUEST_TIMEOUT must be positive, got {config.request_timeout}")

    if config.request_max_retries < 1:
        raise ValueError(f"REQUEST_MAX_RETRIES must be at least 1, got {config.request_max_retries}")

    if config.rate_limit_requests < 1:
        raise ValueError(f"RATE_LIMIT_REQUESTS must be at least 1, got {config.rate_limit_requests}")

    if config.rate_limit_seconds <= 0:
        raise ValueError(f"RATE_LIMIT_SECONDS must be positive, got {config.rate_limit_seconds}")

    if config.markets_cache_ttl < 0:
        raise ValueError(f"MARKETS_CACHE_TTL cannot be negative, got {config.markets_cache_ttl}")

    if config.ws_max_reconnect_delay < 1:
        raise ValueError(f"WS_MAX_RECONNECT_DELAY must be at least 1, got {config.ws_max_reconnect_delay}")

    if config.order_memory < 0:
        raise ValueError(f"ORDER_MEMORY cannot be negative, got {config.order_memory}")

    logger.info("Configuration validated successfully")
    logger.info(f"Rate limit: {config.rate_limit_requests} requests / {config.rate_limit_seconds}s")
    logger.info(f"Request timeout: {config.request_timeout}s (retries: {config.request_max_retries})")
    logger.info(f"Markets cache TTL: {config.markets_cache_ttl}s")
    logger.info(f"Log level: {config.log_level.upper()}")
