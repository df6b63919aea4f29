"""
Configuration Management Module

This module loads, validates, and provides access to the session-core
configuration from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads OKX credentials and endpoints from .env
- Exposes the per-venue ExchangeConfig record (depth mode, ticker source,
  optional public streams, strategy tag)
- Holds every timing constant of the WebSocket session, the order lifecycle
  and the ledger, so tests and deployments can tune them
- Resolves the cache root used by the external cache layer

Usage:
    from core.config import settings

    print(settings.okx_rest_url)
    config = settings.exchange_config()
"""

import os
from enum import Enum
from pathlib import Path
from typing import List
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DepthMode(str, Enum):
    """Order-book stream used by a market with full depth."""

    FULL_BOOK_400 = "books"
    TOP_5 = "books5"
    TOP_50_TBT = "books50-l2-tbt"
    TICKER_SYNTH = "ticker"


class TickerSource(str, Enum):
    """Where best bid/ask tickers come from."""

    WEBSOCKET = "websocket"
    REST_POLL = "rest"


def to_alphanumeric(text: str, max_length: int) -> str:
    """
    Strip every non-alphanumeric character and truncate.

    Example:
        >>> to_alphanumeric("grid-bot_01", 16)
        'gridbot01'
    """
    return "".join(c for c in text if c.isascii() and c.isalnum())[:max_length]


class ExchangeConfig(BaseModel):
    """
    Behaviour switches recognized when a venue session is constructed.

    Attributes:
        depth_mode: Order-book stream for markets that request full depth
        ticker_source: Ticker over WebSocket or bulk REST polling (500 ms)
        subscribe_mark_price: Mirror the mark price of swap markets
        subscribe_price_limit: Mirror the price limits of swap markets
        subscribe_funding_rate: Mirror the funding rate of swap markets
        subscribe_liquidations: Allow liquidation observers
        strategy_tag: Short alphanumeric tag stamped on every order
        cancel_orders_on_boot: Cancel live orders carrying our tag at boot
        contract_trade_mode: Margin mode used for contract orders
        spot_trade_mode: Trade mode used for spot orders
    """

    depth_mode: DepthMode = DepthMode.FULL_BOOK_400
    ticker_source: TickerSource = TickerSource.WEBSOCKET
    subscribe_mark_price: bool = True
    subscribe_price_limit: bool = True
    subscribe_funding_rate: bool = False
    subscribe_liquidations: bool = False
    strategy_tag: str = "sessioncore"
    cancel_orders_on_boot: bool = True
    contract_trade_mode: str = "cross"
    spot_trade_mode: str = "cash"

    @field_validator("strategy_tag")
    @classmethod
    def validate_strategy_tag(cls, v: str) -> str:
        """Tags are alphanumeric and at most 16 characters long"""
        cleaned = to_alphanumeric(v, 16)
        if not cleaned:
            raise ValueError(f"strategy_tag '{v}' has no alphanumeric characters")
        return cleaned


class Settings(BaseSettings):
    """
    Application Settings

    Values are automatically loaded from environment variables or .env file.

    Attributes:
        okx_rest_url: OKX REST root
        okx_ws_public_url: OKX public WebSocket URL
        okx_ws_private_url: OKX private WebSocket URL
        okx_api_key: API key for private endpoints
        okx_secret_key: Secret used for HMAC-SHA256 signatures
        okx_passphrase: API passphrase
        strategy_tag: Order tag and client-id prefix of this process
        cache_root: Root directory of the external market-data cache
    """

    # ============================================
    # OKX API Configuration
    # ============================================

    okx_rest_url: str = Field(
        default="https://www.okx.com",
        description="OKX REST API root"
    )

    okx_ws_public_url: str = Field(
        default="wss://ws.okx.com:8443/ws/v5/public",
        description="OKX public WebSocket URL"
    )

    okx_ws_private_url: str = Field(
        default="wss://ws.okx.com:8443/ws/v5/private",
        description="OKX private WebSocket URL"
    )

    okx_api_key: str = Field(
        default="",
        description="OKX API key (required for private endpoints)"
    )

    okx_secret_key: str = Field(
        default="",
        description="OKX secret key (required for private endpoints)"
    )

    okx_passphrase: str = Field(
        default="",
        description="OKX API passphrase (required for private endpoints)"
    )

    # ============================================
    # Session Behaviour
    # ============================================

    strategy_tag: str = Field(
        default="sessioncore",
        description="Alphanumeric tag stamped on every order of this process"
    )

    depth_mode: DepthMode = Field(
        default=DepthMode.FULL_BOOK_400,
        description="Depth stream: books, books5, books50-l2-tbt or ticker"
    )

    ticker_source: TickerSource = Field(
        default=TickerSource.WEBSOCKET,
        description="Ticker source: websocket or rest (500 ms bulk polling)"
    )

    subscribe_mark_price: bool = Field(default=True, description="Mirror swap mark prices")
    subscribe_price_limit: bool = Field(default=True, description="Mirror swap price limits")
    subscribe_funding_rate: bool = Field(default=False, description="Mirror swap funding rates")
    subscribe_liquidations: bool = Field(default=False, description="Enable liquidation observers")

    cancel_orders_on_boot: bool = Field(
        default=True,
        description="Cancel live orders carrying our strategy tag during boot"
    )

    contract_trade_mode: str = Field(default="cross", description="Contract margin mode")
    spot_trade_mode: str = Field(default="cash", description="Spot trade mode")

    # ============================================
    # Timing
    # ============================================

    request_timeout: int = Field(default=10, description="HTTP request timeout in seconds")
    ws_handshake_timeout: float = Field(default=5.0, description="WebSocket dial timeout (seconds)")
    ws_reconnect_delay: float = Field(default=5.0, description="Delay before redialing (seconds)")
    ws_ping_interval: float = Field(default=25.0, description="Silence before sending ping (seconds)")
    ws_pong_timeout: float = Field(default=50.0, description="Silence before forcing reconnect (seconds)")
    subscribe_retry_interval: float = Field(
        default=5.0,
        description="Minimum delay between two attempts of a pending subscription (seconds)"
    )
    ledger_stale_seconds: float = Field(
        default=10.0,
        description="How long a temp-delta may wait for an authoritative refresh"
    )
    order_poll_interval: float = Field(
        default=10.0,
        description="Idle time after which an order is refreshed over REST (seconds)"
    )
    clock_sync_interval: float = Field(default=60.0, description="Server clock resync period (seconds)")
    boot_timeout: float = Field(
        default=30.0,
        description="Maximum wait for the first account and position pushes (seconds)"
    )

    # ============================================
    # Application Configuration
    # ============================================

    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    cache_root: str = Field(
        default="",
        description="Root directory of the market-data cache (empty = ~/.cache/sessioncore)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    # ============================================
    # Derived Values
    # ============================================

    @property
    def has_credentials(self) -> bool:
        """True when key, secret and passphrase are all configured"""
        return bool(self.okx_api_key and self.okx_secret_key and self.okx_passphrase)

    @property
    def cache_dir(self) -> Path:
        """
        Resolve the cache root.

        Returns:
            Path of the configured cache root, or the platform-neutral
            user cache directory when none is configured.
        """
        if self.cache_root:
            return Path(os.path.expanduser(self.cache_root))
        return Path.home() / ".cache" / "sessioncore"

    def exchange_config(self) -> ExchangeConfig:
        """Build the ExchangeConfig record from the loaded settings"""
        return ExchangeConfig(
            depth_mode=self.depth_mode,
            ticker_source=self.ticker_source,
            subscribe_mark_price=self.subscribe_mark_price,
            subscribe_price_limit=self.subscribe_price_limit,
            subscribe_funding_rate=self.subscribe_funding_rate,
            subscribe_liquidations=self.subscribe_liquidations,
            strategy_tag=self.strategy_tag,
            cancel_orders_on_boot=self.cancel_orders_on_boot,
            contract_trade_mode=self.contract_trade_mode,
            spot_trade_mode=self.spot_trade_mode,
        )


# ============================================
# Global Settings Instance
# ============================================

settings = Settings()


# ============================================
# Configuration Validation
# ============================================

VALID_LOG_LEVELS: List[str] = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def validate_configuration(require_credentials: bool = True) -> None:
    """
    Validate critical configuration settings on startup.

    Args:
        require_credentials: Fail when the private API credentials are missing

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # logging.py imports config.py
    from core.logging import logger

    if require_credentials and not settings.has_credentials:
        raise ValueError("OKX_API_KEY, OKX_SECRET_KEY and OKX_PASSPHRASE must all be set")

    if not settings.strategy_tag or to_alphanumeric(settings.strategy_tag, 16) != settings.strategy_tag:
        raise ValueError(
            f"Invalid STRATEGY_TAG: '{settings.strategy_tag}'. "
            f"Use at most 16 letters or digits"
        )

    if settings.log_level.upper() not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{settings.log_level}'. "
            f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    for name in (
        "ws_handshake_timeout",
        "ws_reconnect_delay",
        "ws_ping_interval",
        "ws_pong_timeout",
        "subscribe_retry_interval",
        "ledger_stale_seconds",
        "order_poll_interval",
        "clock_sync_interval",
        "boot_timeout",
    ):
        if getattr(settings, name) <= 0:
            raise ValueError(f"{name.upper()} must be positive, got {getattr(settings, name)}")

    if settings.ws_pong_timeout <= settings.ws_ping_interval:
        raise ValueError("WS_PONG_TIMEOUT must be larger than WS_PING_INTERVAL")

    logger.info("Configuration validated successfully")
    logger.info(f"OKX REST: {settings.okx_rest_url}")
    logger.info(f"Strategy tag: {settings.strategy_tag}")
    logger.info(f"Depth mode: {settings.depth_mode.value} | Ticker source: {settings.ticker_source.value}")
    logger.info(f"Log level: {settings.log_level.upper()}")
