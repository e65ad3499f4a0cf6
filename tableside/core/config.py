"""
Application Configuration Module

Centralizes all configuration using environment variables with Pydantic Settings.
Supports two modes:
    - DEVELOPMENT: Uses the in-memory mock backend and mock realtime hub
    - PRODUCTION/STAGING: Uses the REST gateway and the Socket.IO channel

The ENV_MODE variable controls which API client and realtime transport
are instantiated, so the same table session code runs against a local
sandbox or a real deployment.

Usage:
    from tableside.core.config import get_settings

    settings = get_settings()
    if settings.is_development:
        # Mock API + mock realtime hub
    else:
        # HTTP API + Socket.IO
"""

import logging
import sys
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    """
    Application environment modes.

    Attributes:
        DEVELOPMENT: Local testing with mock services
        PRODUCTION: Live environment against the API gateway
        STAGING: Pre-production gateway
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    STAGING = "staging"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.

    Attributes:
        env_mode: Current environment (development/production/staging)
        debug: Enable verbose logging

        # Gateway
        api_base_url: REST gateway base URL (including /api/v1)
        api_key: Value sent as the x-api-key header
        realtime_url: Socket.IO server URL

        # Synchronization timing
        refresh_debounce_seconds: Realtime burst collapse window
        order_min_fetch_interval_seconds: Minimum spacing of order fetches
        cart_min_reload_interval_seconds: Minimum spacing of cart reloads
        auto_poll_interval_seconds: Fallback poll for non-terminal orders
        bill_display_delay_seconds: Receipt display time before hand-off

        # Device storage
        data_directory: Directory for persisted client state
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================

    env_mode: EnvironmentMode = Field(
        default=EnvironmentMode.DEVELOPMENT,
        description="Application environment mode"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================

    app_name: str = Field(
        default="Tableside Order Sync",
        description="Application display name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )

    # ==========================================================================
    # REST GATEWAY
    # ==========================================================================

    api_base_url: str = Field(
        default="http://localhost:8888/api/v1",
        description="REST gateway base URL"
    )
    api_key: str = Field(
        default="tableside-dev-key",
        description="API key sent with every request (x-api-key)"
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for ordinary REST calls"
    )
    session_refresh_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for the silent token refresh on startup"
    )
    orders_page_size: int = Field(
        default=20,
        description="Page size used when listing a table's orders"
    )

    # ==========================================================================
    # REALTIME CHANNEL
    # ==========================================================================

    realtime_url: str = Field(
        default="http://localhost:8888",
        description="Socket.IO server URL"
    )
    realtime_namespace: str = Field(
        default="/realtime",
        description="Socket.IO namespace for order events"
    )
    realtime_reconnect_attempts: int = Field(
        default=5,
        description="Maximum reconnection attempts"
    )
    realtime_reconnect_delay_seconds: float = Field(
        default=1.0,
        description="Initial reconnection delay"
    )
    realtime_reconnect_delay_max_seconds: float = Field(
        default=5.0,
        description="Maximum reconnection delay"
    )
    realtime_ack_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout waiting for a room join/leave acknowledgement"
    )

    # ==========================================================================
    # SYNCHRONIZATION TIMING
    # ==========================================================================

    refresh_debounce_seconds: float = Field(
        default=0.5,
        description="Realtime events inside this window collapse into one fetch"
    )
    order_min_fetch_interval_seconds: float = Field(
        default=2.0,
        description="Minimum spacing between non-forced order fetches"
    )
    cart_min_reload_interval_seconds: float = Field(
        default=2.0,
        description="Minimum spacing between non-forced cart reloads"
    )
    auto_poll_interval_seconds: float = Field(
        default=15.0,
        description="Fallback poll interval while orders are in progress"
    )
    bill_display_delay_seconds: float = Field(
        default=3.0,
        description="Receipt display time before returning to the menu"
    )

    # ==========================================================================
    # DEVICE STORAGE
    # ==========================================================================

    data_directory: str = Field(
        default="data",
        description="Directory for persisted client state"
    )
    device_store_filename: str = Field(
        default="device.json",
        description="Persisted session / active order / guest flag file"
    )
    device_store_lock_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for the device store file lock"
    )

    # ==========================================================================
    # MOCK BACKEND / SANDBOX
    # ==========================================================================

    mock_failure_rate: float = Field(
        default=0.0,
        description="Probability of a simulated transient failure"
    )
    mock_min_latency: float = Field(
        default=0.0,
        description="Minimum simulated latency in seconds"
    )
    mock_max_latency: float = Field(
        default=0.0,
        description="Maximum simulated latency in seconds"
    )
    tax_rate: float = Field(
        default=0.1,
        description="Tax rate applied to bills (0.1 = 10% VAT)"
    )
    currency: str = Field(
        default="VND",
        description="Currency for prices, QR payments and bills"
    )
    payment_base_url: str = Field(
        default="https://pay.example.com/checkout",
        description="Fallback payment link base used by the sandbox"
    )

    # ==========================================================================
    # VALIDATORS
    # ==========================================================================

    @field_validator("env_mode", mode="before")
    @classmethod
    def validate_env_mode(cls, v: str) -> EnvironmentMode:
        """Convert string to EnvironmentMode enum."""
        if isinstance(v, EnvironmentMode):
            return v
        try:
            return EnvironmentMode(v.lower())
        except ValueError:
            valid = [e.value for e in EnvironmentMode]
            raise ValueError(f"Invalid env_mode. Must be one of: {valid}")

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env_mode == EnvironmentMode.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env_mode == EnvironmentMode.PRODUCTION

    @property
    def use_real_services(self) -> bool:
        """Check if the real gateway and Socket.IO channel should be used."""
        return self.env_mode in (EnvironmentMode.PRODUCTION, EnvironmentMode.STAGING)

    @property
    def device_store_path(self) -> Path:
        """Full path of the device store file."""
        return Path(self.data_directory) / self.device_store_filename


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Configured application settings

    Example:
        >>> settings = get_settings()
        >>> print(settings.env_mode)
        EnvironmentMode.DEVELOPMENT
    """
    return Settings()


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    settings = get_settings()

    if settings.debug:
        level = logging.DEBUG

    log_format = "%(asctime)s │ %(levelname)-8s │ %(name)-25s │ %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)

    return logging.getLogger("tableside")
