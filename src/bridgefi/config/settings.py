# src/bridgefi/config/settings.py
"""
Settings - Pydantic-based Configuration Management

Provides centralized configuration management using Pydantic Settings.
Supports environment variables (and a .env file) with validation.

Files that USE this module:
- bridgefi.app (loads settings and wires services)
- bridgefi.adapters.providers.* (rate source URLs and timeouts)
- bridgefi.adapters.payments.paystack (gateway credentials and mock mode)
- bridgefi.adapters.chain.jsonrpc (RPC endpoint and token configuration)
- bridgefi.application.* (margins, TTLs, confirmation and polling budgets)

Files that this module USES:
- bridgefi.shared.validators (address validation for treasury/token settings)
- bridgefi.domain.errors (ConfigurationError)
"""

from __future__ import annotations  # Enable postponed evaluation of annotations

from datetime import timedelta  # Durations derived from minute/millisecond settings
from pathlib import Path  # Object-oriented filesystem paths
from typing import Optional  # Type hints for optional values

from pydantic import Field, field_validator  # Data validation and field configuration
from pydantic_settings import BaseSettings, SettingsConfigDict  # Settings management with Pydantic

from bridgefi.domain.errors import ConfigurationError
from bridgefi.shared.validators import validate_address


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # --- Exchange rate ---
    rate_margin: float = Field(default=0.02, alias="EXCHANGE_RATE_MARGIN", ge=0.0, lt=1.0)
    rate_cache_ttl_ms: int = Field(default=30_000, alias="RATE_UPDATE_INTERVAL", ge=1_000)
    rate_source_timeout_seconds: float = Field(default=5.0, alias="RATE_SOURCE_TIMEOUT_SECONDS", gt=0)
    rate_max_stale_seconds: int = Field(default=120, alias="RATE_MAX_STALE_SECONDS", ge=0)
    binance_rate_url: str = Field(
        default="https://api.binance.com/api/v3/ticker/price?symbol=USDTNGN",
        alias="BINANCE_RATE_URL",
    )
    coingecko_rate_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price?ids=usd-coin&vs_currencies=ngn",
        alias="COINGECKO_RATE_URL",
    )

    # --- Quotes ---
    onramp_quote_ttl_minutes: int = Field(default=15, alias="ONRAMP_QUOTE_TTL_MINUTES", ge=1)
    offramp_quote_ttl_minutes: int = Field(default=5, alias="OFFRAMP_QUOTE_TTL_MINUTES", ge=1)

    # --- Settlement ---
    required_confirmations: int = Field(default=1, alias="REQUIRED_CONFIRMATIONS", ge=1)
    confirmation_timeout_seconds: float = Field(default=120.0, alias="CONFIRMATION_TIMEOUT_SECONDS", gt=0)
    confirmation_max_waits: int = Field(default=5, alias="CONFIRMATION_MAX_WAITS", ge=1)
    payment_poll_interval_seconds: float = Field(default=1.0, alias="PAYMENT_POLL_INTERVAL_SECONDS", ge=0)
    payment_poll_max_attempts: int = Field(default=60, alias="PAYMENT_POLL_MAX_ATTEMPTS", ge=1)

    # --- Paystack ---
    paystack_secret_key: str = Field(default="", alias="PAYSTACK_SECRET_KEY")
    paystack_base_url: str = Field(default="https://api.paystack.co", alias="PAYSTACK_BASE_URL")
    paystack_callback_url: str = Field(default="", alias="PAYSTACK_CALLBACK_URL")
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")
    onramp_default_email: str = Field(default="", alias="ONRAMP_DEFAULT_EMAIL")
    mock_payouts: bool = Field(default=False, alias="MOCK_PAYSTACK_TRANSFERS")

    # --- Chain ---
    chain_rpc_url: str = Field(default="https://rpc.sepolia.mantle.xyz", alias="MANTLE_RPC_URL")
    stable_token_address: str = Field(
        default="0x0D2aFc5b522aFFdd2E55a541acEc556611A0196F", alias="USDC_TOKEN_ADDRESS"
    )
    stable_token_decimals: int = Field(default=18, alias="USDC_TOKEN_DECIMALS", ge=0, le=36)
    treasury_address: str = Field(default="", alias="TREASURY_ADDRESS")

    # --- Persistence ---
    store_file: Optional[Path] = Field(default=None, alias="STORE_FILE")

    # --- HTTP ---
    http_timeout_seconds: int = Field(default=10, alias="HTTP_TIMEOUT_SECONDS", ge=1, le=60)
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT", ge=1, le=65535)

    # --- Logging (for server deployment) ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")
    log_dir: Optional[str] = Field(default=None, alias="LOG_DIR")
    log_stdout: bool = Field(default=True, alias="BRIDGEFI_LOG_STDOUT")
    log_max_bytes: int = Field(default=10 * 1024 * 1024, alias="LOG_MAX_BYTES")  # 10MB
    log_backup_count: int = Field(default=5, alias="LOG_BACKUP_COUNT")

    # Computed properties for convenience
    @property
    def rate_cache_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.rate_cache_ttl_ms)

    @property
    def rate_max_stale(self) -> timedelta:
        return timedelta(seconds=self.rate_max_stale_seconds)

    @property
    def onramp_quote_ttl(self) -> timedelta:
        return timedelta(minutes=self.onramp_quote_ttl_minutes)

    @property
    def offramp_quote_ttl(self) -> timedelta:
        return timedelta(minutes=self.offramp_quote_ttl_minutes)

    @property
    def effective_webhook_secret(self) -> str:
        """Webhook HMAC secret; Paystack signs with the account secret key by default."""
        return self.webhook_secret or self.paystack_secret_key

    @field_validator("treasury_address", "stable_token_address")
    @classmethod
    def validate_chain_address(cls, v: str) -> str:
        """Validate address format (empty means not configured)."""
        if v and not validate_address(v):
            raise ValueError("Invalid address format (expected 0x + 40 hex chars)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return v

    def require_live_credentials(self) -> None:
        """
        Check that the settings needed to move real money are present.

        Called by the composition root at startup. Mock mode still needs the
        Paystack key for charges, but not for payouts.

        Raises:
            ConfigurationError: If a required credential is missing
        """
        missing = []
        if not self.paystack_secret_key:
            missing.append("PAYSTACK_SECRET_KEY")
        if not self.treasury_address:
            missing.append("TREASURY_ADDRESS")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


# Global settings instance
settings = Settings()
