"""Service configuration from environment variables and .env file."""

import logging
from decimal import Decimal
from typing import Literal, Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Pydantic loads values from OS environment variables at instantiation time
    and from the .env file when present. Instantiate through ``get_settings()``.
    """

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./rentledger.db",
        description="SQLAlchemy connection string",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/server.log", description="Server log file")

    # API
    api_title: str = Field(default="RentLedger API", description="API title")
    api_version: str = Field(default="0.1.0", description="API version")

    # M-Pesa (Daraja) provider
    mpesa_env: Literal["sandbox", "production"] = Field(default="sandbox")
    mpesa_consumer_key: str = Field(default="", description="Daraja consumer key")
    mpesa_consumer_secret: str = Field(default="", description="Daraja consumer secret")
    mpesa_shortcode: str = Field(default="", description="Business shortcode / paybill")
    mpesa_passkey: str = Field(default="", description="Lipa na M-Pesa online passkey")
    mpesa_callback_url: str = Field(default="", description="STK push callback URL")
    mpesa_timeout_seconds: float = Field(default=10.0, description="Provider call timeout")
    mpesa_token_ttl_seconds: int = Field(
        default=3500, description="Access token cache lifetime (token lives 3599s)"
    )

    # Direct-entry paybill number; requests quoting another number are rejected
    paybill_number: Optional[str] = Field(default=None)

    # Billing defaults for batch jobs when the caller omits them
    grace_period_days: int = Field(default=5, ge=0)
    late_fee_percentage: Decimal = Field(default=Decimal("5"), ge=0)

    # Channels allowed to post an additional payment into a settled period
    additional_payment_channels: list[str] = Field(default_factory=lambda: ["bank_webhook"])

    # Background posting pool
    posting_workers: int = Field(default=4, ge=1)

    @property
    def mpesa_base_url(self) -> str:
        return MPESA_BASE_URLS[self.mpesa_env]

    def billing_parameters(
        self,
        grace_period_days: Optional[int] = None,
        late_fee_percentage: Optional[Decimal | float] = None,
    ) -> tuple[int, Decimal]:
        """Caller-supplied grace days and late-fee percentage, or the defaults."""
        grace = self.grace_period_days if grace_period_days is None else grace_period_days
        pct = (
            self.late_fee_percentage
            if late_fee_percentage is None
            else Decimal(str(late_fee_percentage))
        )
        return grace, pct

    def validate_mpesa(self) -> list[str]:
        """Return the names of missing M-Pesa settings (empty when configured)."""
        required = {
            "MPESA_CONSUMER_KEY": self.mpesa_consumer_key,
            "MPESA_CONSUMER_SECRET": self.mpesa_consumer_secret,
            "MPESA_SHORTCODE": self.mpesa_shortcode,
            "MPESA_PASSKEY": self.mpesa_passkey,
            "MPESA_CALLBACK_URL": self.mpesa_callback_url,
        }
        return [name for name, value in required.items() if not value]

    def log_mpesa_config(self) -> None:
        """Log provider configuration status without exposing secrets."""
        missing = self.validate_mpesa()
        if missing:
            logger.warning("M-Pesa not fully configured, missing: %s", ", ".join(missing))
            return
        logger.info(
            "M-Pesa configured: env=%s shortcode=%s consumer_key=%s...",
            self.mpesa_env,
            self.mpesa_shortcode,
            self.mpesa_consumer_key[:4],
        )


# Lazy loader so the .env file is read after the entry point loads it
_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings instance (used by tests)."""
    global _settings_instance
    _settings_instance = None


__all__ = ["Settings", "get_settings", "reset_settings", "MPESA_BASE_URLS"]
