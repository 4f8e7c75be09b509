from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from smspay.currency import CurrencyDescriptor, get_currency, CURRENCIES
from smspay.errors import UnknownCurrencyError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Payment asset and confirmation policy
    CURRENCY: str = "bitcoin"
    MESSAGE_PRICE: Optional[Decimal] = Field(default=None, gt=Decimal("0"))
    MIN_CONFIRMATIONS: int = Field(default=6, ge=1)

    # Blockchain provider (BlockCypher)
    BLOCKCYPHER_TOKEN: str = ""
    BLOCKCYPHER_BASE_URL: str = "https://api.blockcypher.com/v1"
    UNCONFIRMED_SCAN_LIMIT: int = Field(default=150, ge=1, le=500)

    # SMS carrier (Twilio)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_FROM: str = ""
    TWILIO_BASE_URL: str = "https://api.twilio.com/2010-04-01"
    VALIDATE_CARRIER_SIGNATURE: bool = False

    # Absolute base the providers call back into
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Fixed receiving address used instead of generating one per session
    APP_PAYMENT_ADDRESS: Optional[str] = None

    GATEWAY_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    @field_validator("CURRENCY")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Reject unknown currencies at load time."""
        v = v.strip().lower()
        if v not in CURRENCIES:
            raise ValueError(
                f"unknown currency {v!r}, expected one of: {', '.join(sorted(CURRENCIES))}"
            )
        return v

    @property
    def currency(self) -> CurrencyDescriptor:
        """The configured currency, with the price override applied."""
        try:
            descriptor = get_currency(self.CURRENCY)
        except UnknownCurrencyError as e:
            raise ValueError(str(e)) from e
        if self.MESSAGE_PRICE is not None:
            descriptor = descriptor.with_price(self.MESSAGE_PRICE)
        return descriptor

    @property
    def gateways_configured(self) -> bool:
        return bool(
            self.BLOCKCYPHER_TOKEN
            and self.TWILIO_ACCOUNT_SID
            and self.TWILIO_AUTH_TOKEN
            and self.TWILIO_PHONE_FROM
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
