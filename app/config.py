from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendSettings(BaseModel):
    """Managed database REST endpoint holding customers and invoice records."""

    base_url: AnyHttpUrl | None = None
    api_key: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)


class TwilioSettings(BaseModel):
    enabled: bool = True
    account_sid: str | None = None
    auth_token: str | None = None
    base_url: str = "https://api.twilio.com"

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.account_sid and self.auth_token)


class RetellSettings(BaseModel):
    enabled: bool = True
    api_key: str | None = None
    base_url: str = "https://api.retellai.com"

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.api_key)


class StripeSettings(BaseModel):
    api_key: str | None = None
    base_url: str = "https://api.stripe.com"
    test_mode: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Nested provider settings use ``__`` as delimiter, e.g.
    ``BILLING_STRIPE__API_KEY``.
    """

    app_name: str = Field(default="Billing Administration Service")
    cors_origins: List[AnyHttpUrl] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    use_mock_data: bool = Field(default=True)
    currency: str = Field(default="cad")
    default_due_in_days: int = Field(default=30, ge=0, le=365)
    default_markup_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=10000)
    usage_exchange_rate: Decimal = Field(default=Decimal("1"), gt=0)
    request_timeout: float = Field(default=10.0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5)
    retry_max_delay: float = Field(default=8.0)
    customer_timeout: float = Field(default=120.0, gt=0)
    max_wizards: int = Field(default=100, ge=1)
    mfa_issuer: str = Field(default="NexaSync Billing")

    backend: BackendSettings = Field(default_factory=BackendSettings)
    twilio: TwilioSettings = Field(default_factory=TwilioSettings)
    retell: RetellSettings = Field(default_factory=RetellSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    @field_validator("cors_origins", mode="before")
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("currency")
    def _lower_currency(cls, value: str) -> str:
        return value.strip().lower()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
