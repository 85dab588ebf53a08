"""Bridge configuration, read once from the environment (and .env)."""

from __future__ import annotations

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the invoicing bridge."""

    # Siigo API
    sigo_api_url: str = "https://api.siigo.com"
    sigo_api_key: str = ""
    sigo_username: str = ""
    sigo_partner_id: str = "sigo-bridge"
    sigo_timeout: float = 30.0  # seconds, per data call
    sigo_auth_timeout: float = 15.0  # seconds, /auth only
    sigo_max_retries: int = 3
    sigo_retry_base_delay: float = 0.5
    sigo_breaker_failure_threshold: int = 3
    sigo_breaker_success_threshold: int = 2
    sigo_breaker_reset_seconds: float = 30.0
    sigo_breaker_max_reset_seconds: float = 180.0

    # Document defaults
    siigo_document_id: int = 1
    siigo_tax_id: int | None = None
    siigo_payment_method_id: int | None = None
    siigo_seller_id: int | None = None
    sigo_serie_default: str = "FV"
    moneda_default: str = "COP"
    iva_rate: Decimal = Field(default=Decimal("0.19"), ge=0, lt=1)
    prices_include_tax: bool = False

    # Hub webhooks
    hub_webhook_secret: str = ""
    hub_notification_url: str = ""
    hub_notification_timeout: float = 5.0

    # Server
    internal_api_key: str = ""
    allowed_origins: str = "http://localhost:3000"
    port: int = 3000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


settings = Settings()
