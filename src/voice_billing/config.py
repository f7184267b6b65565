"""Billing configuration using pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PAYPAL_LIVE_URL = "https://api-m.paypal.com"
PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"


class Settings(BaseSettings):
    """Settings loaded from environment variables or a `.env` file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "voice_billing"

    # Logging
    LOG_LEVEL: str = "INFO"
    LEDGER_LOG_PATH: Path = Path("logs/billing_ledger.jsonl")

    # PayPal
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_ENVIRONMENT: str = "sandbox"
    PAYPAL_WEBHOOK_ID: str = ""
    PAYPAL_PRODUCT_ID: str = "SAAS_VOICE_ASSISTANT"
    PAYPAL_BRAND_NAME: str = "AI Voice Assistant"
    APP_URL: str = "http://localhost:3000"

    # Platform-owned number used for US calls when a user has no provider
    DEFAULT_US_VAPI_PHONE_NUMBER_ID: str = "c55b06b7-d11b-45f4-8c5c-ed25b3f5fe56"

    PRICING_CACHE_TTL_SECONDS: int = 300
    LOW_BALANCE_NOTIFICATIONS: bool = True

    @property
    def paypal_base_url(self) -> str:
        if self.PAYPAL_ENVIRONMENT.strip().lower() == "production":
            return PAYPAL_LIVE_URL
        return PAYPAL_SANDBOX_URL


settings = Settings()
