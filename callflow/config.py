"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the app can start with minimal configuration.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from callflow.schemas.billing import BillingPolicy


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Central configuration for the callflow service.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT
    server_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL Twilio uses to reach the webhooks",
    )

    # ── Supabase ─────────────────────────────────────────────────
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")

    # ── Twilio ───────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="", description="Twilio account SID")
    twilio_auth_token: str = Field(default="", description="Twilio auth token")
    twilio_api_key: str = Field(default="", description="Twilio API key SID for access tokens")
    twilio_api_secret: str = Field(default="", description="Twilio API key secret")
    twilio_app_sid: str = Field(default="", description="TwiML application SID for browser calling")

    # ── Auth ─────────────────────────────────────────────────────
    jwt_secret: str = Field(default="change-me", description="Secret used to verify bearer tokens")
    jwt_algorithm: str = Field(default="HS256", description="Bearer token signing algorithm")

    # ── Billing ──────────────────────────────────────────────────
    call_rate_per_minute: Decimal = Field(default=Decimal("0.02"), ge=0, description="USD per billable minute")
    monthly_free_minutes: int = Field(default=200, ge=0, description="Free recording minutes per calendar month")
    min_required_balance: Decimal = Field(default=Decimal("5.00"), ge=0, description="Balance needed once free minutes run out")
    phone_number_monthly_price: Decimal = Field(default=Decimal("2.00"), ge=0, description="Monthly price of a paid number")

    # ── Call routing ─────────────────────────────────────────────
    default_ring_timeout: int = Field(default=20, ge=5, le=600, description="Ring timeout when a rule has none")
    whisper_voice: str = Field(default="alice", description="Default TTS voice for whispers")
    whisper_language: str = Field(default="en-US", description="Default TTS language for whispers")
    whisper_max_chars: int = Field(default=100, ge=10, le=1000, description="Longest whisper text spoken")
    whisper_max_upload_bytes: int = Field(default=5 * 1024 * 1024, ge=1024, description="Largest whisper audio upload")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    def callback_url(self, path: str) -> str:
        """Absolute URL for a webhook path under ``server_url``."""
        return f"{self.server_url.rstrip('/')}/{path.lstrip('/')}"

    def billing_policy(self) -> BillingPolicy:
        return BillingPolicy(
            call_rate_per_minute=self.call_rate_per_minute,
            monthly_free_minutes=self.monthly_free_minutes,
            min_required_balance=self.min_required_balance,
            phone_number_monthly_price=self.phone_number_monthly_price,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
