"""
Trust Ledger configuration.

Loaded from environment variables prefixed with TRUST_LEDGER_ (or a .env
file), e.g. TRUST_LEDGER_MIN_CREDIT_BALANCE=5.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TRUST_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: Literal["development", "staging", "production", "testing"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = False
    cors_origins: str = Field(default="*", description="Comma-separated CORS origins")

    # Ledger
    cas_max_attempts: int = Field(default=3, ge=1)
    daily_grant_amount: int = Field(default=1, gt=0)
    daily_grant_interval_hours: float = Field(default=24.0, gt=0)
    initialization_grace_hours: float = Field(default=1.0, ge=0)
    # (minimum score, points) pairs, highest tier first
    score_tiers: list[tuple[Decimal, int]] = Field(
        default=[(Decimal("1.5"), 15), (Decimal("1.0"), 10), (Decimal("0.5"), 7)]
    )

    # Vouching and eligibility
    min_vouch_trust_score: Decimal = Decimal("1.0")
    min_trustworthy_vouches: int = Field(default=1, ge=1)
    min_credit_balance: int = Field(default=5, ge=0)

    # Referrals
    referral_points: int = Field(default=1, gt=0)

    # Ego score service
    maxflow_api_url: str = "https://maxflow.one"
    maxflow_timeout_seconds: float = Field(default=30.0, gt=0)
    maxflow_max_attempts: int = Field(default=2, ge=1)
    trust_score_cache_ttl_seconds: float = Field(default=300.0, ge=0)

    # Auto-deposit
    auto_deposit_min_amount: Decimal = Decimal("10.0")
    auto_deposit_fee_buffer: Decimal = Decimal("1.0")
    deposit_executor_url: Optional[str] = None
    deposit_max_attempts: int = Field(default=3, ge=1)
    deposit_retry_delay_seconds: float = Field(default=5.0, ge=0)
    deposit_timeout_seconds: float = Field(default=60.0, gt=0)
    monitor_lock_timeout_seconds: float = Field(default=90.0, gt=0)

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
