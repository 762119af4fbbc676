"""
Engine settings.

Every scheduling and escrow constant lives here so deployments can tune the
policy through ``ESCROW_*`` environment variables or a ``.env`` file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EscrowSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ESCROW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(default="development", description="development, staging or production")
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR, CRITICAL")

    min_session_minutes: int = Field(default=15, gt=0)
    max_session_minutes: int = Field(default=240, gt=0)

    early_start_minutes: int = Field(default=15, ge=0, description="How early a session may be started")
    late_start_minutes: int = Field(default=30, ge=0, description="How late a session may still be started")

    full_refund_hours: float = Field(default=24, ge=0)
    partial_refund_hours: float = Field(default=2, ge=0)
    partial_refund_percent: int = Field(default=50, ge=0, le=100)

    participation_bonus_percent: int = Field(default=20, ge=0, le=100)

    max_history_limit: int = Field(default=100, gt=0, description="Upper bound for HTTP history queries")
    seed_demo_data: bool = Field(default=False, description="Seed demo users and matches on startup")


@lru_cache
def get_settings() -> EscrowSettings:
    return EscrowSettings()
