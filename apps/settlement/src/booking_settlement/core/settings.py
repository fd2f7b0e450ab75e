from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./settlement.db"
    database_echo: bool = False

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_request_timeout_seconds: int = 30

    # Booking resolution
    refund_grace_hours: float = 12.0

    # Host wallets
    settlement_currency: str = "USD"

    # Refunds
    refund_lookup_limit: int = 10

    # Wallet withdrawals
    withdrawal_minimum_balance: Decimal = Decimal("10.00")
    withdrawal_transfer_lookback_hours: int = 48
    withdrawal_transfer_list_limit: int = 100

    # Notifications
    notification_sender: str = "Settlement Desk"
    notification_url: str = "/"

    # Pipeline triggering
    settlement_scheduler_enabled: bool = True
    settlement_schedule_path: str = "config/schedules.toml"
    pipeline_stage_gap_seconds: int = 60
    pipeline_trigger_label: str = "scheduler"

    # Stage log files
    log_dir: str | None = "logs"

    @field_validator("settlement_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> str:
        if value is None:
            return "USD"
        return str(value).strip().upper() or "USD"

    @field_validator("withdrawal_minimum_balance")
    @classmethod
    def _validate_minimum_balance(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("withdrawal_minimum_balance must not be negative")
        return value.quantize(Decimal("0.01"))

    @field_validator("log_dir", mode="before")
    @classmethod
    def _parse_log_dir(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        if not text or text.lower() in {"none", "off", "false"}:
            return None
        return text


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
