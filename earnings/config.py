import logging
from datetime import timezone, tzinfo
from decimal import Decimal
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # JWT
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Frontend URL for CORS and referral links
    frontend_url: str = "http://localhost:3000"

    # Admin account seeded into every new store created with seed=True
    admin_email: str = "admin@rtr.local"
    admin_password: str = "change-me-admin"
    admin_name: str = "Admin"

    # Profit accrual sweep
    accrual_interval_seconds: int = 60 * 60
    profit_epsilon: Decimal = Decimal("0.01")

    # Calendar day boundary for the spin wheel
    platform_timezone: str = "UTC"

    # JSON backup file loaded at startup and written at shutdown (empty = memory only)
    backup_path: str = ""

    log_level: str = "INFO"

    def tz(self) -> tzinfo:
        if self.platform_timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.platform_timezone)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
