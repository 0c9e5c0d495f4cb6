from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{BASE_DIR / 'booking.db'}"
    redis_url: str = "redis://localhost:6379/0"
    hold_backend: Literal["redis", "memory"] = "redis"

    hold_ttl_seconds: int = 120
    max_horizon_days: int = 90

    min_slot_minutes: int = 5
    max_slot_minutes: int = 120
    default_slot_minutes: int = 15
    max_buffer_minutes: int = 30

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BOOKING_",
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
