from __future__ import annotations

import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "WorkTimer"
    host: str = os.getenv("WT_HOST", "127.0.0.1")
    port: int = int(os.getenv("WT_PORT", "8080"))

    storage_backend: str = os.getenv("WT_STORAGE", "sqlite")
    sqlite_path: Path = Path(os.getenv("WT_SQLITE_PATH", "./data/worktimer.db"))

    timezone: str = os.getenv("WT_TIMEZONE", os.getenv("TZ", "Asia/Tokyo"))

    break_task: str = os.getenv("WT_BREAK_TASK", "break")
    other_task: str = os.getenv("WT_OTHER_TASK", "other")
    auto_closure_memo: str = os.getenv("WT_AUTO_CLOSURE_MEMO", "(automatic checkout)")

    user_id_header: str = os.getenv("WT_USER_ID_HEADER", "X-User-Id")
    user_name_header: str = os.getenv("WT_USER_NAME_HEADER", "X-User-Name")

    transaction_retries: int = int(os.getenv("WT_TRANSACTION_RETRIES", "3"))

    executor_interval_seconds: int = int(os.getenv("WT_EXECUTOR_INTERVAL", "60"))
    executor_lookahead_seconds: int = int(os.getenv("WT_EXECUTOR_LOOKAHEAD", "60"))
    executor_max_skew_wait_seconds: int = int(os.getenv("WT_EXECUTOR_MAX_SKEW_WAIT", "15"))
    executor_max_workers: int = int(os.getenv("WT_EXECUTOR_MAX_WORKERS", "1"))
    executor_embedded: bool = os.getenv("WT_EXECUTOR_EMBEDDED", "false").lower() == "true"
    midnight_sweep: bool = os.getenv("WT_MIDNIGHT_SWEEP", "true").lower() == "true"

    @field_validator("transaction_retries", "executor_max_workers")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, int(value))

    @field_validator("executor_lookahead_seconds", "executor_max_skew_wait_seconds")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        return max(0, int(value))


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
