"""Hands and Hope — Caregiver access service configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class CaregiverSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Database ───────────────────────────────────────────────
    database_url: str = ""
    postgres_user: str = "hands_and_hope"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "caregiver_access"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 5000

    # ── Activity log ───────────────────────────────────────────
    activity_log_retries: int = 1
    activity_log_retry_delay_seconds: float = 0.05
    activity_page_size: int = 50
    activity_page_size_max: int = 200

    # ── Credentials ────────────────────────────────────────────
    temp_password_length: int = 12

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = CaregiverSettings()
