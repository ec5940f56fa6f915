"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    default_locale: str = "en"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS (task store)
    # ===========================================
    redis_url: str  # Required, no default
    task_ttl_hours: int = 24

    # ===========================================
    # TELEGRAM BOT
    # ===========================================
    telegram_bot_token: str  # Required, no default
    telegram_request_timeout: float = 30.0

    # ===========================================
    # SCHEDULER
    # ===========================================
    scheduler_workers: int = 3
    # 0 = max(workers * 2, 10)
    scheduler_queue_size: int = 0
    conversion_timeout_seconds: float = 600.0
    # Converter implementation, "package.module:ClassName". Empty = scheduler is not started.
    converter_class: str = ""

    # ===========================================
    # BURST AGGREGATION
    # ===========================================
    batch_first_file_window_seconds: float = 3.5
    batch_followup_window_seconds: float = 0.9
    batch_album_window_seconds: float = 2.0
    batch_manual_timeout_seconds: float = 10.0

    # ===========================================
    # CREDITS
    # ===========================================
    daily_credits: int = 50
    credits_transaction_timeout_seconds: float = 10.0
    credits_per_job: int = 1
    credits_per_heavy_job: int = 1
    # Files at or above this size are treated as heavy jobs (0 = disabled)
    heavy_file_size_mb: int = 50

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    @field_validator("scheduler_workers")
    @classmethod
    def _positive_workers(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("scheduler_workers must be positive")
        return v

    @field_validator("default_locale")
    @classmethod
    def _known_locale(cls, v: str) -> str:
        v = (v or "").strip().lower()
        return v if v in ("en", "ru") else "en"

    @property
    def queue_size(self) -> int:
        if self.scheduler_queue_size > 0:
            return self.scheduler_queue_size
        return max(self.scheduler_workers * 2, 10)

    @property
    def task_ttl_seconds(self) -> int:
        return self.task_ttl_hours * 3600

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
