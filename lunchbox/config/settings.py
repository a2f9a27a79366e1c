from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Lunchbox Notifications"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:9002"
    LOG_LEVEL: str = "info"
    APP_BASE_URL: str = "http://localhost:9002"
    ADMIN_API_KEY: str = ""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./lunchbox.db"
    DB_AUTO_CREATE: bool = True

    # Reminder scheduling
    REMINDER_LEAD_MINUTES: int = 60
    OVERDUE_LAG_MINUTES: int = 60
    RESCHEDULE_ALERT_WINDOW_MINUTES: int = 10
    DAY_OF_WEEK_HORIZON_WEEKS: int = 4
    DEFAULT_TIMEZONE: str = "UTC"

    # Dispatch poller
    SCHEDULER_AUTOSTART: bool = True
    POLL_INTERVAL_SECONDS: float = 60
    WATCHDOG_INTERVAL_SECONDS: float = 30
    DISPATCH_CONCURRENCY: int = 5
    DISPATCH_BATCH_SIZE: int = 200
    CLAIM_TIMEOUT_SECONDS: int = 300
    REMINDER_RETENTION_DAYS: int = 7
    REMINDER_PURGE_INTERVAL_HOURS: int = 24
    SCHEDULER_STOP_GRACE_SECONDS: float = 30

    # Outbound mail (SMTP)
    MAIL_HOST: str = "smtp.gmail.com"
    MAIL_PORT: int = 587
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: str = ""
    MAIL_FROM_ADDRESS: str = ""
    MAIL_FROM_NAME: str = "Lunchbox AI"
    MAIL_USE_SSL: bool = False
    MAIL_SEND_TIMEOUT_SECONDS: float = 10

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
