from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "foodshare-mailer"
    LOG_LEVEL: str = "INFO"

    ADMIN_TOKEN: str = "change-me-admin-token"
    AUTH_DISABLED: bool = False

    DATABASE_URL: str

    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # Providers. A provider without an API key is never ranked.
    RESEND_API_KEY: str | None = None
    BREVO_API_KEY: str | None = None
    MAILERSEND_API_KEY: str | None = None
    MAIL_FROM_ADDRESS: str = "noreply@foodshare.app"
    MAIL_FROM_NAME: str = "FoodShare"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    APP_BASE_URL: str = "https://foodshare.app"
    SYNC_PROVIDERS_ON_STARTUP: bool = True

    # Static priority (first = primary) and per-provider limits.
    PROVIDER_PRIORITY: list[str] = ["brevo", "mailersend", "resend"]
    CATEGORY_PROVIDER_PRIORITY: dict[str, list[str]] = {"auth": ["resend", "brevo", "mailersend"]}
    PROVIDER_DAILY_LIMITS: dict[str, int] = {"resend": 100, "brevo": 300, "mailersend": 400}
    PROVIDER_MONTHLY_LIMITS: dict[str, int] = {"resend": 3000, "brevo": 9000, "mailersend": 12000}

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_SUCCESS_THRESHOLD: int = 3
    CIRCUIT_COOLDOWN_SECONDS: int = 60
    CIRCUIT_PROBE_TIMEOUT_SECONDS: int = 300

    # Queue / dispatcher
    DISPATCH_BATCH_SIZE: int = 10
    DEFAULT_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_MINUTES: list[int] = [15, 30, 60]
    STALE_CLAIM_SECONDS: int = 3600
    ALL_EXHAUSTED_EVENT_WINDOW_SECONDS: int = 900

    # Suppressed recipients are skipped except for these categories.
    SUPPRESSION_EXEMPT_CATEGORIES: list[str] = ["auth"]

    # Health monitor
    HEALTH_LATENCY_CEILING_MS: int = 5000
    HEALTH_ALERT_COOLDOWN_SECONDS: int = 3600

    # Retention
    COMPLETED_RETENTION_DAYS: int = 7
    EVENT_RETENTION_DAYS: int = 30
    METRICS_RETENTION_DAYS: int = 90
    DLQ_REVIEW_AFTER_HOURS: int = 24

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
