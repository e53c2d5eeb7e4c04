from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "relay_user"
    postgres_password: str = "changeme"
    postgres_db: str = "llm_relay"
    database_url: str = ""  # full SQLAlchemy URL, overrides postgres_* when set

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker/backend)
    redis_url: str = "redis://localhost:6379/0"

    # Queue admission & dispatch
    queue_batch_size: int = 10
    queue_dispatch_interval_seconds: float = 2.0
    queue_cleanup_interval_seconds: float = 3600.0
    queue_retention_days: int = 7
    queue_default_max_retries: int = 3

    # Retry engine & circuit breaker
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30_000
    retry_backoff_multiplier: float = 2.0
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout_seconds: float = 60.0

    # Concurrency governor: permits per provider key
    provider_max_concurrency: dict[str, int] = {"glm": 1, "openai": 5, "deepseek": 3}
    default_max_concurrency: int = 5

    # Strict serialization controller
    serial_max_retries: int = 3
    serial_retry_delay_seconds: float = 5.0
    serial_processing_timeout_seconds: float = 300.0
    serial_poll_interval_seconds: float = 1.0
    # Celery delivery: dedicated queue (worker runs with --concurrency=1) and broker-wide lock
    serial_queue_name: str = "llm_serial"
    serial_lock_key: str = "llm_relay:serial"

    # Provider credentials (fallback strategies)
    glm_api_key: str = ""
    glm_base_url: str = "https://open.bigmodel.cn/api/paas/v4"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    deepseek_api_key: str = ""
    deepseek_base_url: str = "https://api.deepseek.com/v1"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    run_dispatcher_in_app: bool = True  # start the dispatch ticker in the API process

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.queue_batch_size < 1:
        errors.append("QUEUE_BATCH_SIZE must be at least 1")

    if settings.queue_dispatch_interval_seconds <= 0:
        errors.append("QUEUE_DISPATCH_INTERVAL_SECONDS must be positive")

    if settings.retry_base_delay_ms > settings.retry_max_delay_ms:
        errors.append("RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_MS")

    if any(limit < 1 for limit in settings.provider_max_concurrency.values()):
        errors.append("PROVIDER_MAX_CONCURRENCY values must be at least 1")

    if settings.app_env == "production":
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if settings.postgres_password == "changeme" and not settings.database_url:
            errors.append("POSTGRES_PASSWORD must be changed in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
