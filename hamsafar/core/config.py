from pydantic_settings import BaseSettings, SettingsConfigDict

from hamsafar.gateway.types import DispatchConfig, DispatchPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    upstream_timeout_seconds: float = 60.0

    # Admission (token bucket). Defaults target ~60% of a 15 RPM quota.
    bucket_capacity: int = 10
    refill_rate: float = 0.15  # tokens per second

    # Throttling retries
    max_retries: int = 5
    default_retry_after: float = 60.0  # seconds, used when upstream sends no hint
    backoff_ceiling: float = 300.0

    # Sequencing
    dispatch_policy: DispatchPolicy = DispatchPolicy.SERIAL
    inter_request_delay: float = 5.0  # seconds between serial requests
    max_queue_depth: int = 50
    request_timeout_seconds: float | None = None

    # Conversation history
    history_limit: int = 20

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def dispatch_config(self) -> DispatchConfig:
        return DispatchConfig(
            bucket_capacity=self.bucket_capacity,
            refill_rate=self.refill_rate,
            max_retries=self.max_retries,
            default_retry_after=self.default_retry_after,
            backoff_ceiling=self.backoff_ceiling,
            inter_request_delay=self.inter_request_delay,
            max_queue_depth=self.max_queue_depth,
            request_timeout_seconds=self.request_timeout_seconds,
            policy=self.dispatch_policy,
        )


settings = Settings()


def validate_settings_for_production(cfg: Settings | None = None) -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    cfg = cfg or settings
    errors: list[str] = []

    if not cfg.gemini_api_key:
        errors.append("GEMINI_API_KEY must be set")

    if cfg.bucket_capacity < 1:
        errors.append("BUCKET_CAPACITY must be at least 1")

    if cfg.refill_rate <= 0:
        errors.append("REFILL_RATE must be positive")

    if cfg.max_retries < 1:
        errors.append("MAX_RETRIES must be at least 1")

    if cfg.backoff_ceiling < cfg.default_retry_after:
        errors.append("BACKOFF_CEILING must not be below DEFAULT_RETRY_AFTER")

    if cfg.max_queue_depth < 1:
        errors.append("MAX_QUEUE_DEPTH must be at least 1")

    if cfg.history_limit < 1:
        errors.append("HISTORY_LIMIT must be at least 1")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
