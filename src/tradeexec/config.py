from __future__ import annotations

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    decision_shared_secret: SecretStr | None = Field(
        default=None, alias="DECISION_SHARED_SECRET"
    )

    quarantine_threshold: int = Field(default=3, alias="QUARANTINE_THRESHOLD")
    quarantine_duration_seconds: int = Field(default=300, alias="QUARANTINE_DURATION_SECONDS")

    nonce_ttl_seconds: int = Field(default=300, alias="NONCE_TTL_SECONDS")
    timestamp_tolerance_seconds: int = Field(default=60, alias="TIMESTAMP_TOLERANCE_SECONDS")
    global_rate_limit_per_second: int = Field(default=100, alias="GLOBAL_RATE_LIMIT_PER_SECOND")
    decision_rate_limit_per_minute: int = Field(
        default=3, alias="DECISION_RATE_LIMIT_PER_MINUTE"
    )
    user_rate_limit_per_minute: int = Field(default=60, alias="USER_RATE_LIMIT_PER_MINUTE")

    reconcile_enabled: bool = Field(default=True, alias="RECONCILE_ENABLED")
    reconcile_interval_seconds: int = Field(default=300, alias="RECONCILE_INTERVAL_SECONDS")
    reconcile_startup_delay_seconds: int = Field(
        default=15, alias="RECONCILE_STARTUP_DELAY_SECONDS"
    )
    stale_order_timeout_seconds: int = Field(default=1200, alias="STALE_ORDER_TIMEOUT_SECONDS")
    reconcile_call_delay_ms: int = Field(default=150, alias="RECONCILE_CALL_DELAY_MS")
    reconcile_max_order_age_days: int = Field(default=3, alias="RECONCILE_MAX_ORDER_AGE_DAYS")

    state_db_path: str = Field(default="tradeexec_state.db", alias="STATE_DB_PATH")
    credentials_file: str | None = Field(default=None, alias="CREDENTIALS_FILE")

    notify_webhook_url: str | None = Field(default=None, alias="NOTIFY_WEBHOOK_URL")
    notify_webhook_secret: SecretStr | None = Field(default=None, alias="NOTIFY_WEBHOOK_SECRET")
    notify_timeout_seconds: float = Field(default=5.0, alias="NOTIFY_TIMEOUT_SECONDS")

    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    http_host: str = Field(default="0.0.0.0", alias="HTTP_HOST")
    http_port: int = Field(default=8080, alias="HTTP_PORT")

    @field_validator(
        "quarantine_threshold",
        "quarantine_duration_seconds",
        "nonce_ttl_seconds",
        "global_rate_limit_per_second",
        "decision_rate_limit_per_minute",
        "user_rate_limit_per_minute",
        "reconcile_interval_seconds",
        "stale_order_timeout_seconds",
        "reconcile_max_order_age_days",
    )
    def validate_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name.upper()} must be > 0")
        return value

    @field_validator(
        "timestamp_tolerance_seconds",
        "reconcile_startup_delay_seconds",
        "reconcile_call_delay_ms",
    )
    def validate_non_negative(cls, value: int, info: ValidationInfo) -> int:
        if value < 0:
            raise ValueError(f"{info.field_name.upper()} must be >= 0")
        return value

    @field_validator("notify_timeout_seconds")
    def validate_notify_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("NOTIFY_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("notify_webhook_url")
    def normalize_webhook_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().rstrip("/")
        return cleaned or None

    def decision_secret(self) -> str:
        if self.decision_shared_secret is None:
            raise ValueError("DECISION_SHARED_SECRET is required to verify decision requests")
        secret = self.decision_shared_secret.get_secret_value()
        if not secret.strip():
            raise ValueError("DECISION_SHARED_SECRET must not be blank")
        return secret
