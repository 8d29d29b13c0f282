# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Storage
    # "postgres" - asyncpg pool + LISTEN/NOTIFY change feeds
    # "memory"   - in-process stores (dev, tests)
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Database
    expected_schema_version: str = "001_dispatch_schema.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None
    payment_webhook_token: str | None = None  # Shared secret for the payment capture callback
    allowed_origins: list[str] = ["*"]

    # Dispatch
    default_delivery_range_km: float = 20.0
    default_max_reschedules: int = 2
    obfuscation_radius_m: float = 300.0
    write_retry_attempts: int = 3  # Re-read/re-check rounds after a lost optimistic write

    # Payment collaborator
    payment_timeout_seconds: float = 15.0
    payment_currency: str = "eur"

    # Pricing helper (quotes only, the stored price comes from the client)
    price_base: float = 5.00
    price_per_km: float = 2.00
    price_minimum: float = 8.00

    # Delivery reminders
    reminder_sweep_enabled: bool = False      # Master switch - enable explicitly in worker service
    reminder_interval_seconds: float = 3600.0
    reminder_lead_time_minutes: int = 120

    # Monitoring & Metrics
    enable_metrics: bool = True
    metrics_token: str | None = None  # Token for /metrics; when unset, admin_token is accepted

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"host={self.pghost} port={self.pgport} "
            f"dbname={self.pgdatabase} user={self.pguser} "
            f"password={self.pgpassword} "
            f"connect_timeout={self.pg_connect_timeout} "
            f"options='-c statement_timeout={self.pg_statement_timeout_ms} "
            f"-c idle_in_transaction_session_timeout={self.pg_idle_in_tx_timeout_ms}'"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("admin_token", self.admin_token),
            ("payment_webhook_token", self.payment_webhook_token),
        ]
        if self.storage_backend == "postgres":
            required_fields.append(("database_url", self.database_url))

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.is_production and s.storage_backend == "memory":
        warnings.append("prod: storage_backend=memory (jobs are lost on restart).")

    if not s.payment_webhook_token:
        warnings.append("payment_webhook_token is not set (payment confirmation callback is disabled).")

    if s.enable_metrics and not (s.metrics_token or s.admin_token):
        warnings.append("enable_metrics=True but neither metrics_token nor admin_token is set (/metrics is closed).")

    if s.obfuscation_radius_m <= 0:
        warnings.append("obfuscation_radius_m <= 0: exact coordinates will be shown before acceptance.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
