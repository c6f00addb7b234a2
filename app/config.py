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
    run_mode: Literal["all", "web", "worker"] = "all"  # "web" = HTTP only, "worker" = scheduler only
    log_level: str = "INFO"

    # Database
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

    # Dispatch cycle
    dispatch_enabled: bool = True              # Master switch for the periodic dispatch timer
    dispatch_interval_seconds: float = 300.0   # 5 minutes
    dispatch_batch_limit: int = 50             # Max due notifications fetched per cycle
    # Backoff for notifications whose multicast keeps failing.
    # 0 = disabled: undelivered rows are re-selected on every tick.
    dispatch_retry_base_delay_seconds: float = 0.0
    dispatch_retry_max_delay_seconds: float = 21600.0  # 6 hours

    # Retention
    retention_enabled: bool = True
    retention_days: int = 30
    retention_interval_seconds: float = 86400.0  # daily
    retention_run_hour: int | None = 2           # First run aligned to this local hour (None = run at startup)
    scheduler_timezone: str = "Australia/Sydney"

    # Firebase Cloud Messaging
    firebase_credentials_file: str | None = None  # Path to service account JSON
    firebase_credentials_json: str | None = None  # Inline service account JSON (takes precedence)
    firebase_project_id: str | None = None
    firebase_app_name: str = "push_dispatch"

    # Push appearance (per platform)
    push_android_icon: str = "notification_icon"
    push_android_color: str = "#7D0820"
    push_android_channel_id: str = "pam_reminders"
    push_apns_category: str = "PAM_REMINDER"
    push_web_icon: str = "/icons/pwa-192x192.png"
    push_web_badge: str = "/icons/pwa-96x96.png"
    push_web_tag: str = "pam-reminder"
    push_web_base_url: str | None = None  # FCM requires an absolute https link for web click-through

    # Security
    admin_token: str | None = None
    metrics_token: str | None = None  # If not set, /metrics requires admin_token

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def firebase_configured(self) -> bool:
        """Check if FCM service account credentials are available"""
        return bool(self.firebase_credentials_json or self.firebase_credentials_file)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("firebase_credentials_file or firebase_credentials_json", self.firebase_configured),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if not s.admin_token:
        warnings.append("admin_token is not set (admin endpoints will return 503).")

    # --- Transport ---
    if not s.firebase_configured:
        warnings.append(
            "Firebase credentials are not configured: dispatch cycles will be no-ops."
        )

    # --- Dispatch tuning ---
    if s.dispatch_batch_limit <= 0:
        warnings.append("dispatch_batch_limit <= 0: no notifications will ever be fetched.")
    if s.dispatch_interval_seconds < 30:
        warnings.append(
            f"dispatch_interval_seconds={s.dispatch_interval_seconds} is very short; "
            "overlapping cycles may send duplicate pushes."
        )
    if s.dispatch_retry_base_delay_seconds == 0:
        warnings.append(
            "dispatch_retry_base_delay_seconds=0: failing notifications are retried every tick."
        )

    # --- Retention ---
    if s.retention_days < 1:
        warnings.append(f"retention_days={s.retention_days}: delivered notifications are deleted almost immediately.")
    if s.retention_run_hour is not None and not 0 <= s.retention_run_hour <= 23:
        warnings.append(f"retention_run_hour={s.retention_run_hour} is out of range (0-23), ignoring alignment.")

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
