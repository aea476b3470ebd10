# mayday/config.py
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
    apply_migrations_on_startup: bool = False

    # Law rule table
    # "file"     - packaged JSON rule set (or rule_table_path)
    # "postgres" - law_rules table
    rule_table_source: Literal["file", "postgres"] = "file"
    rule_table_path: str | None = None  # None = packaged West Virginia rules

    # Dispatch
    default_sla_minutes: int = 480  # 8 hours when the primary rule has no SLA
    dispatch_base_url: str = "https://petmayday.org/admin/aco/dispatch"
    police_notifications_enabled: bool = True

    # Notification retry worker
    retry_worker_enabled: bool = False        # Enable explicitly in the worker service
    retry_worker_poll_interval: float = 15.0  # Seconds between polls when idle
    retry_worker_batch_size: int = 20         # Notifications claimed per poll cycle
    retry_worker_stale_timeout: int = 300     # Seconds before a queued notification is requeued

    # Dispatch expiry sweeper
    expiry_sweeper_enabled: bool = False
    expiry_sweeper_interval: float = 60.0

    # Message carriers
    notifications_enabled: bool = True  # Master switch; false = DisabledCarrier

    # Twilio (sms + voice)
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None

    # Email (SMTP)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None

    # Push gateway (HTTP)
    push_gateway_url: str | None = None
    push_gateway_token: str | None = None
    push_timeout_seconds: float = 10.0  # A slow push counts as a failed attempt
    push_pool_limit: int = 20

    # Monitoring & Metrics
    enable_metrics: bool = True
    metrics_token: str | None = None
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    trust_proxy_headers: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def twilio_enabled(self) -> bool:
        """Check if Twilio sms/voice is configured"""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
        )

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("database_url", self.database_url),
        ]

        if self.notifications_enabled:
            required_fields.extend([
                ("twilio_account_sid", self.twilio_account_sid),
                ("twilio_auth_token", self.twilio_auth_token),
                ("twilio_phone_number", self.twilio_phone_number),
            ])

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.notifications_enabled:
        warnings.append("notifications_enabled=False: responder alerts are logged, not sent.")

    if s.notifications_enabled and not s.twilio_enabled:
        warnings.append("Twilio is not configured (sms and phone alerts will fail and retry).")

    if s.notifications_enabled and not s.smtp_enabled:
        warnings.append("SMTP is not configured (email alerts will fail and retry).")

    if s.run_mode in ("all", "worker") and not s.retry_worker_enabled:
        warnings.append(
            "retry_worker_enabled=False: failed notifications will not be retried by this process."
        )

    if s.run_mode in ("all", "worker") and not s.expiry_sweeper_enabled:
        warnings.append(
            "expiry_sweeper_enabled=False: overdue dispatches will not be flagged by this process."
        )

    if s.enable_metrics and not s.metrics_token:
        warnings.append("enable_metrics=True but metrics_token is not set: /metrics is unauthenticated.")

    if s.default_sla_minutes <= 0:
        warnings.append("default_sla_minutes must be positive; dispatches would expire immediately.")

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
