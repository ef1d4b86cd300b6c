from __future__ import annotations

import os
from dataclasses import dataclass


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Invoice Reminders"
    api_prefix: str = "/api/v1"
    environment: str = "development"
    app_base_url: str = "http://localhost:3000"
    database_url: str = ""
    invoice_store_backend: str = "inmemory"
    reminder_store_backend: str = "inmemory"
    reminder_cron_token: str = ""
    reminder_batch_size: int = 100
    reminder_run_list_limit_max: int = 100
    reminder_trigger_rate_limit_max: int = 10
    reminder_trigger_rate_limit_window_seconds: int = 60
    admin_password: str = ""
    admin_session_secret: str = "dev-admin-secret"
    admin_session_ttl_minutes: int = 480
    pay_link_secret: str = "dev-pay-link-secret"
    pay_link_ttl_seconds: int = 60 * 60 * 24 * 90
    # Outbound email.
    email_sender_type: str = "stub"
    email_from: str = "Invoices <invoices@example.com>"
    resend_api_key: str = ""
    resend_api_base_url: str = "https://api.resend.com"
    email_timeout_seconds: int = 30
    # Delivery webhooks.
    resend_webhook_secret: str = ""
    delivery_webhook_signature_mode: str = "enforce"
    delivery_webhook_max_age_seconds: int = 300
    runtime_secret_guard_mode: str = "warn"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "Invoice Reminders"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        environment=os.getenv("APP_ENV", "development"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        database_url=os.getenv("DATABASE_URL", ""),
        invoice_store_backend=os.getenv("INVOICE_STORE_BACKEND", "inmemory"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        reminder_cron_token=os.getenv("REMINDER_CRON_TOKEN", ""),
        reminder_batch_size=_as_int(os.getenv("REMINDER_BATCH_SIZE"), 100),
        reminder_run_list_limit_max=_as_int(os.getenv("REMINDER_RUN_LIST_LIMIT_MAX"), 100),
        reminder_trigger_rate_limit_max=_as_int(os.getenv("REMINDER_TRIGGER_RATE_LIMIT_MAX"), 10),
        reminder_trigger_rate_limit_window_seconds=_as_int(
            os.getenv("REMINDER_TRIGGER_RATE_LIMIT_WINDOW_SECONDS"), 60
        ),
        admin_password=os.getenv("ADMIN_PASSWORD", ""),
        admin_session_secret=os.getenv("ADMIN_SESSION_SECRET", "dev-admin-secret"),
        admin_session_ttl_minutes=_as_int(os.getenv("ADMIN_SESSION_TTL_MINUTES"), 480),
        pay_link_secret=os.getenv("PAY_LINK_SECRET", "dev-pay-link-secret"),
        pay_link_ttl_seconds=_as_int(os.getenv("PAY_LINK_TTL_SECONDS"), 60 * 60 * 24 * 90),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "resend"},
        ),
        email_from=os.getenv("EMAIL_FROM", "Invoices <invoices@example.com>"),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        resend_api_base_url=os.getenv("RESEND_API_BASE_URL", "https://api.resend.com"),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        resend_webhook_secret=os.getenv("RESEND_WEBHOOK_SECRET", ""),
        delivery_webhook_signature_mode=_normalize_mode(
            os.getenv("DELIVERY_WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        delivery_webhook_max_age_seconds=_as_int(os.getenv("DELIVERY_WEBHOOK_MAX_AGE_SECONDS"), 300),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_password,
        defaults={"change-me-in-production", "admin", "password", "dev-admin-password"},
    ):
        issues.append("ADMIN_PASSWORD is empty or uses a placeholder value")
    if _is_placeholder(
        settings.admin_session_secret,
        defaults={"dev-admin-secret", "change-me-in-production"},
    ):
        issues.append("ADMIN_SESSION_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.pay_link_secret,
        defaults={"dev-pay-link-secret", "change-me-in-production"},
    ):
        issues.append("PAY_LINK_SECRET is empty or uses a development placeholder")
    if not settings.reminder_cron_token.strip():
        issues.append("REMINDER_CRON_TOKEN is empty; scheduled reminder runs cannot authenticate")
    if settings.delivery_webhook_signature_mode == "enforce" and not settings.resend_webhook_secret.strip():
        issues.append("RESEND_WEBHOOK_SECRET is required when DELIVERY_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.email_sender_type == "resend" and not settings.resend_api_key.strip():
        issues.append("RESEND_API_KEY is required when EMAIL_SENDER_TYPE=resend")
    return tuple(issues)
