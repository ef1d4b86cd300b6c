from __future__ import annotations

import os

from reminders_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def _production_secrets() -> dict[str, str | None]:
    return {
        "ADMIN_PASSWORD": "prod-admin-password-001",
        "ADMIN_SESSION_SECRET": "prod-admin-secret-001",
        "PAY_LINK_SECRET": "prod-pay-link-secret-001",
        "REMINDER_CRON_TOKEN": "prod-cron-token-001",
        "RESEND_WEBHOOK_SECRET": "whsec_cHJvZC13ZWJob29rLXNlY3JldA==",
        "DELIVERY_WEBHOOK_SIGNATURE_MODE": "enforce",
        "EMAIL_SENDER_TYPE": "stub",
        "RESEND_API_KEY": None,
    }


def test_get_settings_defaults() -> None:
    names = [
        "DELIVERY_WEBHOOK_SIGNATURE_MODE",
        "EMAIL_SENDER_TYPE",
        "REMINDER_BATCH_SIZE",
        "RUNTIME_SECRET_GUARD_MODE",
    ]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.delivery_webhook_signature_mode == "enforce"
        assert settings.email_sender_type == "stub"
        assert settings.reminder_batch_size == 100
        assert settings.runtime_secret_guard_mode == "warn"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_unknown_modes_fall_back_to_defaults() -> None:
    previous = {
        "DELIVERY_WEBHOOK_SIGNATURE_MODE": _set_env("DELIVERY_WEBHOOK_SIGNATURE_MODE", "sometimes"),
        "REMINDER_BATCH_SIZE": _set_env("REMINDER_BATCH_SIZE", "many"),
    }
    try:
        settings = get_settings()
        assert settings.delivery_webhook_signature_mode == "enforce"
        assert settings.reminder_batch_size == 100
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_complete_secret_set_reports_no_issues() -> None:
    previous = {name: _set_env(name, value) for name, value in _production_secrets().items()}
    try:
        assert runtime_secret_issues(get_settings()) == ()
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_placeholder_secrets_are_reported() -> None:
    overrides = {
        **_production_secrets(),
        "ADMIN_SESSION_SECRET": "dev-admin-secret",
        "PAY_LINK_SECRET": "change-me",
        "REMINDER_CRON_TOKEN": "",
    }
    previous = {name: _set_env(name, value) for name, value in overrides.items()}
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("ADMIN_SESSION_SECRET" in issue for issue in issues)
        assert any("PAY_LINK_SECRET" in issue for issue in issues)
        assert any("REMINDER_CRON_TOKEN" in issue for issue in issues)
        assert not any("ADMIN_PASSWORD" in issue for issue in issues)
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_mode_dependent_secrets_follow_their_modes() -> None:
    overrides = {
        **_production_secrets(),
        "RESEND_WEBHOOK_SECRET": None,
        "EMAIL_SENDER_TYPE": "resend",
    }
    previous = {name: _set_env(name, value) for name, value in overrides.items()}
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("RESEND_WEBHOOK_SECRET is required" in issue for issue in issues)
        assert any("RESEND_API_KEY is required" in issue for issue in issues)

        os.environ["DELIVERY_WEBHOOK_SIGNATURE_MODE"] = "log_only"
        os.environ["RESEND_API_KEY"] = "re_live_key"
        assert runtime_secret_issues(get_settings()) == ()
    finally:
        for name, value in previous.items():
            _restore_env(name, value)
