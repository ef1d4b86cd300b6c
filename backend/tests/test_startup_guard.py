from __future__ import annotations

import os

import pytest

from reminders_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "ADMIN_PASSWORD": "prod-admin-password-001",
        "ADMIN_SESSION_SECRET": "prod-admin-secret-001",
        "PAY_LINK_SECRET": "prod-pay-link-secret-001",
        "REMINDER_CRON_TOKEN": "prod-cron-token-001",
        "RESEND_WEBHOOK_SECRET": "whsec_cHJvZC13ZWJob29rLXNlY3JldA==",
        "DELIVERY_WEBHOOK_SIGNATURE_MODE": "enforce",
        "EMAIL_SENDER_TYPE": "stub",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
    }


def test_create_app_starts_with_complete_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Invoice Reminders"
        paths = {route.path for route in app.routes}
        assert "/api/v1/reminders/run" in paths
        assert "/api/v1/reminders/webhooks/resend" in paths
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_webhook_secret_missing_in_enforce_mode() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "RESEND_WEBHOOK_SECRET": None})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "runtime secret guard blocked startup" in message
        assert "RESEND_WEBHOOK_SECRET is required" in message
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "REMINDER_CRON_TOKEN": None,
        }
    )
    try:
        with caplog.at_level("WARNING", logger="reminders_web.main"):
            create_app()
        assert any("REMINDER_CRON_TOKEN is empty" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
