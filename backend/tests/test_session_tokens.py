from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reminders_web.session_tokens import (
    SessionTokenError,
    create_workspace_session,
    decode_session_token,
    encode_session_token,
)

NOW = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


def test_session_token_round_trip_keeps_role_and_workspace() -> None:
    session = create_workspace_session(
        actor_email=" Owner@Example.com ",
        role="admin",
        ttl_minutes=30,
        workspace_id="ws-1",
        now=NOW,
    )
    token = encode_session_token(session, secret="session-secret")

    decoded = decode_session_token(token, secret="session-secret", now=NOW + timedelta(minutes=10))

    assert decoded.actor_email == "owner@example.com"
    assert decoded.role == "admin"
    assert decoded.workspace_id == "ws-1"
    assert decoded.can_manage_reminders is True


def test_member_sessions_cannot_manage_reminders() -> None:
    session = create_workspace_session(actor_email="m@example.com", role="member", ttl_minutes=5, now=NOW)

    assert session.workspace_id is None
    assert session.can_manage_reminders is False


def test_session_token_rejects_tampering_and_expiry() -> None:
    session = create_workspace_session(actor_email="a@example.com", role="owner", ttl_minutes=1, now=NOW)
    token = encode_session_token(session, secret="session-secret")

    with pytest.raises(SessionTokenError, match="signature mismatch"):
        decode_session_token(token + "0", secret="session-secret", now=NOW)
    with pytest.raises(SessionTokenError, match="expired"):
        decode_session_token(token, secret="session-secret", now=NOW + timedelta(minutes=2))


def test_unsupported_role_is_rejected() -> None:
    with pytest.raises(SessionTokenError, match="unsupported session role"):
        create_workspace_session(actor_email="a@example.com", role="viewer", ttl_minutes=1)  # type: ignore[arg-type]
