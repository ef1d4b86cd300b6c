from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

WorkspaceRole = Literal["owner", "admin", "member"]
_ROLES: frozenset[str] = frozenset({"owner", "admin", "member"})


class SessionTokenError(ValueError):
    """Raised when workspace session tokens are invalid or expired."""


@dataclass(frozen=True)
class WorkspaceSession:
    actor_email: str
    role: WorkspaceRole
    expires_at: datetime
    workspace_id: str | None = None

    @property
    def can_manage_reminders(self) -> bool:
        return self.role in {"owner", "admin"}


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def create_workspace_session(
    *,
    actor_email: str,
    role: WorkspaceRole,
    ttl_minutes: int,
    workspace_id: str | None = None,
    now: datetime | None = None,
) -> WorkspaceSession:
    normalized_email = actor_email.strip().lower()
    if not normalized_email:
        raise SessionTokenError("session actor email is required")
    if role not in _ROLES:
        raise SessionTokenError(f"unsupported session role: {role}")
    issued_at = now or datetime.now(timezone.utc)
    return WorkspaceSession(
        actor_email=normalized_email,
        role=role,
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
        workspace_id=(workspace_id or "").strip() or None,
    )


def encode_session_token(session: WorkspaceSession, *, secret: str) -> str:
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_json = json.dumps(
        {
            "email": session.actor_email,
            "exp": int(session.expires_at.timestamp()),
            "role": session.role,
            "ws": session.workspace_id,
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    signature = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    return f"{payload_b64}.{signature}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> WorkspaceSession:
    if not token or "." not in token:
        raise SessionTokenError("invalid token format")
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    expected = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise SessionTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token payload decoding failed") from exc

    actor_email = str(payload_obj.get("email", "")).strip().lower()
    if not actor_email:
        raise SessionTokenError("token email missing")

    role = str(payload_obj.get("role", "")).strip().lower()
    if role not in _ROLES:
        raise SessionTokenError("token role invalid")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise SessionTokenError("token expired")

    raw_workspace = payload_obj.get("ws")
    workspace_id = str(raw_workspace).strip() if raw_workspace is not None else ""
    return WorkspaceSession(
        actor_email=actor_email,
        role=role,  # type: ignore[arg-type]
        expires_at=expires_at,
        workspace_id=workspace_id or None,
    )
