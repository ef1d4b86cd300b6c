from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

DEFAULT_PAY_LINK_TTL_SECONDS = 60 * 60 * 24 * 90


class PayLinkError(ValueError):
    """Raised when pay-link tokens cannot be issued or fail verification."""


@dataclass(frozen=True)
class PayLinkPayload:
    invoice_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class UnsubscribePayload:
    workspace_id: str | None
    user_email: str | None
    customer_email: str
    issued_at: datetime
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def _encode_token(claims: dict[str, object], *, secret: str, ttl_seconds: int, now: datetime | None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    payload_json = json.dumps(
        {
            **claims,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(seconds=max(1, ttl_seconds))).timestamp()),
        },
        separators=(",", ":"),
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def _decode_token(token: str, *, secret: str) -> dict:
    if not token or "." not in token:
        raise PayLinkError("invalid token format")
    if not secret.strip():
        raise PayLinkError("PAY_LINK_SECRET is not configured")

    payload_b64, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
        raise PayLinkError("token signature mismatch")
    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise PayLinkError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise PayLinkError("token payload decoding failed")
    return payload_obj


def _token_window(payload_obj: dict, now: datetime | None) -> tuple[datetime, datetime]:
    try:
        issued_at = datetime.fromtimestamp(int(payload_obj["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(payload_obj["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise PayLinkError("token payload decoding failed") from exc
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise PayLinkError("token expired")
    return issued_at, expires_at


def create_pay_link_token(
    *,
    invoice_id: str,
    secret: str,
    ttl_seconds: int = DEFAULT_PAY_LINK_TTL_SECONDS,
    now: datetime | None = None,
) -> str:
    if not secret.strip():
        raise PayLinkError("PAY_LINK_SECRET is not configured")
    if not invoice_id.strip():
        raise PayLinkError("invoice id is required")
    return _encode_token({"invoiceId": invoice_id}, secret=secret, ttl_seconds=ttl_seconds, now=now)


def verify_pay_link_token(token: str, *, secret: str, now: datetime | None = None) -> PayLinkPayload:
    payload_obj = _decode_token(token, secret=secret)
    invoice_id = str(payload_obj.get("invoiceId") or "").strip()
    if not invoice_id:
        raise PayLinkError("token invoiceId missing")
    issued_at, expires_at = _token_window(payload_obj, now)
    return PayLinkPayload(invoice_id=invoice_id, issued_at=issued_at, expires_at=expires_at)


def create_unsubscribe_token(
    *,
    workspace_id: str | None,
    user_email: str | None,
    customer_email: str,
    secret: str,
    ttl_seconds: int = DEFAULT_PAY_LINK_TTL_SECONDS,
    now: datetime | None = None,
) -> str:
    """Sign an unsubscribe grant for one customer of one workspace or account."""
    if not secret.strip():
        raise PayLinkError("PAY_LINK_SECRET is not configured")
    email = customer_email.strip().lower()
    owner_email = (user_email or "").strip().lower()
    if not email:
        raise PayLinkError("customer email is required")
    if not workspace_id and not owner_email:
        raise PayLinkError("workspace or account owner is required")
    claims = {
        "kind": "unsubscribe",
        "workspaceId": workspace_id or None,
        "userEmail": None if workspace_id else owner_email,
        "email": email,
    }
    return _encode_token(claims, secret=secret, ttl_seconds=ttl_seconds, now=now)


def verify_unsubscribe_token(token: str, *, secret: str, now: datetime | None = None) -> UnsubscribePayload:
    payload_obj = _decode_token(token, secret=secret)
    if payload_obj.get("kind") != "unsubscribe":
        raise PayLinkError("not an unsubscribe token")
    email = str(payload_obj.get("email") or "").strip().lower()
    workspace_id = str(payload_obj.get("workspaceId") or "").strip() or None
    user_email = str(payload_obj.get("userEmail") or "").strip().lower() or None
    if not email or (not workspace_id and not user_email):
        raise PayLinkError("token owner or email missing")
    issued_at, expires_at = _token_window(payload_obj, now)
    return UnsubscribePayload(
        workspace_id=workspace_id,
        user_email=user_email,
        customer_email=email,
        issued_at=issued_at,
        expires_at=expires_at,
    )



def generate_pay_link(
    *,
    base_url: str,
    invoice_id: str,
    secret: str,
    ttl_seconds: int = DEFAULT_PAY_LINK_TTL_SECONDS,
    now: datetime | None = None,
) -> str:
    token = create_pay_link_token(invoice_id=invoice_id, secret=secret, ttl_seconds=ttl_seconds, now=now)
    return f"{base_url.strip().rstrip('/')}/pay/{token}"


def generate_unsubscribe_link(
    *,
    base_url: str,
    workspace_id: str | None,
    user_email: str | None,
    customer_email: str,
    secret: str,
    ttl_seconds: int = DEFAULT_PAY_LINK_TTL_SECONDS,
    now: datetime | None = None,
) -> str:
    token = create_unsubscribe_token(
        workspace_id=workspace_id,
        user_email=user_email,
        customer_email=customer_email,
        secret=secret,
        ttl_seconds=ttl_seconds,
        now=now,
    )
    return f"{base_url.strip().rstrip('/')}/unsubscribe/{token}"
