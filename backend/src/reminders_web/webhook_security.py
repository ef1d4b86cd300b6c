from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from .config import Settings

SECRET_PREFIX = "whsec_"


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _first_header(headers: Mapping[str, str], *keys: str) -> str | None:
    for key in keys:
        value = _normalize_header_value(headers, key)
        if value is not None:
            return value
    return None


def _decode_secret(secret: str) -> bytes:
    return base64.b64decode(secret.removeprefix(SECRET_PREFIX))


def _signature_candidates(header_value: str) -> list[str]:
    candidates: list[str] = []
    for chunk in header_value.split():
        version, _, signature = chunk.partition(",")
        if version == "v1" and signature:
            candidates.append(signature)
    return candidates


def sign_resend_payload(*, secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    signing_payload = f"{message_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_decode_secret(secret), signing_payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_resend_webhook_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> WebhookSignatureVerification:
    """Check a Svix-style signature over ``{id}.{timestamp}.{body}``."""
    mode = settings.delivery_webhook_signature_mode
    if mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.resend_webhook_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    message_id = _first_header(headers, "svix-id", "webhook-id")
    timestamp_text = _first_header(headers, "svix-timestamp", "webhook-timestamp")
    signature_header = _first_header(headers, "svix-signature", "webhook-signature")
    if not message_id:
        return WebhookSignatureVerification(verified=False, reason="message_id_missing")
    if not timestamp_text:
        return WebhookSignatureVerification(verified=False, reason="timestamp_missing")
    if not signature_header:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return WebhookSignatureVerification(verified=False, reason="timestamp_invalid")

    current_time = now or datetime.now(timezone.utc)
    max_age = max(0, settings.delivery_webhook_max_age_seconds)
    if abs(int(current_time.timestamp()) - timestamp) > max_age:
        return WebhookSignatureVerification(verified=False, reason="timestamp_out_of_window")

    candidates = _signature_candidates(signature_header)
    if not candidates:
        return WebhookSignatureVerification(verified=False, reason="signature_invalid")

    try:
        expected = sign_resend_payload(secret=secret, message_id=message_id, timestamp=timestamp_text, body=body)
    except (binascii.Error, ValueError):
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_invalid")

    if not any(hmac.compare_digest(candidate, expected) for candidate in candidates):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
