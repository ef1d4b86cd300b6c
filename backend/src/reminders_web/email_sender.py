from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from typing import Literal, Protocol

SendStatus = Literal["sent", "failed"]
EmailProvider = Literal["resend", "smtp", "stub", "unknown"]


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str
    idempotency_key: str | None = None


@dataclass(frozen=True)
class EmailSendResult:
    status: SendStatus
    provider: EmailProvider
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_type: str | None = None
    error_message: str | None = None


class EmailSender(Protocol):
    provider: EmailProvider

    def send(self, message: EmailMessage) -> EmailSendResult: ...


class StubEmailSender:
    """Local sender; any address containing ``fail`` is rejected."""

    provider: EmailProvider = "stub"

    def __init__(self) -> None:
        self._sequence = count(1)
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in message.to.lower():
            return EmailSendResult(
                status="failed",
                provider=self.provider,
                attempted_at=attempted_at,
                error_code="STUB_DELIVERY_FAILED",
                error_type="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )
        self.sent.append(message)
        message_id = f"stub-{next(self._sequence):06d}"
        return EmailSendResult(
            status="sent",
            provider=self.provider,
            attempted_at=attempted_at,
            provider_message_id=message_id,
        )


class _ResendSendError(Exception):
    """Internal error raised when a Resend HTTP request fails."""

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message


class ResendEmailSender:
    """Production sender that posts messages to the Resend HTTP API."""

    provider: EmailProvider = "resend"

    def __init__(
        self,
        *,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not sender.strip():
            raise ValueError("sender must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._sender = sender.strip()
        self._timeout_seconds = timeout_seconds

    def send(self, message: EmailMessage) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "from": self._sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        try:
            response_data = self._post(request_payload, idempotency_key=message.idempotency_key)
        except _ResendSendError as exc:
            return EmailSendResult(
                status="failed",
                provider=self.provider,
                attempted_at=attempted_at,
                error_code=exc.error_type.upper(),
                error_type=exc.error_type,
                error_message=f"{exc.message} (recipient: {mask_email(message.to)})",
            )
        message_id = response_data.get("id")
        if not message_id:
            return EmailSendResult(
                status="failed",
                provider=self.provider,
                attempted_at=attempted_at,
                error_code="MISSING_MESSAGE_ID",
                error_type="missing_message_id",
                error_message="Resend response did not include a message id",
            )
        return EmailSendResult(
            status="sent",
            provider=self.provider,
            attempted_at=attempted_at,
            provider_message_id=str(message_id),
        )

    def _post(self, body: dict[str, object], *, idempotency_key: str | None) -> dict[str, object]:
        """Send a POST request to the Resend emails endpoint."""
        url = f"{self._base_url}/emails"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ResendSendError(*_describe_http_error(exc)) from exc
        except urllib.error.URLError as exc:
            raise _ResendSendError(
                error_type="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ResendSendError(
                error_type="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def _describe_http_error(exc: urllib.error.HTTPError) -> tuple[str, str]:
    error_type = f"http_{exc.code}"
    message = f"HTTP {exc.code}: {exc.reason}"
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return error_type, message
    if isinstance(payload, dict):
        name = str(payload.get("name") or "").strip()
        detail = str(payload.get("message") or "").strip()
        if name:
            error_type = name.lower()
        if detail:
            message = detail
    return error_type, message


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized or "@" not in normalized:
        return "***"
    local, domain = normalized.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"
