from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Literal, Sequence

from .email_sender import EmailMessage, EmailSender, mask_email
from .invoice_store import ClaimedInvoice

logger = logging.getLogger(__name__)

ItemStatus = Literal["sent", "error"]

DEFAULT_ERROR_MESSAGE = "Delivery failed."
MAX_ERROR_MESSAGE_LENGTH = 300
MAX_ERROR_LABEL_LENGTH = 80
_PROVIDER_PREFIX = "resend failed:"
_TYPED_ERROR_RE = re.compile(r"^([a-z0-9_.-]+):\s*(.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class DispatchItem:
    invoice_id: str
    recipient_email: str
    provider: str
    status: ItemStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_type: str | None = None
    error_message: str | None = None


@dataclass
class DispatchOutcome:
    items: list[DispatchItem] = field(default_factory=list)

    @property
    def sent_invoice_ids(self) -> list[str]:
        return [item.invoice_id for item in self.items if item.status == "sent"]

    @property
    def error_items(self) -> list[DispatchItem]:
        return [item for item in self.items if item.status == "error"]


def normalize_error_message(message: str | None) -> str:
    text = (message or "").strip()
    if text.lower().startswith(_PROVIDER_PREFIX):
        text = text[len(_PROVIDER_PREFIX):].strip()
    return (text or DEFAULT_ERROR_MESSAGE)[:MAX_ERROR_MESSAGE_LENGTH]


def classify_error(
    message: str | None,
    *,
    error_code: str | None = None,
    error_type: str | None = None,
) -> tuple[str | None, str | None, str]:
    """Return ``(error_code, error_type, message)`` for a failed send.

    Messages shaped like ``validation_error: invalid to address`` carry their
    own type; explicit provider values take precedence.
    """
    normalized = normalize_error_message(message)
    parsed_type: str | None = None
    match = _TYPED_ERROR_RE.match(normalized)
    if match:
        parsed_type = match.group(1)
        normalized = match.group(2).strip()[:MAX_ERROR_MESSAGE_LENGTH]
    resolved_type = (error_type or parsed_type or "").strip().lower()[:MAX_ERROR_LABEL_LENGTH] or None
    resolved_code = (error_code or parsed_type or "").strip().upper()[:MAX_ERROR_LABEL_LENGTH] or None
    return resolved_code, resolved_type, normalized


def format_amount(amount_cents: int) -> str:
    amount = (Decimal(amount_cents) / Decimal(100)).quantize(Decimal("0.01"))
    return f"€{amount:,.2f}"


def render_reminder(invoice: ClaimedInvoice, *, pay_link: str, unsubscribe_link: str | None = None) -> EmailMessage:
    amount = format_amount(invoice.amount_cents)
    due_date = invoice.due_date.isoformat() if invoice.due_date else "n/a"
    name = (invoice.customer_name or "").strip() or "there"
    reference = f"Invoice {invoice.invoice_number}" if invoice.invoice_number else "Your invoice"
    subject = f"Invoice reminder #{invoice.previous_level + 1}: {amount} due"
    lines = [
        f"Hi {name},",
        "",
        f"{reference} is overdue.",
        "",
        f"Amount: {amount}",
        f"Due date: {due_date}",
        "",
        f"Pay here: {pay_link}",
        "",
        "Thank you.",
    ]
    if unsubscribe_link:
        lines.extend(["", f"Unsubscribe from reminder emails: {unsubscribe_link}"])
    text = "\n".join(lines)
    link = html.escape(pay_link, quote=True)
    body = (
        f"<p>Hi {html.escape(name)},</p>"
        f"<p>{html.escape(reference)} is overdue.</p>"
        f"<p><strong>Amount:</strong> {html.escape(amount)}<br />"
        f"<strong>Due date:</strong> {html.escape(due_date)}</p>"
        f'<p><a href="{link}">Pay here</a></p>'
        "<p>Thank you.</p>"
    )
    if unsubscribe_link:
        body += (
            '<p style="margin-top:12px;">'
            f'<a href="{html.escape(unsubscribe_link, quote=True)}">Unsubscribe from reminder emails</a></p>'
        )
    return EmailMessage(
        to=invoice.customer_email.strip().lower(),
        subject=subject,
        html=body,
        text=text,
        idempotency_key=f"reminder-{invoice.invoice_id}-level-{invoice.reminder_level}",
    )


class ReminderDispatcher:
    """Sends one reminder per claimed invoice.

    A failure for one recipient becomes an error item and the batch carries
    on. Claimed levels are never rolled back here.
    """

    def __init__(
        self,
        *,
        sender: EmailSender,
        pay_link_factory: Callable[[str], str],
        unsubscribe_link_factory: Callable[[ClaimedInvoice], str | None] | None = None,
    ) -> None:
        self._sender = sender
        self._pay_link_factory = pay_link_factory
        self._unsubscribe_link_factory = unsubscribe_link_factory

    def dispatch(self, claimed: Sequence[ClaimedInvoice]) -> DispatchOutcome:
        outcome = DispatchOutcome()
        for invoice in claimed:
            outcome.items.append(self._dispatch_one(invoice))
        return outcome

    def _dispatch_one(self, invoice: ClaimedInvoice) -> DispatchItem:
        recipient = invoice.customer_email.strip().lower()
        provider = getattr(self._sender, "provider", "unknown")
        try:
            unsubscribe_link = self._unsubscribe_link_factory(invoice) if self._unsubscribe_link_factory else None
            message = render_reminder(
                invoice,
                pay_link=self._pay_link_factory(invoice.invoice_id),
                unsubscribe_link=unsubscribe_link,
            )
            result = self._sender.send(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "reminder send raised for invoice %s (%s): %s",
                invoice.invoice_id,
                mask_email(recipient),
                exc,
            )
            error_code, error_type, error_message = classify_error(str(exc))
            return DispatchItem(
                invoice_id=invoice.invoice_id,
                recipient_email=recipient,
                provider=provider,
                status="error",
                attempted_at=datetime.now(timezone.utc),
                error_code=error_code,
                error_type=error_type,
                error_message=error_message,
            )

        if result.status == "sent":
            return DispatchItem(
                invoice_id=invoice.invoice_id,
                recipient_email=recipient,
                provider=result.provider,
                status="sent",
                attempted_at=result.attempted_at,
                provider_message_id=result.provider_message_id,
            )

        error_code, error_type, error_message = classify_error(
            result.error_message,
            error_code=result.error_code,
            error_type=result.error_type,
        )
        logger.warning(
            "reminder send failed for invoice %s (%s): %s",
            invoice.invoice_id,
            mask_email(recipient),
            error_message,
        )
        return DispatchItem(
            invoice_id=invoice.invoice_id,
            recipient_email=recipient,
            provider=result.provider,
            status="error",
            attempted_at=result.attempted_at,
            provider_message_id=result.provider_message_id,
            error_code=error_code,
            error_type=error_type,
            error_message=error_message,
        )
