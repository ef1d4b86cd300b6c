from __future__ import annotations

from datetime import date, datetime, timezone

from reminders_web.dispatcher import (
    ReminderDispatcher,
    classify_error,
    format_amount,
    normalize_error_message,
    render_reminder,
)
from reminders_web.email_sender import EmailMessage, EmailSendResult, StubEmailSender
from reminders_web.invoice_store import ClaimedInvoice

CLAIMED_AT = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


def _claimed(invoice_id: str, *, email: str = "Client@Example.com", previous_level: int = 0) -> ClaimedInvoice:
    return ClaimedInvoice(
        invoice_id=invoice_id,
        workspace_id="ws-1",
        previous_level=previous_level,
        amount_cents=123_456,
        due_date=date(2026, 3, 1),
        customer_email=email,
        customer_name="Ada <Admin>",
        invoice_number="2026-014",
        claimed_at=CLAIMED_AT,
    )


def _pay_link(invoice_id: str) -> str:
    return f"https://app.example.com/pay/{invoice_id}"


class _RaisingSender:
    provider = "resend"

    def send(self, message: EmailMessage) -> EmailSendResult:
        raise RuntimeError("validation_error: The to address is invalid")


def test_format_amount_uses_euro_with_thousands_separator() -> None:
    assert format_amount(123_456) == "€1,234.56"
    assert format_amount(5) == "€0.05"


def test_render_reminder_builds_subject_text_html_and_idempotency_key() -> None:
    message = render_reminder(_claimed("inv-1", previous_level=1), pay_link=_pay_link("inv-1"))

    assert message.to == "client@example.com"
    assert message.subject == "Invoice reminder #2: €1,234.56 due"
    assert "Invoice 2026-014 is overdue." in message.text
    assert "Due date: 2026-03-01" in message.text
    assert "Pay here: https://app.example.com/pay/inv-1" in message.text
    assert "Ada &lt;Admin&gt;" in message.html
    assert "<Admin>" not in message.html
    assert message.idempotency_key == "reminder-inv-1-level-2"
    assert "Unsubscribe" not in message.text


def test_render_reminder_appends_unsubscribe_link_when_given() -> None:
    message = render_reminder(
        _claimed("inv-1"),
        pay_link=_pay_link("inv-1"),
        unsubscribe_link="https://app.example.com/unsubscribe/tok&en",
    )

    assert message.text.endswith("Unsubscribe from reminder emails: https://app.example.com/unsubscribe/tok&en")
    assert '<a href="https://app.example.com/unsubscribe/tok&amp;en">Unsubscribe from reminder emails</a>' in message.html


def test_normalize_error_message_strips_provider_prefix_and_defaults() -> None:
    assert normalize_error_message("Resend failed: mailbox full") == "mailbox full"
    assert normalize_error_message("   ") == "Delivery failed."
    assert normalize_error_message(None) == "Delivery failed."
    assert len(normalize_error_message("x" * 500)) == 300


def test_classify_error_parses_typed_messages() -> None:
    assert classify_error("validation_error: The to address is invalid") == (
        "VALIDATION_ERROR",
        "validation_error",
        "The to address is invalid",
    )
    assert classify_error("Mailbox unavailable", error_code="bounce", error_type="Hard") == (
        "BOUNCE",
        "hard",
        "Mailbox unavailable",
    )
    assert classify_error("Mailbox unavailable") == (None, None, "Mailbox unavailable")


def test_dispatch_records_sent_and_failed_items_without_aborting() -> None:
    sender = StubEmailSender()
    dispatcher = ReminderDispatcher(sender=sender, pay_link_factory=_pay_link)

    outcome = dispatcher.dispatch(
        [
            _claimed("inv-1"),
            _claimed("inv-2", email="will-fail@example.com"),
            _claimed("inv-3", email="other@example.com"),
        ]
    )

    assert [item.status for item in outcome.items] == ["sent", "error", "sent"]
    assert outcome.sent_invoice_ids == ["inv-1", "inv-3"]
    assert [message.to for message in sender.sent] == ["client@example.com", "other@example.com"]

    sent_item = outcome.items[0]
    assert sent_item.provider == "stub"
    assert sent_item.provider_message_id == "stub-000001"
    assert sent_item.recipient_email == "client@example.com"

    failed_item = outcome.error_items[0]
    assert failed_item.invoice_id == "inv-2"
    assert failed_item.error_code == "STUB_DELIVERY_FAILED"
    assert failed_item.error_type == "stub_delivery_failed"
    assert failed_item.provider_message_id is None


def test_dispatch_turns_sender_exceptions_into_error_items() -> None:
    dispatcher = ReminderDispatcher(sender=_RaisingSender(), pay_link_factory=_pay_link)

    outcome = dispatcher.dispatch([_claimed("inv-1")])

    assert len(outcome.error_items) == 1
    item = outcome.error_items[0]
    assert item.provider == "resend"
    assert item.error_code == "VALIDATION_ERROR"
    assert item.error_type == "validation_error"
    assert item.error_message == "The to address is invalid"


def test_dispatch_passes_each_claimed_invoice_to_the_unsubscribe_factory() -> None:
    sender = StubEmailSender()
    seen: list[str] = []

    def _unsubscribe_link(invoice: ClaimedInvoice) -> str:
        seen.append(invoice.invoice_id)
        return f"https://app.example.com/unsubscribe/{invoice.workspace_id}-{invoice.invoice_id}"

    dispatcher = ReminderDispatcher(sender=sender, pay_link_factory=_pay_link, unsubscribe_link_factory=_unsubscribe_link)

    dispatcher.dispatch([_claimed("inv-1"), _claimed("inv-2")])

    assert seen == ["inv-1", "inv-2"]
    assert "https://app.example.com/unsubscribe/ws-1-inv-2" in sender.sent[1].text
