from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from .dispatcher import DEFAULT_ERROR_MESSAGE
from .email_sender import mask_email
from .reminder_runs import MAX_ITEM_ERROR_MESSAGE_LENGTH, ReminderRunRepository

logger = logging.getLogger(__name__)

RESEND_FAILURE_EVENT_TYPES = frozenset({"email.bounced", "email.delivery_failed", "email.failed"})
_MESSAGE_ID_KEYS = ("email_id", "emailId", "message_id", "messageId", "id")
_TOP_LEVEL_MESSAGE_ID_KEYS = ("email_id", "id")


@dataclass(frozen=True)
class DeliveryFailure:
    provider: str
    provider_message_id: str
    error_code: str | None
    error_type: str | None
    error_message: str
    recipient: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    updated_runs: int
    updated_items: int


def _text(value: object) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    normalized = str(value).strip()
    return normalized or None


def _first_text(payload: Mapping[str, object], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = _text(payload.get(key))
        if value:
            return value
    return None


def _recipient(data: Mapping[str, object]) -> str | None:
    raw = data.get("to")
    if isinstance(raw, list):
        for entry in raw:
            value = _text(entry)
            if value:
                return value.lower()
        return None
    value = _text(raw)
    return value.lower() if value else None


def extract_resend_failure(payload: Mapping[str, object]) -> DeliveryFailure | None:
    """Turn a Resend webhook body into a delivery failure.

    Returns ``None`` for event types that do not report a failure and for
    payloads without a resolvable message id.
    """
    event_type = (_text(payload.get("type")) or "").lower()
    if event_type not in RESEND_FAILURE_EVENT_TYPES:
        return None

    raw_data = payload.get("data")
    data: Mapping[str, object] = raw_data if isinstance(raw_data, dict) else {}
    message_id = _first_text(data, _MESSAGE_ID_KEYS) or _first_text(payload, _TOP_LEVEL_MESSAGE_ID_KEYS)
    if not message_id:
        return None

    raw_bounce = data.get("bounce")
    bounce: Mapping[str, object] = raw_bounce if isinstance(raw_bounce, dict) else {}
    error_code = _text(bounce.get("code")) or _text(data.get("error_code"))
    error_type = (
        _text(bounce.get("type"))
        or _text(bounce.get("subType"))
        or _text(data.get("error_type"))
        or event_type.replace(".", "_")
    )
    error_message = (
        _text(bounce.get("message"))
        or _text(data.get("error_message"))
        or _text(data.get("message"))
        or _text(data.get("reason"))
        or DEFAULT_ERROR_MESSAGE
    )
    recipient = _recipient(data)
    if recipient:
        error_message = f"{error_message} ({recipient})"

    return DeliveryFailure(
        provider="resend",
        provider_message_id=message_id,
        error_code=error_code.upper()[:80] if error_code else None,
        error_type=error_type.lower()[:80] if error_type else None,
        error_message=error_message[:MAX_ITEM_ERROR_MESSAGE_LENGTH],
        recipient=recipient,
    )


class DeliveryReconciler:
    """Applies provider delivery failures to recorded run items.

    Items only move ``sent -> error``. Each touched run has its counters and
    error sample rebuilt from the items rather than adjusted in place, so
    replays and out-of-order deliveries converge on the same totals.
    """

    def __init__(self, *, repository: ReminderRunRepository) -> None:
        self._repository = repository

    def apply_failure(self, failure: DeliveryFailure, *, now: datetime | None = None) -> ReconcileResult:
        touched = self._repository.mark_items_failed(
            provider=failure.provider,
            provider_message_id=failure.provider_message_id,
            error_code=failure.error_code,
            error_type=failure.error_type,
            error_message=failure.error_message,
            now=now,
        )
        if not touched:
            logger.debug(
                "delivery failure for %s message %s matched no sent items",
                failure.provider,
                failure.provider_message_id,
            )
            return ReconcileResult(updated_runs=0, updated_items=0)

        run_ids = list(dict.fromkeys(touched))
        for run_id in run_ids:
            self._repository.recompute_run_aggregates(run_id)
        logger.info(
            "delivery failure for %s message %s (%s) flipped %d item(s) across %d run(s)",
            failure.provider,
            failure.provider_message_id,
            mask_email(failure.recipient or ""),
            len(touched),
            len(run_ids),
        )
        return ReconcileResult(updated_runs=len(run_ids), updated_items=len(touched))
