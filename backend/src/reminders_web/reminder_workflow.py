from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from .dispatcher import DispatchItem, DispatchOutcome, ReminderDispatcher
from .escalation import SKIP_REASONS, skip_reason
from .invoice_store import ClaimedInvoice, InvoiceStore, ReminderScope
from .reminder_runs import MAX_ERROR_SAMPLE, ReminderRunRecord, ReminderRunRepository, RunDraft, TriggeredBy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderTrigger:
    scope: ReminderScope
    triggered_by: TriggeredBy
    dry_run: bool = False
    actor_email: str | None = None


@dataclass(frozen=True)
class ReminderRunResult:
    run: ReminderRunRecord
    ran_at: datetime
    dry_run: bool
    triggered_by: TriggeredBy
    scope: ReminderScope
    actor_email: str | None
    updated_invoice_ids: list[str]
    candidates: list[ClaimedInvoice]
    error_items: list[DispatchItem]
    skipped_breakdown: dict[str, int]
    has_more: bool
    duration_ms: int
    attempted_count: int = 0
    sent_count: int = 0
    error_count: int = 0
    would_send_count: int = 0

    @property
    def updated_count(self) -> int:
        return len(self.updated_invoice_ids)

    @property
    def skipped_count(self) -> int:
        return sum(self.skipped_breakdown.values())


class ReminderEngine:
    """Single entry point for scheduled and manual reminder triggers."""

    def __init__(
        self,
        *,
        store: InvoiceStore,
        repository: ReminderRunRepository,
        dispatcher: ReminderDispatcher,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._repository = repository
        self._dispatcher = dispatcher
        self._batch_size = max(1, batch_size)

    def run(self, trigger: ReminderTrigger, *, now: datetime | None = None) -> ReminderRunResult:
        started = time.perf_counter()
        ran_at = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)

        # Fail on a missing schema before any invoice level is spent.
        self._repository.capabilities()

        open_invoices = self._store.list_open_invoices(trigger.scope)
        if trigger.dry_run:
            candidates = self._store.preview_due_reminders(trigger.scope, now=ran_at, limit=self._batch_size)
            outcome = DispatchOutcome()
        else:
            candidates = self._store.claim_due_reminders(trigger.scope, now=ran_at, limit=self._batch_size)
            outcome = self._dispatcher.dispatch(candidates)

        selected_ids = {invoice.invoice_id for invoice in candidates}
        breakdown = {reason: 0 for reason in SKIP_REASONS}
        for invoice in open_invoices:
            if invoice.invoice_id in selected_ids or invoice.due_date is None:
                continue
            if invoice.due_date >= ran_at.date():
                continue
            reason = skip_reason(
                status=invoice.status,
                due_date=invoice.due_date,
                level=invoice.reminder_level,
                last_sent_at=invoice.last_reminder_sent_at,
                recipient_email=invoice.customer_email,
                reminders_paused=invoice.reminders_paused or invoice.customer_paused,
                now=ran_at,
                unsubscribed=invoice.customer_unsubscribed,
            )
            breakdown[reason] += 1

        duration_ms = int((time.perf_counter() - started) * 1000)
        run = self._repository.record_run(
            RunDraft(
                ran_at=ran_at,
                triggered_by=trigger.triggered_by,
                dry_run=trigger.dry_run,
                duration_ms=duration_ms,
                workspace_id=trigger.scope.workspace_id,
                actor_email=trigger.actor_email,
                skipped_breakdown=breakdown,
                items=tuple(outcome.items),
            )
        )
        error_items = outcome.error_items
        logger.info(
            "reminder run %s (%s%s): attempted=%d sent=%d errors=%d skipped=%d",
            run.run_id,
            trigger.triggered_by,
            ", dry run" if trigger.dry_run else "",
            len(outcome.items),
            len(outcome.sent_invoice_ids),
            len(error_items),
            run.skipped_count,
        )
        return ReminderRunResult(
            run=run,
            ran_at=ran_at,
            dry_run=trigger.dry_run,
            triggered_by=trigger.triggered_by,
            scope=trigger.scope,
            actor_email=trigger.actor_email,
            updated_invoice_ids=outcome.sent_invoice_ids,
            candidates=list(candidates),
            error_items=list(reversed(error_items))[:MAX_ERROR_SAMPLE],
            skipped_breakdown=breakdown,
            has_more=len(candidates) >= self._batch_size,
            duration_ms=duration_ms,
            attempted_count=len(outcome.items),
            sent_count=len(outcome.sent_invoice_ids),
            error_count=len(error_items),
            would_send_count=len(candidates) if trigger.dry_run else 0,
        )
