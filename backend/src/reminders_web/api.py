from __future__ import annotations

import hmac
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from .config import Settings, get_settings
from .delivery_reconciler import DeliveryReconciler, extract_resend_failure
from .dispatcher import ReminderDispatcher
from .email_sender import EmailSender, ResendEmailSender, StubEmailSender, mask_email
from .escalation import is_eligible, next_eligible_at
from .invoice_store import ClaimedInvoice, CustomerPreference, InvoiceStore, ReminderScope, create_invoice_store
from .models import (
    AdminLoginRequest,
    AdminLoginResponse,
    CustomerPreferenceRequest,
    CustomerPreferenceResponse,
    DeliveryWebhookResponse,
    ReminderRunCandidate,
    ReminderRunErrorItem,
    ReminderRunListItem,
    ReminderRunListResponse,
    ReminderRunRequest,
    ReminderRunResponse,
    ReminderRunSummary,
    RunErrorEntry,
    UpcomingReminderItem,
    UpcomingRemindersResponse,
)
from .pay_links import PayLinkError, generate_pay_link, generate_unsubscribe_link, verify_unsubscribe_token
from .rate_limits import TriggerRateLimiter
from .reminder_runs import (
    ReminderMigrationRequiredError,
    ReminderRunRecord,
    ReminderRunRepository,
    clamp_run_list_limit,
    create_reminder_run_repository,
)
from .reminder_workflow import ReminderEngine, ReminderRunResult, ReminderTrigger
from .session_tokens import (
    SessionTokenError,
    WorkspaceSession,
    create_workspace_session,
    decode_session_token,
    encode_session_token,
)
from .webhook_security import verify_resend_webhook_signature

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "resend":
        return ResendEmailSender(
            api_key=settings.resend_api_key,
            sender=settings.email_from,
            base_url=settings.resend_api_base_url,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender()


def _create_trigger_limiter(settings: Settings) -> TriggerRateLimiter:
    return TriggerRateLimiter(
        max_attempts=settings.reminder_trigger_rate_limit_max,
        window_seconds=settings.reminder_trigger_rate_limit_window_seconds,
    )


invoice_store: InvoiceStore = create_invoice_store(
    backend=_settings.invoice_store_backend,
    database_url=_settings.database_url,
)
reminder_run_repo: ReminderRunRepository = create_reminder_run_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
email_sender: EmailSender = _create_email_sender(_settings)
trigger_limiter: TriggerRateLimiter = _create_trigger_limiter(_settings)


def reset_runtime_state_for_tests() -> None:
    invoice_store.reset()
    reminder_run_repo.reset()
    trigger_limiter.reset()


def _pay_link(invoice_id: str) -> str:
    return generate_pay_link(
        base_url=_settings.app_base_url,
        invoice_id=invoice_id,
        secret=_settings.pay_link_secret,
        ttl_seconds=_settings.pay_link_ttl_seconds,
    )


def _unsubscribe_link(invoice: ClaimedInvoice) -> str | None:
    if not invoice.workspace_id and not (invoice.user_email or "").strip():
        return None
    return generate_unsubscribe_link(
        base_url=_settings.app_base_url,
        workspace_id=invoice.workspace_id,
        user_email=invoice.user_email,
        customer_email=invoice.customer_email,
        secret=_settings.pay_link_secret,
        ttl_seconds=_settings.pay_link_ttl_seconds,
    )


def _reminder_engine() -> ReminderEngine:
    return ReminderEngine(
        store=invoice_store,
        repository=reminder_run_repo,
        dispatcher=ReminderDispatcher(
            sender=email_sender,
            pay_link_factory=_pay_link,
            unsubscribe_link_factory=_unsubscribe_link,
        ),
        batch_size=_settings.reminder_batch_size,
    )


def _migration_required(exc: ReminderMigrationRequiredError) -> HTTPException:
    return HTTPException(503, detail={"code": exc.code, "message": exc.message})


def _flag(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    return None


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


def _cron_token_matches(request: Request) -> bool:
    expected = _settings.reminder_cron_token.strip()
    if not expected:
        return False
    provided = [
        _bearer_token(request),
        request.headers.get("x-reminder-cron-token", "").strip(),
    ]
    if not _settings.is_production:
        provided.append(request.query_params.get("token", "").strip())
    return any(candidate and hmac.compare_digest(candidate, expected) for candidate in provided)


def _require_session(request: Request) -> WorkspaceSession:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(401, "session required")
    try:
        return decode_session_token(token, secret=_settings.admin_session_secret)
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _require_reminder_manager(request: Request) -> WorkspaceSession:
    session = _require_session(request)
    if not session.can_manage_reminders:
        raise HTTPException(403, "owner or admin role required")
    return session


def _session_scope(session: WorkspaceSession) -> ReminderScope:
    if session.workspace_id:
        return ReminderScope(workspace_id=session.workspace_id)
    return ReminderScope(account_email=session.actor_email)


def _resolve_dry_run(request: Request, payload: ReminderRunRequest | None) -> bool:
    for raw in (
        request.query_params.get("dry_run"),
        request.query_params.get("dryRun"),
        request.headers.get("x-dry-run"),
    ):
        parsed = _flag(raw)
        if parsed is not None:
            return parsed
    if payload is not None and payload.dry_run is not None:
        return payload.dry_run
    return False


def _run_response(result: ReminderRunResult) -> ReminderRunResponse:
    summary = None
    if result.scope.workspace_id:
        summary = ReminderRunSummary(
            attempted=result.attempted_count,
            sent=result.sent_count,
            failed=result.error_count,
            skipped=result.skipped_count,
            skipped_breakdown=dict(result.skipped_breakdown),
            would_send_count=result.would_send_count,
        )
    return ReminderRunResponse(
        ran_at=result.ran_at,
        updated_count=result.updated_count,
        updated_invoice_ids=list(result.updated_invoice_ids),
        dry_run=result.dry_run,
        run_id=result.run.run_id,
        triggered_by=result.triggered_by,
        workspace_id=result.scope.workspace_id,
        actor_email=result.actor_email,
        duration_ms=result.duration_ms,
        has_more=result.has_more,
        attempted=result.attempted_count,
        sent=result.sent_count,
        failed=result.error_count,
        skipped=result.skipped_count,
        errors=[
            ReminderRunErrorItem(
                invoice_id=item.invoice_id,
                recipient=item.recipient_email,
                provider=item.provider,
                error_code=item.error_code,
                error_type=item.error_type,
                message=item.error_message or "Delivery failed.",
            )
            for item in result.error_items
        ],
        candidates=[
            ReminderRunCandidate(
                invoice_id=invoice.invoice_id,
                invoice_number=invoice.invoice_number,
                reminder_level=invoice.reminder_level,
                amount_cents=invoice.amount_cents,
                due_date=invoice.due_date,
            )
            for invoice in result.candidates
        ],
        summary=summary,
    )


def _run_list_item(run: ReminderRunRecord) -> ReminderRunListItem:
    return ReminderRunListItem(
        run_id=run.run_id,
        ran_at=run.ran_at,
        source=run.triggered_by,
        dry_run=run.dry_run,
        attempted=run.attempted_count,
        sent=0 if run.dry_run else run.sent_count,
        skipped=run.skipped_count,
        errors=run.error_count,
        error_items=[
            RunErrorEntry(
                invoice_id=error.invoice_id,
                recipient_email=error.recipient_email,
                provider=error.provider,
                provider_message_id=error.provider_message_id,
                error_code=error.error_code,
                error_type=error.error_type,
                error_message=error.error_message,
                occurred_at=error.occurred_at,
            )
            for error in run.errors
        ],
        duration_ms=run.duration_ms,
        skipped_breakdown=dict(run.skipped_breakdown),
    )


# ---------------------------------------------------------------------------
# Reminder runs
# ---------------------------------------------------------------------------


@router.post("/run", response_model=ReminderRunResponse)
def run_reminders(request: Request, payload: ReminderRunRequest | None = None) -> ReminderRunResponse:
    if _cron_token_matches(request):
        workspace_id = request.headers.get("x-reminders-workspace-id", "").strip() or None
        scope = ReminderScope(workspace_id=workspace_id)
        triggered_by = payload.triggered_by if payload is not None and payload.triggered_by else "cron"
        actor_email = None
        client_host = request.client.host if request.client else "unknown"
        bucket = f"cron:{client_host}"
    else:
        session = _require_reminder_manager(request)
        scope = _session_scope(session)
        triggered_by = "manual"
        actor_email = session.actor_email
        bucket = f"manual:{session.actor_email}"

    if not trigger_limiter.check_and_record(bucket):
        raise HTTPException(429, "reminder trigger rate limit exceeded")

    trigger = ReminderTrigger(
        scope=scope,
        triggered_by=triggered_by,
        dry_run=_resolve_dry_run(request, payload),
        actor_email=actor_email,
    )
    try:
        result = _reminder_engine().run(trigger)
    except ReminderMigrationRequiredError as exc:
        raise _migration_required(exc) from exc
    return _run_response(result)


@router.get("/runs", response_model=ReminderRunListResponse)
def list_reminder_runs(request: Request, limit: int | None = None) -> ReminderRunListResponse:
    session = _require_reminder_manager(request)
    bounded = clamp_run_list_limit(limit, maximum=_settings.reminder_run_list_limit_max)
    try:
        runs = reminder_run_repo.list_runs(
            workspace_id=session.workspace_id,
            actor_email=None if session.workspace_id else session.actor_email,
            limit=bounded,
        )
    except ReminderMigrationRequiredError as exc:
        raise _migration_required(exc) from exc
    return ReminderRunListResponse(runs=[_run_list_item(run) for run in runs])


@router.get("/upcoming", response_model=UpcomingRemindersResponse)
def list_upcoming_reminders(request: Request) -> UpcomingRemindersResponse:
    session = _require_reminder_manager(request)
    now = datetime.now(timezone.utc)
    items: list[UpcomingReminderItem] = []
    for invoice in invoice_store.list_open_invoices(_session_scope(session)):
        if invoice.due_date is None:
            continue
        items.append(
            UpcomingReminderItem(
                invoice_id=invoice.invoice_id,
                invoice_number=invoice.invoice_number,
                customer_name=invoice.customer_name,
                reminder_level=invoice.reminder_level,
                next_level=invoice.reminder_level + 1,
                amount_cents=invoice.amount_cents,
                due_date=invoice.due_date,
                last_reminder_sent_at=invoice.last_reminder_sent_at,
                next_eligible_at=next_eligible_at(
                    invoice.status,
                    invoice.due_date,
                    invoice.reminder_level,
                    invoice.last_reminder_sent_at,
                ),
                eligible_now=is_eligible(
                    invoice.status,
                    invoice.due_date,
                    invoice.reminder_level,
                    invoice.last_reminder_sent_at,
                    now,
                ),
                reminders_paused=invoice.reminders_paused,
                has_recipient=bool((invoice.customer_email or "").strip()),
                customer_paused=invoice.customer_paused,
                unsubscribed=invoice.customer_unsubscribed,
            )
        )
    items.sort(key=lambda item: (item.next_eligible_at or now, item.invoice_id))
    return UpcomingRemindersResponse(items=items)


# ---------------------------------------------------------------------------
# Customer pauses and unsubscribes
# ---------------------------------------------------------------------------


def _preference_response(preference: CustomerPreference) -> CustomerPreferenceResponse:
    return CustomerPreferenceResponse(
        workspace_id=preference.workspace_id,
        customer_email=preference.customer_email,
        paused=preference.paused,
        unsubscribed=preference.unsubscribed,
        updated_at=preference.updated_at,
    )


@router.put("/customers/preferences", response_model=CustomerPreferenceResponse)
def update_customer_preference(request: Request, payload: CustomerPreferenceRequest) -> CustomerPreferenceResponse:
    session = _require_reminder_manager(request)
    if payload.paused is None and payload.unsubscribed is None:
        raise HTTPException(400, "paused or unsubscribed is required")
    preference = invoice_store.set_customer_preference(
        _session_scope(session),
        payload.customer_email,
        paused=payload.paused,
        unsubscribed=payload.unsubscribed,
    )
    logger.info(
        "customer reminder preference updated by %s: paused=%s unsubscribed=%s",
        mask_email(session.actor_email),
        preference.paused,
        preference.unsubscribed,
    )
    return _preference_response(preference)


@router.post("/unsubscribe/{token}", response_model=CustomerPreferenceResponse)
def unsubscribe(token: str) -> CustomerPreferenceResponse:
    try:
        grant = verify_unsubscribe_token(token, secret=_settings.pay_link_secret)
    except PayLinkError as exc:
        raise HTTPException(400, f"invalid unsubscribe link: {exc}") from exc
    owner = ReminderScope(workspace_id=grant.workspace_id, account_email=grant.user_email)
    preference = invoice_store.set_customer_preference(owner, grant.customer_email, unsubscribed=True)
    logger.info("customer %s unsubscribed from reminders", mask_email(grant.customer_email))
    return _preference_response(preference)



# ---------------------------------------------------------------------------
# Delivery webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks/resend", response_model=DeliveryWebhookResponse)
async def resend_delivery_webhook(request: Request) -> DeliveryWebhookResponse:
    body = await request.body()
    verification = verify_resend_webhook_signature(
        settings=_settings,
        body=body,
        headers=request.headers,
    )
    if not verification.verified:
        if _settings.delivery_webhook_signature_mode == "enforce":
            raise HTTPException(401, f"invalid webhook signature: {verification.reason}")
        logger.warning("resend webhook signature not verified: %s", verification.reason)

    try:
        payload = json.loads(body.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(400, "invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "invalid JSON payload")

    failure = extract_resend_failure(payload)
    if failure is None:
        return DeliveryWebhookResponse(ignored=True)

    reconciler = DeliveryReconciler(repository=reminder_run_repo)
    try:
        result = reconciler.apply_failure(failure)
    except ReminderMigrationRequiredError as exc:
        raise _migration_required(exc) from exc
    return DeliveryWebhookResponse(updated_runs=result.updated_runs, updated_items=result.updated_items)


# ---------------------------------------------------------------------------
# Admin auth
# ---------------------------------------------------------------------------


@router.post("/admin/login", response_model=AdminLoginResponse)
def admin_login(payload: AdminLoginRequest) -> AdminLoginResponse:
    if not _settings.admin_password:
        raise HTTPException(503, "admin password not configured")
    if payload.password != _settings.admin_password:
        raise HTTPException(401, "invalid password")
    session = create_workspace_session(
        actor_email=payload.email,
        role="owner",
        ttl_minutes=_settings.admin_session_ttl_minutes,
        workspace_id=payload.workspace_id,
    )
    token = encode_session_token(session, secret=_settings.admin_session_secret)
    return AdminLoginResponse(
        authenticated=True,
        session_token=token,
        expires_at=session.expires_at,
        role=session.role,
        workspace_id=session.workspace_id,
    )
