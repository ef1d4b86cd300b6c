from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TriggeredBy = Literal["manual", "cron", "dev"]
TriggerOverride = Literal["manual", "dev"]
WorkspaceRole = Literal["owner", "admin", "member"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReminderRunRequest(_CamelModel):
    dry_run: bool | None = None
    triggered_by: TriggerOverride | None = None


class ReminderRunErrorItem(_CamelModel):
    invoice_id: str
    recipient: str
    provider: str
    error_code: str | None = None
    error_type: str | None = None
    message: str


class ReminderRunCandidate(_CamelModel):
    invoice_id: str
    invoice_number: str | None = None
    reminder_level: int
    amount_cents: int
    due_date: date | None = None


class ReminderRunSummary(_CamelModel):
    attempted: int
    sent: int
    failed: int
    skipped: int
    skipped_breakdown: dict[str, int]
    would_send_count: int


class ReminderRunResponse(_CamelModel):
    ran_at: datetime
    updated_count: int
    updated_invoice_ids: list[str]
    dry_run: bool
    run_id: str
    triggered_by: TriggeredBy
    workspace_id: str | None = None
    actor_email: str | None = None
    duration_ms: int
    has_more: bool
    attempted: int
    sent: int
    failed: int
    skipped: int
    errors: list[ReminderRunErrorItem] = Field(default_factory=list)
    candidates: list[ReminderRunCandidate] = Field(default_factory=list)
    summary: ReminderRunSummary | None = None


class RunErrorEntry(BaseModel):
    invoice_id: str
    recipient_email: str
    provider: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_type: str | None = None
    error_message: str
    occurred_at: datetime


class ReminderRunListItem(BaseModel):
    run_id: str
    ran_at: datetime
    source: TriggeredBy
    dry_run: bool
    attempted: int
    sent: int
    skipped: int
    errors: int
    error_items: list[RunErrorEntry]
    duration_ms: int
    skipped_breakdown: dict[str, int]


class ReminderRunListResponse(BaseModel):
    ok: bool = True
    runs: list[ReminderRunListItem]


class UpcomingReminderItem(BaseModel):
    invoice_id: str
    invoice_number: str | None = None
    customer_name: str | None = None
    reminder_level: int
    next_level: int
    amount_cents: int
    due_date: date
    last_reminder_sent_at: datetime | None = None
    next_eligible_at: datetime | None = None
    eligible_now: bool
    reminders_paused: bool
    has_recipient: bool
    customer_paused: bool = False
    unsubscribed: bool = False


class UpcomingRemindersResponse(BaseModel):
    items: list[UpcomingReminderItem]


class CustomerPreferenceRequest(_CamelModel):
    customer_email: str = Field(min_length=3, max_length=320)
    paused: bool | None = None
    unsubscribed: bool | None = None

    @field_validator("customer_email")
    @classmethod
    def _normalize_customer_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized:
            raise ValueError("customer email must contain @")
        return normalized


class CustomerPreferenceResponse(_CamelModel):
    ok: bool = True
    workspace_id: str | None = None
    customer_email: str
    paused: bool
    unsubscribed: bool
    updated_at: datetime


class DeliveryWebhookResponse(BaseModel):
    ok: bool = True
    ignored: bool = False
    updated_runs: int = 0
    updated_items: int = 0


class AdminLoginRequest(BaseModel):
    password: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=320)
    workspace_id: str | None = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized:
            raise ValueError("email must contain @")
        return normalized


class AdminLoginResponse(BaseModel):
    authenticated: bool
    session_token: str
    expires_at: datetime
    role: WorkspaceRole
    workspace_id: str | None = None
