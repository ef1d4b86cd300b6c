from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    String,
    and_,
    create_engine,
    false,
    func,
    or_,
    select,
    true,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .escalation import LEVEL_DELAYS, MAX_REMINDER_LEVEL, is_eligible


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True)
class ReminderScope:
    """Which invoices a trigger may touch.

    A workspace id wins over an account email; with neither set the scope is
    global, which only scheduled triggers use.
    """

    workspace_id: str | None = None
    account_email: str | None = None

    @property
    def is_global(self) -> bool:
        return not self.workspace_id and not self.account_email


@dataclass(frozen=True)
class InvoiceRecord:
    invoice_id: str
    status: str
    amount_cents: int
    due_date: date | None
    customer_email: str | None
    customer_name: str | None = None
    invoice_number: str | None = None
    workspace_id: str | None = None
    user_email: str | None = None
    reminder_level: int = 0
    last_reminder_sent_at: datetime | None = None
    reminders_paused: bool = False
    # Read-only: derived from the owner's customer preferences, ignored on upsert.
    customer_paused: bool = False
    customer_unsubscribed: bool = False


@dataclass(frozen=True)
class CustomerPreference:
    """Per-owner reminder switches for one customer address.

    The owner is a workspace, or an account email for invoices outside any
    workspace.
    """

    workspace_id: str | None
    user_email: str | None
    customer_email: str
    paused: bool
    unsubscribed: bool
    updated_at: datetime


@dataclass(frozen=True)
class ClaimedInvoice:
    invoice_id: str
    workspace_id: str | None
    previous_level: int
    amount_cents: int
    due_date: date | None
    customer_email: str
    customer_name: str | None
    invoice_number: str | None
    claimed_at: datetime
    user_email: str | None = None

    @property
    def reminder_level(self) -> int:
        return self.previous_level + 1


class InvoiceStore(Protocol):
    def reset(self) -> None: ...

    def upsert_invoice(self, record: InvoiceRecord) -> None: ...

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None: ...

    def list_open_invoices(self, scope: ReminderScope) -> list[InvoiceRecord]: ...

    def preview_due_reminders(self, scope: ReminderScope, *, now: datetime, limit: int) -> list[ClaimedInvoice]: ...

    def claim_due_reminders(self, scope: ReminderScope, *, now: datetime, limit: int) -> list[ClaimedInvoice]: ...

    def set_customer_preference(
        self,
        owner: ReminderScope,
        customer_email: str,
        *,
        paused: bool | None = None,
        unsubscribed: bool | None = None,
        now: datetime | None = None,
    ) -> CustomerPreference: ...


def _has_recipient(email: str | None) -> bool:
    return bool((email or "").strip())


def _owner_key(workspace_id: str | None, user_email: str | None) -> tuple[str | None, str | None]:
    if workspace_id:
        return workspace_id, None
    return None, _normalize_email(user_email) or None


def _preference_owner(owner: ReminderScope, customer_email: str) -> tuple[str | None, str | None, str]:
    if owner.is_global:
        raise ValueError("customer preferences need a workspace or account owner")
    normalized = _normalize_email(customer_email)
    if not normalized:
        raise ValueError("customer email is required")
    workspace_id, user_email = _owner_key(owner.workspace_id, owner.account_email)
    return workspace_id, user_email, normalized


def _in_scope(record: InvoiceRecord, scope: ReminderScope) -> bool:
    if scope.workspace_id:
        return record.workspace_id == scope.workspace_id
    if scope.account_email:
        return (record.user_email or "").strip().lower() == scope.account_email.strip().lower()
    return True


def _claimable(record: InvoiceRecord, now: datetime) -> bool:
    if record.reminders_paused or record.customer_paused or record.customer_unsubscribed:
        return False
    if not _has_recipient(record.customer_email):
        return False
    return is_eligible(
        record.status,
        record.due_date,
        record.reminder_level,
        record.last_reminder_sent_at,
        now,
    )


def _claim_order(record: InvoiceRecord) -> tuple[date, str]:
    return (record.due_date or date.max, record.invoice_id)


def _claimed_from(record: InvoiceRecord, claimed_at: datetime) -> ClaimedInvoice:
    return ClaimedInvoice(
        invoice_id=record.invoice_id,
        workspace_id=record.workspace_id,
        previous_level=record.reminder_level,
        amount_cents=record.amount_cents,
        due_date=record.due_date,
        customer_email=(record.customer_email or "").strip(),
        customer_name=record.customer_name,
        invoice_number=record.invoice_number,
        claimed_at=claimed_at,
        user_email=record.user_email,
    )


class InMemoryInvoiceStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._invoices: dict[str, InvoiceRecord] = {}
        self._preferences: dict[tuple[str | None, str | None, str], CustomerPreference] = {}

    def reset(self) -> None:
        with self._lock:
            self._invoices.clear()
            self._preferences.clear()

    def _with_preferences(self, record: InvoiceRecord) -> InvoiceRecord:
        key = (*_owner_key(record.workspace_id, record.user_email), _normalize_email(record.customer_email))
        preference = self._preferences.get(key)
        return replace(
            record,
            customer_paused=bool(preference and preference.paused),
            customer_unsubscribed=bool(preference and preference.unsubscribed),
        )

    def _decorated(self) -> list[InvoiceRecord]:
        return [self._with_preferences(record) for record in self._invoices.values()]

    def upsert_invoice(self, record: InvoiceRecord) -> None:
        with self._lock:
            self._invoices[record.invoice_id] = replace(record, customer_paused=False, customer_unsubscribed=False)

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        with self._lock:
            record = self._invoices.get(invoice_id)
            return self._with_preferences(record) if record is not None else None

    def list_open_invoices(self, scope: ReminderScope) -> list[InvoiceRecord]:
        with self._lock:
            rows = [
                record
                for record in self._decorated()
                if _in_scope(record, scope)
                and record.status == "pending"
                and record.due_date is not None
                and record.reminder_level < MAX_REMINDER_LEVEL
            ]
        return sorted(rows, key=_claim_order)

    def preview_due_reminders(self, scope: ReminderScope, *, now: datetime, limit: int) -> list[ClaimedInvoice]:
        current = _coerce_utc(now)
        with self._lock:
            candidates = sorted(
                (record for record in self._decorated() if _in_scope(record, scope) and _claimable(record, current)),
                key=_claim_order,
            )
        return [_claimed_from(record, current) for record in candidates[: max(0, limit)]]

    def claim_due_reminders(self, scope: ReminderScope, *, now: datetime, limit: int) -> list[ClaimedInvoice]:
        current = _coerce_utc(now)
        claimed: list[ClaimedInvoice] = []
        # The lock makes select-and-advance one step, so racing triggers never share an invoice.
        with self._lock:
            candidates = sorted(
                (record for record in self._decorated() if _in_scope(record, scope) and _claimable(record, current)),
                key=_claim_order,
            )
            for record in candidates[: max(0, limit)]:
                self._invoices[record.invoice_id] = replace(
                    self._invoices[record.invoice_id],
                    reminder_level=record.reminder_level + 1,
                    last_reminder_sent_at=current,
                )
                claimed.append(_claimed_from(record, current))
        return claimed

    def set_customer_preference(
        self,
        owner: ReminderScope,
        customer_email: str,
        *,
        paused: bool | None = None,
        unsubscribed: bool | None = None,
        now: datetime | None = None,
    ) -> CustomerPreference:
        key = _preference_owner(owner, customer_email)
        with self._lock:
            existing = self._preferences.get(key)
            preference = CustomerPreference(
                workspace_id=key[0],
                user_email=key[1],
                customer_email=key[2],
                paused=existing.paused if paused is None and existing else bool(paused),
                unsubscribed=existing.unsubscribed if unsubscribed is None and existing else bool(unsubscribed),
                updated_at=_coerce_utc(now or _now_utc()),
            )
            self._preferences[key] = preference
            return preference


class InvoiceStoreBase(DeclarativeBase):
    pass


class _InvoiceRow(InvoiceStoreBase):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reminder_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminders_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CustomerPreferenceRow(InvoiceStoreBase):
    __tablename__ = "reminder_customer_preferences"
    __table_args__ = (
        CheckConstraint(
            "workspace_id IS NOT NULL OR user_email IS NOT NULL",
            name="ck_reminder_customer_preferences_owner",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unsubscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _record_from_row(row: _InvoiceRow, *, customer_paused: bool = False, customer_unsubscribed: bool = False) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id=row.id,
        status=row.status,
        amount_cents=row.amount,
        due_date=row.due_date,
        customer_email=row.customer_email,
        customer_name=row.customer_name,
        invoice_number=row.invoice_number,
        workspace_id=row.workspace_id,
        user_email=row.user_email,
        reminder_level=row.reminder_level,
        last_reminder_sent_at=_coerce_utc(row.last_reminder_sent_at) if row.last_reminder_sent_at else None,
        reminders_paused=row.reminders_paused,
        customer_paused=bool(customer_paused),
        customer_unsubscribed=bool(customer_unsubscribed),
    )


def _preference_from_row(row: _CustomerPreferenceRow) -> CustomerPreference:
    return CustomerPreference(
        workspace_id=row.workspace_id,
        user_email=row.user_email,
        customer_email=row.customer_email,
        paused=row.paused,
        unsubscribed=row.unsubscribed,
        updated_at=_coerce_utc(row.updated_at),
    )


def _scope_clause(scope: ReminderScope):
    if scope.workspace_id:
        return _InvoiceRow.workspace_id == scope.workspace_id
    if scope.account_email:
        return func.lower(_InvoiceRow.user_email) == scope.account_email.strip().lower()
    return true()


def _customer_flag(flag):
    """EXISTS over the invoice owner's preference row for its customer, correlated to ``invoices``."""
    owner_matches = or_(
        and_(
            _InvoiceRow.workspace_id.is_not(None),
            _CustomerPreferenceRow.workspace_id == _InvoiceRow.workspace_id,
        ),
        and_(
            _InvoiceRow.workspace_id.is_(None),
            _CustomerPreferenceRow.workspace_id.is_(None),
            _CustomerPreferenceRow.user_email == func.lower(func.trim(_InvoiceRow.user_email)),
        ),
    )
    return (
        select(_CustomerPreferenceRow.id)
        .where(_CustomerPreferenceRow.customer_email == func.lower(func.trim(_InvoiceRow.customer_email)))
        .where(owner_matches)
        .where(flag == true())
        .exists()
    )


def _eligibility_clause(now: datetime):
    """SQL form of ``escalation.is_eligible`` plus the sendability checks."""
    level_rules = [and_(_InvoiceRow.reminder_level == 0, _InvoiceRow.due_date < now.date())]
    for level, delay in LEVEL_DELAYS.items():
        level_rules.append(
            and_(
                _InvoiceRow.reminder_level == level,
                _InvoiceRow.last_reminder_sent_at <= now - delay,
            )
        )
    return and_(
        _InvoiceRow.status == "pending",
        _InvoiceRow.due_date.is_not(None),
        _InvoiceRow.reminder_level < MAX_REMINDER_LEVEL,
        _InvoiceRow.reminders_paused == false(),
        _InvoiceRow.customer_email.is_not(None),
        func.trim(_InvoiceRow.customer_email) != "",
        ~_customer_flag(_CustomerPreferenceRow.paused),
        ~_customer_flag(_CustomerPreferenceRow.unsubscribed),
        or_(*level_rules),
    )


def _decorated_invoices():
    return select(
        _InvoiceRow,
        _customer_flag(_CustomerPreferenceRow.paused).label("customer_paused"),
        _customer_flag(_CustomerPreferenceRow.unsubscribed).label("customer_unsubscribed"),
    )


class SqlAlchemyInvoiceStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for INVOICE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            InvoiceStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_CustomerPreferenceRow).delete()
                session.query(_InvoiceRow).delete()

    def upsert_invoice(self, record: InvoiceRecord) -> None:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_InvoiceRow, record.invoice_id)
                if row is None:
                    row = _InvoiceRow(id=record.invoice_id)
                    session.add(row)
                row.workspace_id = record.workspace_id
                row.user_email = record.user_email
                row.invoice_number = record.invoice_number
                row.customer_name = record.customer_name
                row.customer_email = record.customer_email
                row.status = record.status
                row.amount = record.amount_cents
                row.due_date = record.due_date
                row.reminder_level = record.reminder_level
                row.last_reminder_sent_at = (
                    _coerce_utc(record.last_reminder_sent_at) if record.last_reminder_sent_at else None
                )
                row.reminders_paused = record.reminders_paused
                row.updated_at = now

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        query = _decorated_invoices().where(_InvoiceRow.id == invoice_id)
        with self._session() as session:
            row = session.execute(query).first()
            if row is None:
                return None
            return _record_from_row(
                row[0],
                customer_paused=row.customer_paused,
                customer_unsubscribed=row.customer_unsubscribed,
            )

    def list_open_invoices(self, scope: ReminderScope) -> list[InvoiceRecord]:
        query = (
            _decorated_invoices()
            .where(_scope_clause(scope))
            .where(_InvoiceRow.status == "pending")
            .where(_InvoiceRow.due_date.is_not(None))
            .where(_InvoiceRow.reminder_level < MAX_REMINDER_LEVEL)
            .order_by(_InvoiceRow.due_date.asc(), _InvoiceRow.id.asc())
        )
        with self._session() as session:
            rows = session.execute(query).all()
            return [
                _record_from_row(
                    row[0],
                    customer_paused=row.customer_paused,
                    customer_unsubscribed=row.customer_unsubscribed,
                )
                for row in rows
            ]

    def preview_due_reminders(self, scope: ReminderScope, *, now: datetime, limit: int) -> list[ClaimedInvoice]:
        current = _coerce_utc(now)
        query = (
            select(_InvoiceRow)
            .where(_scope_clause(scope))
            .where(_eligibility_clause(current))
            .order_by(_InvoiceRow.due_date.asc(), _InvoiceRow.id.asc())
            .limit(max(0, limit))
        )
        with self._session() as session:
            rows = session.execute(query).scalars().all()
            return [_claimed_from(_record_from_row(row), current) for row in rows]

    def claim_due_reminders(self, scope: ReminderScope, *, now: datetime, limit: int) -> list[ClaimedInvoice]:
        """Advance every eligible invoice in scope by one level in a single UPDATE ... RETURNING.

        The bounded id subquery takes row locks with SKIP LOCKED where the
        dialect supports it. The outer WHERE repeats the eligibility predicate,
        so a row another trigger advanced first no longer matches.
        """
        current = _coerce_utc(now)
        scope_clause = _scope_clause(scope)
        eligible = _eligibility_clause(current)
        candidate_ids = (
            select(_InvoiceRow.id)
            .where(scope_clause)
            .where(eligible)
            .order_by(_InvoiceRow.due_date.asc(), _InvoiceRow.id.asc())
            .limit(max(0, limit))
            .with_for_update(skip_locked=True)
            .correlate(None)
        )
        statement = (
            update(_InvoiceRow)
            .where(_InvoiceRow.id.in_(candidate_ids))
            .where(scope_clause)
            .where(eligible)
            .values(
                reminder_level=_InvoiceRow.reminder_level + 1,
                last_reminder_sent_at=current,
                updated_at=current,
            )
            .returning(
                _InvoiceRow.id,
                _InvoiceRow.workspace_id,
                _InvoiceRow.user_email,
                _InvoiceRow.reminder_level,
                _InvoiceRow.amount,
                _InvoiceRow.due_date,
                _InvoiceRow.customer_email,
                _InvoiceRow.customer_name,
                _InvoiceRow.invoice_number,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                rows = session.execute(statement).all()
        claimed = [
            ClaimedInvoice(
                invoice_id=row.id,
                workspace_id=row.workspace_id,
                # RETURNING reports the advanced level.
                previous_level=row.reminder_level - 1,
                amount_cents=row.amount,
                due_date=row.due_date,
                customer_email=(row.customer_email or "").strip(),
                customer_name=row.customer_name,
                invoice_number=row.invoice_number,
                claimed_at=current,
                user_email=row.user_email,
            )
            for row in rows
        ]
        return sorted(claimed, key=lambda item: (item.due_date or date.max, item.invoice_id))

    def set_customer_preference(
        self,
        owner: ReminderScope,
        customer_email: str,
        *,
        paused: bool | None = None,
        unsubscribed: bool | None = None,
        now: datetime | None = None,
    ) -> CustomerPreference:
        workspace_id, user_email, normalized = _preference_owner(owner, customer_email)
        query = (
            select(_CustomerPreferenceRow)
            .where(
                _CustomerPreferenceRow.workspace_id == workspace_id
                if workspace_id
                else _CustomerPreferenceRow.workspace_id.is_(None)
            )
            .where(
                _CustomerPreferenceRow.user_email == user_email
                if user_email
                else _CustomerPreferenceRow.user_email.is_(None)
            )
            .where(_CustomerPreferenceRow.customer_email == normalized)
            .with_for_update()
        )
        with self._session() as session:
            with session.begin():
                row = session.execute(query).scalars().first()
                if row is None:
                    row = _CustomerPreferenceRow(
                        workspace_id=workspace_id,
                        user_email=user_email,
                        customer_email=normalized,
                        paused=False,
                        unsubscribed=False,
                    )
                    session.add(row)
                if paused is not None:
                    row.paused = paused
                if unsubscribed is not None:
                    row.unsubscribed = unsubscribed
                row.updated_at = _coerce_utc(now or _now_utc())
                session.flush()
                return _preference_from_row(row)


def create_invoice_store(*, backend: str, database_url: str) -> InvoiceStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyInvoiceStore(database_url)
    if normalized == "inmemory":
        return InMemoryInvoiceStore()
    raise RuntimeError(f"unsupported INVOICE_STORE_BACKEND: {backend}")
