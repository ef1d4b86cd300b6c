from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from threading import Lock
from typing import Iterable, Literal, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    inspect,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .dispatcher import DEFAULT_ERROR_MESSAGE, DispatchItem

TriggeredBy = Literal["manual", "cron", "dev"]

MIGRATION_REQUIRED_CODE = "REMINDER_RUNS_MIGRATION_REQUIRED"
MAX_ERROR_SAMPLE = 10
MAX_ITEM_ERROR_MESSAGE_LENGTH = 400
DEFAULT_RUN_LIST_LIMIT = 25
RUN_ITEM_REQUIRED_COLUMNS = frozenset(
    {
        "id",
        "run_id",
        "invoice_id",
        "recipient_email",
        "provider",
        "provider_message_id",
        "status",
        "error_code",
        "error_type",
        "error_message",
        "created_at",
        "updated_at",
    }
)
RUN_V2_COLUMNS = frozenset({"workspace_id", "actor_email", "attempted_count"})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump_json(payload: object) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class ReminderMigrationRequiredError(RuntimeError):
    """Raised when the reminder run tables have not been created yet."""

    code = MIGRATION_REQUIRED_CODE

    def __init__(self, message: str = "Reminder run tables are missing. Apply the reminder run migrations.") -> None:
        super().__init__(message)
        self.message = message


class ReminderSchemaVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


@dataclass(frozen=True)
class ReminderSchemaCapabilities:
    """What the reminder run schema supports.

    V1 stores aggregate run rows only. V2 adds ``workspace_id``,
    ``actor_email`` and ``attempted_count`` on runs plus the
    ``reminder_run_items`` table used for delivery reconciliation.
    """

    version: ReminderSchemaVersion
    has_workspace_id: bool = False
    has_actor_email: bool = False
    has_attempted_count: bool = False
    has_items_table: bool = False

    @property
    def records_items(self) -> bool:
        return self.version is ReminderSchemaVersion.V2


SCHEMA_V1 = ReminderSchemaCapabilities(version=ReminderSchemaVersion.V1)
SCHEMA_V2 = ReminderSchemaCapabilities(
    version=ReminderSchemaVersion.V2,
    has_workspace_id=True,
    has_actor_email=True,
    has_attempted_count=True,
    has_items_table=True,
)


def capabilities_from_columns(
    run_columns: Iterable[str] | None,
    item_columns: Iterable[str] | None,
) -> ReminderSchemaCapabilities:
    if run_columns is None:
        raise ReminderMigrationRequiredError()
    run_set = set(run_columns)
    item_set = set(item_columns) if item_columns is not None else set()
    has_items_table = item_columns is not None and RUN_ITEM_REQUIRED_COLUMNS <= item_set
    capabilities = ReminderSchemaCapabilities(
        version=ReminderSchemaVersion.V1,
        has_workspace_id="workspace_id" in run_set,
        has_actor_email="actor_email" in run_set,
        has_attempted_count="attempted_count" in run_set,
        has_items_table=has_items_table,
    )
    # A half-applied upgrade is written as V1 until every V2 piece exists.
    if RUN_V2_COLUMNS <= run_set and has_items_table:
        return replace(capabilities, version=ReminderSchemaVersion.V2)
    return capabilities


def detect_reminder_schema(engine: Engine) -> ReminderSchemaCapabilities:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    run_columns = None
    item_columns = None
    if "reminder_runs" in tables:
        run_columns = [column["name"] for column in inspector.get_columns("reminder_runs")]
    if "reminder_run_items" in tables:
        item_columns = [column["name"] for column in inspector.get_columns("reminder_run_items")]
    return capabilities_from_columns(run_columns, item_columns)


@dataclass(frozen=True)
class RunErrorSample:
    invoice_id: str
    recipient_email: str
    error_code: str | None
    error_type: str | None
    error_message: str
    occurred_at: datetime
    provider: str | None = None
    provider_message_id: str | None = None

    def to_json(self) -> dict[str, object]:
        return {
            "invoice_id": self.invoice_id,
            "recipient_email": self.recipient_email,
            "provider": self.provider,
            "provider_message_id": self.provider_message_id,
            "error_code": self.error_code,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_json(cls, payload: dict[str, object]) -> RunErrorSample:
        occurred_raw = payload.get("occurred_at")
        occurred_at = (
            _coerce_utc(datetime.fromisoformat(str(occurred_raw))) if occurred_raw else datetime.fromtimestamp(0, timezone.utc)
        )
        return cls(
            invoice_id=str(payload.get("invoice_id") or ""),
            recipient_email=str(payload.get("recipient_email") or ""),
            error_code=_optional_str(payload.get("error_code")),
            error_type=_optional_str(payload.get("error_type")),
            error_message=str(payload.get("error_message") or DEFAULT_ERROR_MESSAGE),
            occurred_at=occurred_at,
            provider=_optional_str(payload.get("provider")),
            provider_message_id=_optional_str(payload.get("provider_message_id")),
        )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ReminderRunItemRecord:
    item_id: int
    run_id: str
    workspace_id: str | None
    invoice_id: str
    recipient_email: str
    provider: str
    provider_message_id: str | None
    status: str
    error_code: str | None
    error_type: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ReminderRunRecord:
    run_id: str
    workspace_id: str | None
    actor_email: str | None
    ran_at: datetime
    triggered_by: str
    dry_run: bool
    attempted_count: int
    sent_count: int
    skipped_count: int
    error_count: int
    skipped_breakdown: dict[str, int]
    duration_ms: int
    errors: tuple[RunErrorSample, ...] = ()


@dataclass(frozen=True)
class RunDraft:
    ran_at: datetime
    triggered_by: TriggeredBy
    dry_run: bool
    duration_ms: int
    workspace_id: str | None = None
    actor_email: str | None = None
    skipped_breakdown: dict[str, int] = field(default_factory=dict)
    items: tuple[DispatchItem, ...] = ()


@dataclass(frozen=True)
class RunAggregate:
    attempted_count: int
    sent_count: int
    error_count: int
    errors: tuple[RunErrorSample, ...]


def summarize_run_items(items: Iterable[ReminderRunItemRecord]) -> RunAggregate:
    """Rebuild a run's counters and error sample from its current items."""
    materialized = list(items)
    sent = sum(1 for item in materialized if item.status == "sent")
    failed = [item for item in materialized if item.status == "error"]
    failed.sort(key=lambda item: (item.updated_at, item.created_at, item.item_id), reverse=True)
    errors = tuple(
        RunErrorSample(
            invoice_id=item.invoice_id,
            recipient_email=item.recipient_email,
            error_code=item.error_code,
            error_type=item.error_type,
            error_message=item.error_message or DEFAULT_ERROR_MESSAGE,
            occurred_at=item.updated_at,
            provider=item.provider,
            provider_message_id=item.provider_message_id,
        )
        for item in failed[:MAX_ERROR_SAMPLE]
    )
    return RunAggregate(
        attempted_count=sent + len(failed),
        sent_count=sent,
        error_count=len(failed),
        errors=errors,
    )


def clamp_run_list_limit(limit: int | None, *, maximum: int = 100) -> int:
    if limit is None:
        return min(DEFAULT_RUN_LIST_LIMIT, maximum)
    return max(1, min(int(limit), maximum))


def _draft_items(draft: RunDraft, run_id: str) -> list[ReminderRunItemRecord]:
    return [
        ReminderRunItemRecord(
            item_id=index,
            run_id=run_id,
            workspace_id=draft.workspace_id,
            invoice_id=item.invoice_id,
            recipient_email=item.recipient_email.strip().lower(),
            provider=item.provider,
            provider_message_id=item.provider_message_id,
            status=item.status,
            error_code=item.error_code,
            error_type=item.error_type,
            error_message=item.error_message,
            created_at=_coerce_utc(item.attempted_at),
            updated_at=_coerce_utc(item.attempted_at),
        )
        for index, item in enumerate(draft.items, start=1)
    ]


def _build_run(
    draft: RunDraft,
    run_id: str,
    items: list[ReminderRunItemRecord],
    capabilities: ReminderSchemaCapabilities,
) -> ReminderRunRecord:
    aggregate = summarize_run_items(items)
    breakdown = {key: int(value) for key, value in draft.skipped_breakdown.items()}
    return ReminderRunRecord(
        run_id=run_id,
        workspace_id=draft.workspace_id if capabilities.has_workspace_id else None,
        actor_email=draft.actor_email if capabilities.has_actor_email else None,
        ran_at=_coerce_utc(draft.ran_at),
        triggered_by=draft.triggered_by,
        dry_run=draft.dry_run,
        attempted_count=aggregate.attempted_count,
        sent_count=aggregate.sent_count,
        skipped_count=sum(breakdown.values()),
        error_count=aggregate.error_count,
        skipped_breakdown=breakdown,
        duration_ms=max(0, int(draft.duration_ms)),
        errors=aggregate.errors,
    )


class ReminderRunRepository(Protocol):
    def reset(self) -> None: ...

    def capabilities(self) -> ReminderSchemaCapabilities: ...

    def record_run(self, draft: RunDraft) -> ReminderRunRecord: ...

    def get_run(self, run_id: str) -> ReminderRunRecord | None: ...

    def list_runs(
        self,
        *,
        workspace_id: str | None,
        actor_email: str | None = None,
        limit: int,
    ) -> list[ReminderRunRecord]: ...

    def list_items(self, run_id: str) -> list[ReminderRunItemRecord]: ...

    def mark_items_failed(
        self,
        *,
        provider: str,
        provider_message_id: str,
        error_code: str | None,
        error_type: str | None,
        error_message: str,
        now: datetime | None = None,
    ) -> list[str]: ...

    def recompute_run_aggregates(self, run_id: str) -> ReminderRunRecord | None: ...


class InMemoryReminderRunRepository:
    """Process-local run store.

    ``schema_version=None`` behaves like a database without the reminder
    run tables.
    """

    def __init__(self, schema_version: ReminderSchemaVersion | None = ReminderSchemaVersion.V2) -> None:
        self._lock = Lock()
        self._schema_version = schema_version
        self._run_counter = count(1)
        self._item_counter = count(1)
        self._runs: dict[str, ReminderRunRecord] = {}
        self._items: dict[int, ReminderRunItemRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = count(1)
            self._item_counter = count(1)
            self._runs.clear()
            self._items.clear()

    def capabilities(self) -> ReminderSchemaCapabilities:
        if self._schema_version is None:
            raise ReminderMigrationRequiredError()
        if self._schema_version is ReminderSchemaVersion.V2:
            return SCHEMA_V2
        return SCHEMA_V1

    def record_run(self, draft: RunDraft) -> ReminderRunRecord:
        capabilities = self.capabilities()
        with self._lock:
            run_id = f"rrun_{next(self._run_counter):06d}"
            items = _draft_items(draft, run_id)
            run = _build_run(draft, run_id, items, capabilities)
            self._runs[run_id] = run
            if capabilities.records_items and not draft.dry_run:
                for item in items:
                    item_id = next(self._item_counter)
                    self._items[item_id] = replace(item, item_id=item_id)
            return run

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        self.capabilities()
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(
        self,
        *,
        workspace_id: str | None,
        actor_email: str | None = None,
        limit: int,
    ) -> list[ReminderRunRecord]:
        capabilities = self.capabilities()
        with self._lock:
            runs = list(self._runs.values())
        if workspace_id:
            if capabilities.has_workspace_id:
                runs = [run for run in runs if run.workspace_id == workspace_id]
        elif actor_email and capabilities.has_actor_email:
            actor = actor_email.strip().lower()
            runs = [
                run
                for run in runs
                if run.workspace_id is None and (run.actor_email or "").strip().lower() == actor
            ]
        else:
            return []
        runs.sort(key=lambda run: (run.ran_at, run.run_id), reverse=True)
        return runs[: max(0, limit)]

    def list_items(self, run_id: str) -> list[ReminderRunItemRecord]:
        with self._lock:
            items = [item for item in self._items.values() if item.run_id == run_id]
        return sorted(items, key=lambda item: item.item_id)

    def mark_items_failed(
        self,
        *,
        provider: str,
        provider_message_id: str,
        error_code: str | None,
        error_type: str | None,
        error_message: str,
        now: datetime | None = None,
    ) -> list[str]:
        if not self.capabilities().records_items:
            return []
        updated_at = _coerce_utc(now or _now_utc())
        provider_key = provider.strip().lower()
        message_key = provider_message_id.strip().lower()
        touched: list[str] = []
        with self._lock:
            for item_id, item in list(self._items.items()):
                if item.provider.lower() != provider_key:
                    continue
                if (item.provider_message_id or "").lower() != message_key:
                    continue
                if item.status == "error":
                    continue
                self._items[item_id] = replace(
                    item,
                    status="error",
                    error_code=error_code,
                    error_type=error_type,
                    error_message=error_message[:MAX_ITEM_ERROR_MESSAGE_LENGTH],
                    updated_at=updated_at,
                )
                touched.append(item.run_id)
        return touched

    def recompute_run_aggregates(self, run_id: str) -> ReminderRunRecord | None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            aggregate = summarize_run_items(item for item in self._items.values() if item.run_id == run_id)
            updated = replace(
                run,
                attempted_count=aggregate.attempted_count,
                sent_count=aggregate.sent_count,
                error_count=aggregate.error_count,
                errors=aggregate.errors,
            )
            self._runs[run_id] = updated
            return updated


class ReminderRunsBase(DeclarativeBase):
    pass


class _ReminderRunRow(ReminderRunsBase):
    __tablename__ = "reminder_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    ran_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    triggered_by: Mapped[str] = mapped_column(String(16), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_breakdown_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    errors_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class _ReminderRunItemRow(ReminderRunsBase):
    __tablename__ = "reminder_run_items"
    __table_args__ = (
        Index("ix_reminder_run_items_provider_message", "provider", "provider_message_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("reminder_runs.run_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# The pre-workspace shape of ``reminder_runs``; never used for DDL outside tests.
REMINDER_RUNS_V1_TABLE = Table(
    "reminder_runs",
    MetaData(),
    Column("run_id", String(64), primary_key=True),
    Column("ran_at", DateTime(timezone=True), nullable=False),
    Column("triggered_by", String(16), nullable=False),
    Column("dry_run", Boolean, nullable=False),
    Column("sent_count", Integer, nullable=False),
    Column("skipped_count", Integer, nullable=False),
    Column("error_count", Integer, nullable=False),
    Column("skipped_breakdown_json", Text, nullable=False),
    Column("errors_json", Text, nullable=False),
    Column("duration_ms", Integer, nullable=False),
)


def _load_breakdown(raw: str | None) -> dict[str, int]:
    try:
        payload = json.loads(raw or "{}")
    except ValueError:
        return {}
    if not isinstance(payload, dict):
        return {}
    return {str(key): int(value) for key, value in payload.items() if isinstance(value, (int, float))}


def _load_errors(raw: str | None) -> tuple[RunErrorSample, ...]:
    try:
        payload = json.loads(raw or "[]")
    except ValueError:
        return ()
    if not isinstance(payload, list):
        return ()
    return tuple(RunErrorSample.from_json(entry) for entry in payload if isinstance(entry, dict))


def _errors_json(errors: Iterable[RunErrorSample]) -> str:
    return _dump_json([error.to_json() for error in errors])


def _item_from_row(row: _ReminderRunItemRow) -> ReminderRunItemRecord:
    return ReminderRunItemRecord(
        item_id=row.id,
        run_id=row.run_id,
        workspace_id=row.workspace_id,
        invoice_id=row.invoice_id,
        recipient_email=row.recipient_email,
        provider=row.provider,
        provider_message_id=row.provider_message_id,
        status=row.status,
        error_code=row.error_code,
        error_type=row.error_type,
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _run_from_row(row: _ReminderRunRow) -> ReminderRunRecord:
    return ReminderRunRecord(
        run_id=row.run_id,
        workspace_id=row.workspace_id,
        actor_email=row.actor_email,
        ran_at=_coerce_utc(row.ran_at),
        triggered_by=row.triggered_by,
        dry_run=bool(row.dry_run),
        attempted_count=row.attempted_count,
        sent_count=row.sent_count,
        skipped_count=row.skipped_count,
        error_count=row.error_count,
        skipped_breakdown=_load_breakdown(row.skipped_breakdown_json),
        duration_ms=row.duration_ms,
        errors=_load_errors(row.errors_json),
    )


class _SchemaV1Adapter:
    """Runs table only; attempted is derived from sent + error."""

    table = REMINDER_RUNS_V1_TABLE

    def insert_run(self, session: Session, run: ReminderRunRecord) -> None:
        session.execute(
            insert(self.table).values(
                run_id=run.run_id,
                ran_at=run.ran_at,
                triggered_by=run.triggered_by,
                dry_run=run.dry_run,
                sent_count=run.sent_count,
                skipped_count=run.skipped_count,
                error_count=run.error_count,
                skipped_breakdown_json=_dump_json(run.skipped_breakdown),
                errors_json=_errors_json(run.errors),
                duration_ms=run.duration_ms,
            )
        )

    def insert_items(self, session: Session, items: list[ReminderRunItemRecord]) -> None:
        _ = session, items

    def get_run(self, session: Session, run_id: str) -> ReminderRunRecord | None:
        row = session.execute(select(self.table).where(self.table.c.run_id == run_id)).mappings().first()
        return self._from_mapping(row) if row is not None else None

    def list_runs(
        self,
        session: Session,
        *,
        workspace_id: str | None,
        actor_email: str | None,
        limit: int,
    ) -> list[ReminderRunRecord]:
        # No workspace column: legacy deployments are single-workspace. Without an
        # actor column an account-scoped caller cannot be told apart from cron.
        _ = actor_email
        if not workspace_id:
            return []
        query = select(self.table).order_by(self.table.c.ran_at.desc()).limit(limit)
        return [self._from_mapping(row) for row in session.execute(query).mappings().all()]

    def _from_mapping(self, row) -> ReminderRunRecord:
        return ReminderRunRecord(
            run_id=row["run_id"],
            workspace_id=None,
            actor_email=None,
            ran_at=_coerce_utc(row["ran_at"]),
            triggered_by=row["triggered_by"],
            dry_run=bool(row["dry_run"]),
            attempted_count=int(row["sent_count"]) + int(row["error_count"]),
            sent_count=int(row["sent_count"]),
            skipped_count=int(row["skipped_count"]),
            error_count=int(row["error_count"]),
            skipped_breakdown=_load_breakdown(row["skipped_breakdown_json"]),
            duration_ms=int(row["duration_ms"]),
            errors=_load_errors(row["errors_json"]),
        )


class _SchemaV2Adapter:
    def insert_run(self, session: Session, run: ReminderRunRecord) -> None:
        session.add(
            _ReminderRunRow(
                run_id=run.run_id,
                workspace_id=run.workspace_id,
                actor_email=run.actor_email,
                ran_at=run.ran_at,
                triggered_by=run.triggered_by,
                dry_run=run.dry_run,
                attempted_count=run.attempted_count,
                sent_count=run.sent_count,
                skipped_count=run.skipped_count,
                error_count=run.error_count,
                skipped_breakdown_json=_dump_json(run.skipped_breakdown),
                errors_json=_errors_json(run.errors),
                duration_ms=run.duration_ms,
            )
        )
        # Items reference the run through a foreign key.
        session.flush()

    def insert_items(self, session: Session, items: list[ReminderRunItemRecord]) -> None:
        session.add_all(
            _ReminderRunItemRow(
                run_id=item.run_id,
                workspace_id=item.workspace_id,
                invoice_id=item.invoice_id,
                recipient_email=item.recipient_email,
                provider=item.provider,
                provider_message_id=item.provider_message_id,
                status=item.status,
                error_code=item.error_code,
                error_type=item.error_type,
                error_message=item.error_message,
                created_at=item.created_at,
                updated_at=item.updated_at,
            )
            for item in items
        )

    def get_run(self, session: Session, run_id: str) -> ReminderRunRecord | None:
        row = session.get(_ReminderRunRow, run_id)
        return _run_from_row(row) if row is not None else None

    def list_runs(
        self,
        session: Session,
        *,
        workspace_id: str | None,
        actor_email: str | None,
        limit: int,
    ) -> list[ReminderRunRecord]:
        query = select(_ReminderRunRow)
        if workspace_id:
            query = query.where(_ReminderRunRow.workspace_id == workspace_id)
        elif actor_email:
            # Scheduled runs carry no actor, so they never match an account.
            query = query.where(_ReminderRunRow.workspace_id.is_(None)).where(
                func.lower(_ReminderRunRow.actor_email) == actor_email.strip().lower()
            )
        else:
            return []
        query = query.order_by(_ReminderRunRow.ran_at.desc(), _ReminderRunRow.run_id.desc()).limit(limit)
        return [_run_from_row(row) for row in session.execute(query).scalars().all()]


_ADAPTERS: dict[ReminderSchemaVersion, _SchemaV1Adapter | _SchemaV2Adapter] = {
    ReminderSchemaVersion.V1: _SchemaV1Adapter(),
    ReminderSchemaVersion.V2: _SchemaV2Adapter(),
}


class SqlAlchemyReminderRunRepository:
    """Run store backed by SQLAlchemy.

    The schema is detected once on first use and the result is kept for the
    life of the process; pass ``capabilities`` to skip probing.
    """

    def __init__(self, database_url: str, *, capabilities: ReminderSchemaCapabilities | None = None) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderRunsBase.metadata.create_all(self._engine)
        self._capabilities = capabilities
        self._detect_lock = Lock()

    def _session(self):
        return self._session_factory()

    def capabilities(self) -> ReminderSchemaCapabilities:
        if self._capabilities is None:
            with self._detect_lock:
                if self._capabilities is None:
                    self._capabilities = detect_reminder_schema(self._engine)
        return self._capabilities

    def _adapter(self) -> _SchemaV1Adapter | _SchemaV2Adapter:
        return _ADAPTERS[self.capabilities().version]

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                if self.capabilities().records_items:
                    session.query(_ReminderRunItemRow).delete()
                session.execute(REMINDER_RUNS_V1_TABLE.delete())

    def record_run(self, draft: RunDraft) -> ReminderRunRecord:
        capabilities = self.capabilities()
        adapter = _ADAPTERS[capabilities.version]
        run_id = f"rrun_{secrets.token_hex(8)}"
        items = _draft_items(draft, run_id)
        run = _build_run(draft, run_id, items, capabilities)
        with self._session() as session:
            with session.begin():
                adapter.insert_run(session, run)
                if capabilities.records_items and not draft.dry_run:
                    adapter.insert_items(session, items)
        return run

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        adapter = self._adapter()
        with self._session() as session:
            return adapter.get_run(session, run_id)

    def list_runs(
        self,
        *,
        workspace_id: str | None,
        actor_email: str | None = None,
        limit: int,
    ) -> list[ReminderRunRecord]:
        """List a workspace's runs, or an account's own runs when no workspace is given."""
        adapter = self._adapter()
        with self._session() as session:
            return adapter.list_runs(
                session,
                workspace_id=workspace_id,
                actor_email=actor_email,
                limit=max(0, limit),
            )

    def list_items(self, run_id: str) -> list[ReminderRunItemRecord]:
        if not self.capabilities().records_items:
            return []
        query = select(_ReminderRunItemRow).where(_ReminderRunItemRow.run_id == run_id).order_by(_ReminderRunItemRow.id)
        with self._session() as session:
            return [_item_from_row(row) for row in session.execute(query).scalars().all()]

    def mark_items_failed(
        self,
        *,
        provider: str,
        provider_message_id: str,
        error_code: str | None,
        error_type: str | None,
        error_message: str,
        now: datetime | None = None,
    ) -> list[str]:
        if not self.capabilities().records_items:
            return []
        statement = (
            update(_ReminderRunItemRow)
            .where(func.lower(_ReminderRunItemRow.provider) == provider.strip().lower())
            .where(func.lower(_ReminderRunItemRow.provider_message_id) == provider_message_id.strip().lower())
            .where(_ReminderRunItemRow.status != "error")
            .values(
                status="error",
                error_code=error_code,
                error_type=error_type,
                error_message=error_message[:MAX_ITEM_ERROR_MESSAGE_LENGTH],
                updated_at=_coerce_utc(now or _now_utc()),
            )
            .returning(_ReminderRunItemRow.run_id)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                return list(session.execute(statement).scalars().all())

    def recompute_run_aggregates(self, run_id: str) -> ReminderRunRecord | None:
        if not self.capabilities().records_items:
            return None
        with self._session() as session:
            with session.begin():
                # Lock the run so racing reconcilers apply their recomputes one at a time.
                row = session.execute(
                    select(_ReminderRunRow).where(_ReminderRunRow.run_id == run_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    return None
                items = session.execute(
                    select(_ReminderRunItemRow).where(_ReminderRunItemRow.run_id == run_id)
                ).scalars().all()
                aggregate = summarize_run_items(_item_from_row(item) for item in items)
                row.attempted_count = aggregate.attempted_count
                row.sent_count = aggregate.sent_count
                row.error_count = aggregate.error_count
                row.errors_json = _errors_json(aggregate.errors)
                return _run_from_row(row)


def create_reminder_run_repository(*, backend: str, database_url: str) -> ReminderRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderRunRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
