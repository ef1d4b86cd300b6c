from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine

from reminders_web.dispatcher import DispatchItem
from reminders_web.reminder_runs import (
    MIGRATION_REQUIRED_CODE,
    REMINDER_RUNS_V1_TABLE,
    SCHEMA_V2,
    InMemoryReminderRunRepository,
    ReminderMigrationRequiredError,
    ReminderSchemaVersion,
    RunDraft,
    SqlAlchemyReminderRunRepository,
    capabilities_from_columns,
    clamp_run_list_limit,
    create_reminder_run_repository,
    detect_reminder_schema,
)

RAN_AT = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


def _sent(invoice_id: str, message_id: str) -> DispatchItem:
    return DispatchItem(
        invoice_id=invoice_id,
        recipient_email=f"{invoice_id}@Example.com",
        provider="stub",
        status="sent",
        attempted_at=RAN_AT,
        provider_message_id=message_id,
    )


def _failed(invoice_id: str, *, attempted_at: datetime = RAN_AT) -> DispatchItem:
    return DispatchItem(
        invoice_id=invoice_id,
        recipient_email=f"{invoice_id}@example.com",
        provider="stub",
        status="error",
        attempted_at=attempted_at,
        error_code="STUB_DELIVERY_FAILED",
        error_type="stub_delivery_failed",
        error_message="Stub sender forced failure for recipient",
    )


def _draft(
    *items: DispatchItem,
    ran_at: datetime = RAN_AT,
    workspace_id: str | None = "ws-1",
    dry_run: bool = False,
    actor_email: str | None = "owner@example.com",
    triggered_by: str = "manual",
) -> RunDraft:
    return RunDraft(
        ran_at=ran_at,
        triggered_by=triggered_by,
        dry_run=dry_run,
        duration_ms=42,
        workspace_id=workspace_id,
        actor_email=actor_email,
        skipped_breakdown={"paused": 1, "missing_email": 2, "not_eligible": 0, "other": 0},
        items=tuple(items),
    )


def _sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'runs.db'}"


def test_record_run_aggregates_items_in_memory() -> None:
    repo = InMemoryReminderRunRepository()

    run = repo.record_run(_draft(_sent("inv-1", "m-1"), _failed("inv-2"), _sent("inv-3", "m-3")))

    assert run.run_id == "rrun_000001"
    assert (run.attempted_count, run.sent_count, run.error_count) == (3, 2, 1)
    assert run.skipped_count == 3
    assert run.workspace_id == "ws-1"
    assert run.actor_email == "owner@example.com"
    assert [error.invoice_id for error in run.errors] == ["inv-2"]
    items = repo.list_items(run.run_id)
    assert [item.recipient_email for item in items] == ["inv-1@example.com", "inv-2@example.com", "inv-3@example.com"]


def test_dry_run_writes_no_items() -> None:
    repo = InMemoryReminderRunRepository()

    run = repo.record_run(_draft(dry_run=True))

    assert run.dry_run is True
    assert repo.list_items(run.run_id) == []


def test_error_sample_keeps_ten_most_recent_first() -> None:
    repo = InMemoryReminderRunRepository()
    failures = [_failed(f"inv-{index:02d}", attempted_at=RAN_AT + timedelta(seconds=index)) for index in range(12)]

    run = repo.record_run(_draft(*failures))

    assert run.error_count == 12
    assert len(run.errors) == 10
    assert run.errors[0].invoice_id == "inv-11"
    assert run.errors[-1].invoice_id == "inv-02"


@pytest.fixture(params=["inmemory", "sqlite"])
def run_repo(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        return InMemoryReminderRunRepository()
    return SqlAlchemyReminderRunRepository(_sqlite_url(tmp_path))


def test_list_runs_filters_by_workspace_and_orders_newest_first(run_repo) -> None:
    older = run_repo.record_run(_draft(ran_at=RAN_AT - timedelta(hours=1)))
    newer = run_repo.record_run(_draft(ran_at=RAN_AT))
    run_repo.record_run(_draft(workspace_id="ws-2"))

    assert [run.run_id for run in run_repo.list_runs(workspace_id="ws-1", limit=10)] == [newer.run_id, older.run_id]
    assert [run.run_id for run in run_repo.list_runs(workspace_id="ws-1", limit=1)] == [newer.run_id]


def test_account_listing_only_returns_that_accounts_runs(run_repo) -> None:
    own = run_repo.record_run(_draft(_failed("inv-1"), workspace_id=None, actor_email="solo@example.com"))
    run_repo.record_run(_draft(_failed("inv-2"), workspace_id=None, actor_email="other@example.com"))
    run_repo.record_run(_draft(_failed("inv-3"), workspace_id=None, actor_email=None, triggered_by="cron"))
    run_repo.record_run(_draft(workspace_id="ws-1", actor_email="solo@example.com"))

    listed = run_repo.list_runs(workspace_id=None, actor_email=" Solo@Example.com ", limit=10)

    assert [run.run_id for run in listed] == [own.run_id]
    assert [error.invoice_id for error in listed[0].errors] == ["inv-1"]
    assert run_repo.list_runs(workspace_id=None, actor_email="nobody@example.com", limit=10) == []
    # Without a workspace or an account there is nothing the caller may see, cron runs included.
    assert run_repo.list_runs(workspace_id=None, limit=10) == []


def test_clamp_run_list_limit() -> None:
    assert clamp_run_list_limit(None) == 25
    assert clamp_run_list_limit(0) == 1
    assert clamp_run_list_limit(500) == 100
    assert clamp_run_list_limit(40, maximum=30) == 30


def test_missing_tables_raise_migration_required() -> None:
    repo = InMemoryReminderRunRepository(schema_version=None)

    with pytest.raises(ReminderMigrationRequiredError) as exc_info:
        repo.record_run(_draft())
    assert exc_info.value.code == MIGRATION_REQUIRED_CODE

    engine = create_engine("sqlite://")
    with pytest.raises(ReminderMigrationRequiredError):
        detect_reminder_schema(engine)


def test_capabilities_from_columns_degrades_partial_upgrade_to_v1() -> None:
    run_columns = ["run_id", "ran_at", "workspace_id", "actor_email"]
    capabilities = capabilities_from_columns(run_columns, None)

    assert capabilities.version is ReminderSchemaVersion.V1
    assert capabilities.has_workspace_id is True
    assert capabilities.has_attempted_count is False
    assert capabilities.records_items is False


def test_sqlite_repository_detects_v2_and_records_items(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderRunRepository(_sqlite_url(tmp_path))

    run = repo.record_run(_draft(_sent("inv-1", "m-1"), _failed("inv-2")))

    assert repo.capabilities() == SCHEMA_V2
    stored = repo.get_run(run.run_id)
    assert stored is not None
    assert (stored.attempted_count, stored.sent_count, stored.error_count) == (2, 1, 1)
    assert stored.skipped_breakdown == {"paused": 1, "missing_email": 2, "not_eligible": 0, "other": 0}
    assert stored.errors[0].error_code == "STUB_DELIVERY_FAILED"
    assert stored.errors[0].provider == "stub"
    assert stored.ran_at == RAN_AT
    assert [item.status for item in repo.list_items(run.run_id)] == ["sent", "error"]
    assert [listed.run_id for listed in repo.list_runs(workspace_id="ws-1", limit=5)] == [run.run_id]


def test_sqlite_repository_falls_back_to_v1_schema(tmp_path: Path) -> None:
    url = _sqlite_url(tmp_path)
    engine = create_engine(url)
    REMINDER_RUNS_V1_TABLE.metadata.create_all(engine)
    engine.dispose()

    repo = SqlAlchemyReminderRunRepository(url)
    run = repo.record_run(_draft(_sent("inv-1", "m-1"), _failed("inv-2")))

    assert repo.capabilities().version is ReminderSchemaVersion.V1
    assert run.workspace_id is None
    assert run.actor_email is None
    stored = repo.get_run(run.run_id)
    assert stored is not None
    assert (stored.attempted_count, stored.sent_count, stored.error_count) == (2, 1, 1)
    assert repo.list_items(run.run_id) == []
    assert [listed.run_id for listed in repo.list_runs(workspace_id="ws-1", limit=5)] == [run.run_id]
    assert repo.list_runs(workspace_id=None, actor_email="owner@example.com", limit=5) == []
    assert repo.mark_items_failed(
        provider="stub",
        provider_message_id="m-1",
        error_code=None,
        error_type=None,
        error_message="bounced",
    ) == []


def test_create_reminder_run_repository_rejects_unknown_backend() -> None:
    assert isinstance(create_reminder_run_repository(backend="inmemory", database_url=""), InMemoryReminderRunRepository)
    with pytest.raises(RuntimeError, match="unsupported REMINDER_STORE_BACKEND"):
        create_reminder_run_repository(backend="mongo", database_url="")
