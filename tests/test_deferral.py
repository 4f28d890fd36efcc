"""Tests for the deferral engine.

Covers defer, reconcile, due preview and cancel against a real temporary
database with a mocked mailbox directory.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import NOW, seed_thread

from inboxzero.core.errors import (
    DatabaseError,
    DeferralConflictError,
    GraphAPIError,
    InputValidationError,
    NotFoundError,
    ReconciliationError,
)
from inboxzero.db.store import DatabaseStore
from inboxzero.engine.deferral import DeferralService, parse_instant
from inboxzero.graph.mailbox import MailboxActionResult

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mailbox() -> MagicMock:
    """Return a mock MailboxAdapter that succeeds."""
    adapter = MagicMock()
    ok = MailboxActionResult(success=True)
    adapter.snooze.return_value = ok
    adapter.unsnooze.return_value = ok
    adapter.archive.return_value = ok
    adapter.mark_read.return_value = ok
    return adapter


@pytest.fixture
def mailboxes(mailbox: MagicMock) -> MagicMock:
    """Return a mock MailboxProvider handing out the mock adapter."""
    provider = MagicMock()
    provider.for_user.return_value = mailbox
    return provider


@pytest.fixture
def service(store: DatabaseStore, mailboxes: MagicMock) -> DeferralService:
    return DeferralService(store=store, mailboxes=mailboxes)


# ---------------------------------------------------------------------------
# parse_instant
# ---------------------------------------------------------------------------


class TestParseInstant:
    def test_accepts_z_suffix(self) -> None:
        assert parse_instant("2026-03-02T09:00:00Z", "defer_until") == NOW

    def test_naive_string_is_utc(self) -> None:
        assert parse_instant("2026-03-02T09:00:00", "defer_until") == NOW

    def test_datetime_passthrough(self) -> None:
        assert parse_instant(NOW, "defer_until") == NOW

    def test_invalid_string(self) -> None:
        with pytest.raises(InputValidationError) as exc_info:
            parse_instant("next tuesday", "defer_until")
        assert exc_info.value.fields == ["defer_until"]

    def test_missing(self) -> None:
        with pytest.raises(InputValidationError):
            parse_instant(None, "now")

    def test_offset_past_max_year_is_invalid(self) -> None:
        with pytest.raises(InputValidationError) as exc_info:
            parse_instant("9999-12-31T23:59:59-05:00", "defer_until")
        assert exc_info.value.fields == ["defer_until"]

    def test_aware_datetime_past_max_year_is_invalid(self) -> None:
        late = datetime(9999, 12, 31, 23, 0, tzinfo=timezone(timedelta(hours=-5)))
        with pytest.raises(InputValidationError):
            parse_instant(late, "now")


# ---------------------------------------------------------------------------
# Defer
# ---------------------------------------------------------------------------


class TestDefer:
    async def test_defer_hides_thread_and_snoozes(
        self, service: DeferralService, store: DatabaseStore, mailbox: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1", "remote-2"])
        until = NOW + timedelta(hours=1)

        record = await service.defer("user-1", "t1", until, now=NOW)

        assert record.processed is False
        assert record.email_thread_id == "t1"
        assert record.defer_until == until

        thread = await store.get_thread("user-1", "t1")
        assert thread.is_hidden is True
        assert thread.is_processed is True
        assert thread.processed_at == NOW

        mailbox.snooze.assert_called_once_with("remote-2", until)

    async def test_defer_accepts_iso_string(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")

        record = await service.defer("user-1", "t1", "2026-03-02T10:00:00Z", now=NOW)

        assert record.defer_until == NOW + timedelta(hours=1)

    async def test_defer_in_the_past_is_allowed(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")

        record = await service.defer("user-1", "t1", NOW - timedelta(days=1), now=NOW)

        assert record.defer_until < NOW

    async def test_defer_logs_action(self, service: DeferralService, store: DatabaseStore) -> None:
        await seed_thread(store, "t1")

        record = await service.defer("user-1", "t1", NOW, now=NOW)

        entries = await store.get_action_logs(user_id="user-1", action_type="defer")
        assert entries[0].thread_id == "t1"
        assert entries[0].details_json["deferral_id"] == record.id

    @pytest.mark.parametrize(
        ("user_id", "thread_id", "until", "missing"),
        [
            ("", "t1", NOW, ["user_id"]),
            ("user-1", None, NOW, ["thread_id"]),
            ("user-1", "t1", None, ["defer_until"]),
            (None, "", "", ["user_id", "thread_id", "defer_until"]),
        ],
    )
    async def test_missing_input_rejected_before_io(
        self, user_id, thread_id, until, missing
    ) -> None:
        store = MagicMock(spec=DatabaseStore)
        provider = MagicMock()
        service = DeferralService(store=store, mailboxes=provider)

        with pytest.raises(InputValidationError) as exc_info:
            await service.defer(user_id, thread_id, until, now=NOW)

        assert exc_info.value.fields == missing
        assert store.method_calls == []
        provider.for_user.assert_not_called()

    async def test_unknown_thread_not_found(
        self, service: DeferralService, store: DatabaseStore, mailboxes: MagicMock
    ) -> None:
        with pytest.raises(NotFoundError):
            await service.defer("user-1", "missing", NOW, now=NOW)

        assert await store.list_deferrals("user-1", include_processed=True) == []
        mailboxes.for_user.assert_not_called()

    async def test_foreign_thread_not_found(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1", user_id="user-2")

        with pytest.raises(NotFoundError):
            await service.defer("user-1", "t1", NOW, now=NOW)

        assert (await store.get_thread("user-2", "t1")).is_hidden is False
        assert await store.list_deferrals("user-2") == []

    async def test_second_deferral_conflicts_without_side_effects(
        self, service: DeferralService, store: DatabaseStore, mailbox: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        first = await service.defer("user-1", "t1", NOW + timedelta(hours=1), now=NOW)
        mailbox.snooze.reset_mock()

        with pytest.raises(DeferralConflictError) as exc_info:
            await service.defer("user-1", "t1", NOW + timedelta(days=1), now=NOW)

        assert exc_info.value.deferral_id == first.id
        mailbox.snooze.assert_not_called()
        assert len(await store.list_deferrals("user-1")) == 1

    async def test_no_remote_message_skips_mailbox(
        self, service: DeferralService, store: DatabaseStore, mailboxes: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=[None])

        record = await service.defer("user-1", "t1", NOW, now=NOW)

        mailboxes.for_user.assert_not_called()
        assert record.processed is False
        assert (await store.get_thread("user-1", "t1")).is_hidden is True

    async def test_no_mailbox_configured_still_defers(self, store: DatabaseStore) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        provider = MagicMock()
        provider.for_user.return_value = None
        service = DeferralService(store=store, mailboxes=provider)

        await service.defer("user-1", "t1", NOW, now=NOW)

        assert (await store.get_thread("user-1", "t1")).is_hidden is True

    async def test_without_provider_still_defers(self, store: DatabaseStore) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        service = DeferralService(store=store)

        record = await service.defer("user-1", "t1", NOW, now=NOW)

        assert record.processed is False

    async def test_mailbox_failure_result_is_tolerated(
        self, service: DeferralService, store: DatabaseStore, mailbox: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        mailbox.snooze.return_value = MailboxActionResult(success=False, error="boom")

        record = await service.defer("user-1", "t1", NOW + timedelta(hours=1), now=NOW)

        assert record.processed is False
        assert (await store.get_thread("user-1", "t1")).is_hidden is True
        entries = await store.get_action_logs(user_id="user-1", action_type="defer")
        assert entries[0].details_json["mailbox_snoozed"] is False

    async def test_mailbox_exception_is_tolerated(
        self, service: DeferralService, store: DatabaseStore, mailbox: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        mailbox.snooze.side_effect = GraphAPIError("Graph down", status_code=503)

        record = await service.defer("user-1", "t1", NOW + timedelta(hours=1), now=NOW)

        assert record.processed is False
        assert (await store.get_thread("user-1", "t1")).is_hidden is True

    async def test_mailbox_lookup_exception_is_tolerated(
        self, service: DeferralService, store: DatabaseStore, mailboxes: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        mailboxes.for_user.side_effect = RuntimeError("token cache unreadable")

        await service.defer("user-1", "t1", NOW, now=NOW)

        assert (await store.get_thread("user-1", "t1")).is_hidden is True

    async def test_action_log_failure_does_not_fail_defer(self, store: DatabaseStore) -> None:
        await seed_thread(store, "t1")
        service = DeferralService(store=store)
        store.log_action = AsyncMock(side_effect=DatabaseError("disk full"))

        record = await service.defer("user-1", "t1", NOW, now=NOW)

        assert record.processed is False


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    async def test_reconcile_returns_due_threads(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")
        await service.defer("user-1", "t1", NOW, now=NOW - timedelta(hours=1))

        processed = await service.reconcile_due("user-1", NOW)

        assert [r.email_thread_id for r in processed] == ["t1"]
        assert all(r.processed for r in processed)
        thread = await store.get_thread("user-1", "t1")
        assert thread.is_hidden is False
        assert thread.is_processed is False
        assert await store.list_deferrals("user-1") == []

    async def test_nothing_due_returns_empty_without_writes(self) -> None:
        store = MagicMock(spec=DatabaseStore)
        store.get_due_deferrals = AsyncMock(return_value=[])
        service = DeferralService(store=store)

        assert await service.reconcile_due("user-1", NOW) == []

        store.unhide_threads.assert_not_called()
        store.mark_deferrals_processed.assert_not_called()
        store.log_action.assert_not_called()

    async def test_reconcile_is_idempotent(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")
        await service.defer("user-1", "t1", NOW - timedelta(minutes=5), now=NOW)

        first = await service.reconcile_due("user-1", NOW)
        second = await service.reconcile_due("user-1", NOW)

        assert len(first) == 1
        assert second == []
        assert (await store.get_thread("user-1", "t1")).is_hidden is False

    async def test_boundary_inclusive_and_one_ms_later_excluded(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "exact")
        await seed_thread(store, "later")
        await service.defer("user-1", "exact", NOW, now=NOW - timedelta(hours=1))
        await service.defer(
            "user-1", "later", NOW + timedelta(milliseconds=1), now=NOW - timedelta(hours=1)
        )

        processed = await service.reconcile_due("user-1", NOW)

        assert [r.email_thread_id for r in processed] == ["exact"]
        assert (await store.get_thread("user-1", "later")).is_hidden is True

    async def test_ownership_isolation(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "mine", user_id="user-1")
        await seed_thread(store, "theirs", user_id="user-2")
        await service.defer("user-1", "mine", NOW - timedelta(hours=1), now=NOW)
        await service.defer("user-2", "theirs", NOW - timedelta(hours=1), now=NOW)

        processed = await service.reconcile_due("user-1", NOW)

        assert [r.email_thread_id for r in processed] == ["mine"]
        assert (await store.get_thread("user-2", "theirs")).is_hidden is True
        assert len(await store.list_deferrals("user-2")) == 1

    async def test_processed_in_ascending_due_order(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        for thread_id, hours in (("t3", 1), ("t1", 3), ("t2", 2)):
            await seed_thread(store, thread_id)
            await service.defer(
                "user-1", thread_id, NOW - timedelta(hours=hours), now=NOW - timedelta(days=1)
            )

        processed = await service.reconcile_due("user-1", NOW)

        assert [r.email_thread_id for r in processed] == ["t1", "t2", "t3"]

    async def test_defer_then_reconcile_now_then_two_hours_later(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        await service.defer("user-1", "t1", NOW + timedelta(hours=1), now=NOW)

        assert await service.reconcile_due("user-1", NOW) == []
        assert (await store.get_thread("user-1", "t1")).is_hidden is True

        processed = await service.reconcile_due("user-1", NOW + timedelta(hours=2))

        assert len(processed) == 1
        assert processed[0].processed is True
        thread = await store.get_thread("user-1", "t1")
        assert thread.is_hidden is False
        assert thread.is_processed is False

    async def test_reconcile_does_not_touch_mailbox(
        self, service: DeferralService, store: DatabaseStore, mailboxes: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        await service.defer("user-1", "t1", NOW, now=NOW)
        mailboxes.reset_mock()

        await service.reconcile_due("user-1", NOW)

        mailboxes.for_user.assert_not_called()

    async def test_reconcile_logs_action(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")
        record = await service.defer("user-1", "t1", NOW, now=NOW)

        await service.reconcile_due("user-1", NOW, triggered_by="sweep")

        entries = await store.get_action_logs(user_id="user-1", action_type="reconcile")
        assert entries[0].details_json["deferral_ids"] == [record.id]
        assert entries[0].triggered_by == "sweep"

    async def test_select_failure_aborts_with_no_writes(self, store: DatabaseStore) -> None:
        service = DeferralService(store=store)
        store.get_due_deferrals = AsyncMock(side_effect=DatabaseError("locked"))
        store.unhide_threads = AsyncMock()

        with pytest.raises(ReconciliationError) as exc_info:
            await service.reconcile_due("user-1", NOW)

        assert exc_info.value.stage == "select"
        store.unhide_threads.assert_not_called()

    async def test_thread_update_failure_names_stage(self, store: DatabaseStore) -> None:
        await seed_thread(store, "t1")
        service = DeferralService(store=store)
        await service.defer("user-1", "t1", NOW, now=NOW)
        original_unhide = store.unhide_threads
        store.unhide_threads = AsyncMock(side_effect=DatabaseError("locked"))

        with pytest.raises(ReconciliationError) as exc_info:
            await service.reconcile_due("user-1", NOW)

        assert exc_info.value.stage == "threads"
        assert len(exc_info.value.deferral_ids) == 1
        # Nothing was marked processed, so a replay picks the deferral up again
        store.unhide_threads = original_unhide
        assert len(await service.reconcile_due("user-1", NOW)) == 1

    async def test_deferral_update_failure_replay_completes(self, store: DatabaseStore) -> None:
        await seed_thread(store, "t1")
        service = DeferralService(store=store)
        await service.defer("user-1", "t1", NOW, now=NOW)
        original_mark = store.mark_deferrals_processed
        store.mark_deferrals_processed = AsyncMock(side_effect=DatabaseError("locked"))

        with pytest.raises(ReconciliationError) as exc_info:
            await service.reconcile_due("user-1", NOW)

        assert exc_info.value.stage == "deferrals"
        # Partial completion stays: thread already visible, deferral still due
        assert (await store.get_thread("user-1", "t1")).is_hidden is False

        store.mark_deferrals_processed = original_mark
        replayed = await service.reconcile_due("user-1", NOW)
        assert len(replayed) == 1
        assert (await store.get_thread("user-1", "t1")).is_hidden is False
        assert await service.reconcile_due("user-1", NOW) == []

    async def test_missing_user_rejected(self, service: DeferralService) -> None:
        with pytest.raises(InputValidationError):
            await service.reconcile_due("", NOW)


# ---------------------------------------------------------------------------
# Due preview, list, cancel
# ---------------------------------------------------------------------------


class TestDuePreview:
    async def test_preview_does_not_mutate(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1", subject="Invoice")
        await service.defer("user-1", "t1", NOW - timedelta(minutes=1), now=NOW)

        due = await service.get_due_deferrals("user-1", NOW)

        assert len(due) == 1
        assert due[0].thread.subject == "Invoice"
        assert due[0].deferral.processed is False
        assert (await store.get_thread("user-1", "t1")).is_hidden is True
        assert len(await store.list_deferrals("user-1")) == 1


class TestCancel:
    async def test_cancel_returns_thread_and_unsnoozes(
        self, service: DeferralService, store: DatabaseStore, mailbox: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        record = await service.defer("user-1", "t1", NOW + timedelta(days=1), now=NOW)

        cancelled = await service.cancel_deferral("user-1", record.id, now=NOW)

        assert cancelled.processed is True
        assert (await store.get_thread("user-1", "t1")).is_hidden is False
        assert await store.list_deferrals("user-1") == []
        mailbox.unsnooze.assert_called_once_with("remote-1")

    async def test_cancel_unknown_deferral(self, service: DeferralService) -> None:
        with pytest.raises(NotFoundError):
            await service.cancel_deferral("user-1", "nope")

    async def test_cancel_foreign_deferral(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1", user_id="user-2")
        record = await service.defer("user-2", "t1", NOW + timedelta(days=1), now=NOW)

        with pytest.raises(NotFoundError):
            await service.cancel_deferral("user-1", record.id)

    async def test_cancel_processed_deferral_conflicts(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")
        record = await service.defer("user-1", "t1", NOW, now=NOW)
        await service.reconcile_due("user-1", NOW)

        with pytest.raises(DeferralConflictError):
            await service.cancel_deferral("user-1", record.id)

    async def test_cancel_tolerates_mailbox_failure(
        self, service: DeferralService, store: DatabaseStore, mailbox: MagicMock
    ) -> None:
        await seed_thread(store, "t1", message_ids=["remote-1"])
        record = await service.defer("user-1", "t1", NOW + timedelta(days=1), now=NOW)
        mailbox.unsnooze.side_effect = GraphAPIError("gone", status_code=404)

        cancelled = await service.cancel_deferral("user-1", record.id, now=NOW)

        assert cancelled.processed is True

    async def test_thread_can_be_deferred_again_after_cancel(
        self, service: DeferralService, store: DatabaseStore
    ) -> None:
        await seed_thread(store, "t1")
        record = await service.defer("user-1", "t1", NOW + timedelta(days=1), now=NOW)
        await service.cancel_deferral("user-1", record.id, now=NOW)

        again = await service.defer("user-1", "t1", NOW + timedelta(days=2), now=NOW)

        assert again.id != record.id


async def test_list_deferrals(service: DeferralService, store: DatabaseStore) -> None:
    await seed_thread(store, "a")
    await seed_thread(store, "b")
    later = await service.defer("user-1", "a", NOW + timedelta(days=2), now=NOW)
    sooner = await service.defer("user-1", "b", NOW + timedelta(days=1), now=NOW)

    records = await service.list_deferrals("user-1")

    assert [r.id for r in records] == [sooner.id, later.id]
