"""Deferral engine: defer threads, reconcile due deferrals, cancel deferrals.

Defer pipeline per thread:
1. Validate input (before any I/O)
2. Load the thread scoped by user
3. Reject if the thread already has an outstanding deferral
4. Best-effort snooze of the latest remote message (skipped if none)
5. Insert the deferral record
6. Hide the thread
7. Append an action log entry

Reconcile runs two independent bulk updates (threads, then deferrals).
Both are unconditional set-updates, so replaying a partially failed
reconcile finishes the job without double effects.

Usage:
    from inboxzero.engine.deferral import DeferralService

    service = DeferralService(store=db_store, mailboxes=directory)
    record = await service.defer("user-123", "thread-1", until)
    returned = await service.reconcile_due("user-123", datetime.now(UTC))
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from inboxzero.core.errors import (
    DatabaseError,
    DeferralConflictError,
    InputValidationError,
    NotFoundError,
    ReconciliationError,
)
from inboxzero.core.logging import get_logger
from inboxzero.db.store import ensure_utc, to_db_timestamp, utc_now
from inboxzero.engine.audit import record_action
from inboxzero.engine.mailbox_sync import mirror_action

if TYPE_CHECKING:
    from inboxzero.db.store import (
        DatabaseStore,
        DeferralRecord,
        DueDeferral,
        TriggeredBy,
    )
    from inboxzero.graph.mailbox import MailboxProvider

logger = get_logger(__name__)


def parse_instant(value: datetime | str | None, field_name: str) -> datetime:
    """Coerce an ISO-8601 string or datetime to an aware UTC datetime.

    Raises:
        InputValidationError: If the value is missing or not a valid timestamp
    """
    if value is None or value == "":
        raise InputValidationError(f"Missing required field: {field_name}", fields=[field_name])
    # OverflowError: an offset that pushes year 9999 past datetime.max in UTC
    try:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (TypeError, ValueError, AttributeError, OverflowError) as e:
        raise InputValidationError(
            f"Invalid timestamp for {field_name}: {value!r}", fields=[field_name]
        ) from e


def _require(**values: Any) -> None:
    missing = [name for name, value in values.items() if value is None or value == ""]
    if missing:
        raise InputValidationError(
            f"Missing required fields: {', '.join(missing)}",
            fields=missing,
        )


class DeferralService:
    """Deferral lifecycle for one store and mailbox directory.

    Attributes:
        _store: Persistence for threads, messages and deferrals
        _mailboxes: Per-user mailbox adapters (None: database-only tracking)
    """

    def __init__(self, store: DatabaseStore, mailboxes: MailboxProvider | None = None):
        self._store = store
        self._mailboxes = mailboxes

    async def defer(
        self,
        user_id: str,
        thread_id: str,
        defer_until: datetime | str | None,
        now: datetime | None = None,
        triggered_by: TriggeredBy = "user",
    ) -> DeferralRecord:
        """Hide a thread until ``defer_until``.

        A past ``defer_until`` is legal; the next reconcile returns the thread.

        Args:
            user_id: Owner of the thread
            thread_id: Thread to defer
            defer_until: Due instant (datetime or ISO-8601 string)
            now: Current time (defaults to wall-clock UTC)
            triggered_by: Source recorded in the action log

        Returns:
            The created DeferralRecord (processed=False)

        Raises:
            InputValidationError: If a required field is missing or malformed
            NotFoundError: If the thread does not exist for this user
            DeferralConflictError: If the thread already has an outstanding deferral
            DatabaseError: If a store operation fails
        """
        _require(user_id=user_id, thread_id=thread_id, defer_until=defer_until)
        until = parse_instant(defer_until, "defer_until")
        now = ensure_utc(now) if now else utc_now()

        thread = await self._store.get_thread(user_id, thread_id)
        if thread is None:
            raise NotFoundError(
                f"Email thread {thread_id} not found",
                resource="thread",
                resource_id=thread_id,
            )

        existing = await self._store.get_outstanding_deferral(user_id, thread_id)
        if existing is not None:
            raise DeferralConflictError(
                f"Thread {thread_id} is already deferred until {existing.defer_until.isoformat()}",
                thread_id=thread_id,
                deferral_id=existing.id,
            )

        message_id = await self._store.get_latest_remote_message_id(user_id, thread_id)
        snoozed = False
        if message_id is None:
            logger.info("defer_no_remote_message", user_id=user_id, thread_id=thread_id)
        else:
            snoozed = mirror_action(
                self._mailboxes,
                user_id,
                "snooze",
                message_id,
                lambda mailbox: mailbox.snooze(message_id, until),
            )

        record = await self._store.create_deferral(user_id, thread_id, until, created_at=now)
        await self._store.hide_thread(user_id, thread_id, processed_at=now)

        logger.info(
            "thread_deferred",
            user_id=user_id,
            thread_id=thread_id,
            deferral_id=record.id,
            defer_until=to_db_timestamp(until),
            mailbox_snoozed=snoozed,
        )
        await record_action(
            self._store,
            user_id,
            "defer",
            thread_id,
            {
                "deferral_id": record.id,
                "defer_until": to_db_timestamp(until),
                "mailbox_snoozed": snoozed,
            },
            triggered_by,
        )
        return record

    async def reconcile_due(
        self,
        user_id: str,
        now: datetime,
        triggered_by: TriggeredBy = "user",
    ) -> list[DeferralRecord]:
        """Return every due deferred thread to the inbox.

        Args:
            user_id: Owner whose deferrals are reconciled
            now: Cut-off instant; deferrals with defer_until <= now are due

        Returns:
            Records processed by this call, earliest due first, processed=True

        Raises:
            InputValidationError: If user_id or now is missing
            ReconciliationError: If a stage fails; ``stage`` names which one
        """
        _require(user_id=user_id, now=now)
        now = ensure_utc(now)

        try:
            due = await self._store.get_due_deferrals(user_id, now)
        except DatabaseError as e:
            raise ReconciliationError(
                f"Failed to select due deferrals for {user_id}: {e}",
                user_id=user_id,
                stage="select",
            ) from e

        if not due:
            logger.debug("reconcile_nothing_due", user_id=user_id)
            return []

        deferral_ids = [d.id for d in due]
        thread_ids = list(dict.fromkeys(d.email_thread_id for d in due))

        try:
            await self._store.unhide_threads(user_id, thread_ids)
        except DatabaseError as e:
            logger.error("reconcile_threads_failed", user_id=user_id, count=len(thread_ids))
            raise ReconciliationError(
                f"Failed to return {len(thread_ids)} threads to the inbox: {e}",
                user_id=user_id,
                stage="threads",
                deferral_ids=deferral_ids,
            ) from e

        try:
            await self._store.mark_deferrals_processed(user_id, deferral_ids)
        except DatabaseError as e:
            logger.error("reconcile_deferrals_failed", user_id=user_id, count=len(deferral_ids))
            raise ReconciliationError(
                f"Threads were restored but {len(deferral_ids)} deferrals were not marked "
                f"processed: {e}. Re-run reconcile to finish.",
                user_id=user_id,
                stage="deferrals",
                deferral_ids=deferral_ids,
            ) from e

        for record in due:
            record.processed = True

        logger.info(
            "reconcile_complete",
            user_id=user_id,
            deferrals=len(deferral_ids),
            threads=len(thread_ids),
        )
        await record_action(
            self._store,
            user_id,
            "reconcile",
            None,
            {"deferral_ids": deferral_ids, "thread_ids": thread_ids, "now": to_db_timestamp(now)},
            triggered_by,
        )
        return due

    async def get_due_deferrals(self, user_id: str, now: datetime) -> list[DueDeferral]:
        """Preview what reconcile_due would process, without changing anything."""
        _require(user_id=user_id, now=now)
        return await self._store.get_due_deferrals_with_threads(user_id, ensure_utc(now))

    async def list_deferrals(
        self, user_id: str, include_processed: bool = False
    ) -> list[DeferralRecord]:
        _require(user_id=user_id)
        return await self._store.list_deferrals(user_id, include_processed=include_processed)

    async def cancel_deferral(
        self,
        user_id: str,
        deferral_id: str,
        now: datetime | None = None,
        triggered_by: TriggeredBy = "user",
    ) -> DeferralRecord:
        """Return a deferred thread to the inbox before it is due.

        Raises:
            NotFoundError: If the deferral does not exist for this user
            DeferralConflictError: If the deferral was already processed
        """
        _require(user_id=user_id, deferral_id=deferral_id)
        now = ensure_utc(now) if now else utc_now()

        record = await self._store.get_deferral(user_id, deferral_id)
        if record is None:
            raise NotFoundError(
                f"Deferral {deferral_id} not found",
                resource="deferral",
                resource_id=deferral_id,
            )
        if record.processed:
            raise DeferralConflictError(
                f"Deferral {deferral_id} was already processed",
                thread_id=record.email_thread_id,
                deferral_id=deferral_id,
            )

        thread_id = record.email_thread_id
        await self._store.unhide_threads(user_id, [thread_id])
        await self._store.mark_deferrals_processed(user_id, [deferral_id])
        record.processed = True

        message_id = await self._store.get_latest_remote_message_id(user_id, thread_id)
        unsnoozed = False
        if message_id is not None:
            unsnoozed = mirror_action(
                self._mailboxes,
                user_id,
                "unsnooze",
                message_id,
                lambda mailbox: mailbox.unsnooze(message_id),
            )

        logger.info(
            "deferral_cancelled",
            user_id=user_id,
            deferral_id=deferral_id,
            thread_id=thread_id,
            mailbox_unsnoozed=unsnoozed,
        )
        await record_action(
            self._store,
            user_id,
            "cancel_deferral",
            thread_id,
            {
                "deferral_id": deferral_id,
                "cancelled_at": to_db_timestamp(now),
                "mailbox_unsnoozed": unsnoozed,
            },
            triggered_by,
        )
        return record
