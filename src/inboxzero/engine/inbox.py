"""Inbox thread operations: list, archive, mark read.

Same policy as deferrals: the local thread flags are authoritative and the
remote mailbox is updated best-effort before them.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from inboxzero.core.errors import InputValidationError, NotFoundError
from inboxzero.core.logging import get_logger
from inboxzero.db.store import ensure_utc, to_db_timestamp, utc_now
from inboxzero.engine.audit import record_action
from inboxzero.engine.mailbox_sync import mirror_action

if TYPE_CHECKING:
    from inboxzero.db.store import DatabaseStore, Thread, TriggeredBy
    from inboxzero.graph.mailbox import MailboxProvider

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50


class InboxService:
    def __init__(
        self,
        store: DatabaseStore,
        mailboxes: MailboxProvider | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._store = store
        self._mailboxes = mailboxes
        self.page_size = page_size

    async def list_inbox(self, user_id: str, limit: int | None = None) -> list[Thread]:
        """Active inbox: unprocessed, visible threads, oldest message first."""
        if not user_id:
            raise InputValidationError("Missing required field: user_id", fields=["user_id"])
        return await self._store.list_inbox_threads(user_id, limit=limit or self.page_size)

    async def get_thread(self, user_id: str, thread_id: str) -> Thread:
        if not user_id or not thread_id:
            missing = [n for n, v in (("user_id", user_id), ("thread_id", thread_id)) if not v]
            raise InputValidationError(
                f"Missing required fields: {', '.join(missing)}", fields=missing
            )

        thread = await self._store.get_thread(user_id, thread_id)
        if thread is None:
            raise NotFoundError(
                f"Email thread {thread_id} not found",
                resource="thread",
                resource_id=thread_id,
            )
        return thread

    async def archive_thread(
        self,
        user_id: str,
        thread_id: str,
        now: datetime | None = None,
        triggered_by: TriggeredBy = "user",
    ) -> Thread:
        """Archive the latest remote message, then hide and process the thread.

        Raises:
            NotFoundError: If the thread does not exist for this user
            DatabaseError: If a store operation fails
        """
        thread = await self.get_thread(user_id, thread_id)
        now = ensure_utc(now) if now else utc_now()

        message_id = await self._store.get_latest_remote_message_id(user_id, thread_id)
        archived = False
        if message_id is not None:
            archived = mirror_action(
                self._mailboxes,
                user_id,
                "archive",
                message_id,
                lambda mailbox: mailbox.archive(message_id),
            )

        await self._store.hide_thread(user_id, thread_id, processed_at=now)
        thread.is_hidden = True
        thread.is_processed = True
        thread.processed_at = now

        logger.info(
            "thread_archived",
            user_id=user_id,
            thread_id=thread_id,
            mailbox_archived=archived,
        )
        await record_action(
            self._store,
            user_id,
            "archive",
            thread_id,
            {"archived_at": to_db_timestamp(now), "mailbox_archived": archived},
            triggered_by,
        )
        return thread

    async def mark_thread_read(
        self,
        user_id: str,
        thread_id: str,
        triggered_by: TriggeredBy = "user",
    ) -> Thread:
        """Mark every remote message of the thread read, then the thread itself.

        Raises:
            NotFoundError: If the thread does not exist for this user
            DatabaseError: If a store operation fails
        """
        thread = await self.get_thread(user_id, thread_id)

        message_ids = await self._store.list_remote_message_ids(user_id, thread_id)
        marked = 0
        for message_id in message_ids:
            if mirror_action(
                self._mailboxes,
                user_id,
                "mark_read",
                message_id,
                lambda mailbox, mid=message_id: mailbox.mark_read(mid),
            ):
                marked += 1

        await self._store.mark_thread_read(user_id, thread_id)
        thread.is_read = True

        logger.info(
            "thread_marked_read",
            user_id=user_id,
            thread_id=thread_id,
            remote_messages=len(message_ids),
            remote_marked=marked,
        )
        await record_action(
            self._store,
            user_id,
            "mark_read",
            thread_id,
            {"remote_messages": len(message_ids), "remote_marked": marked},
            triggered_by,
        )
        return thread
