"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for inboxzero. It uses aiosqlite for async access and returns
dataclasses rather than rows.

Every query is scoped by ``user_id``: a thread or deferral owned by another
user is indistinguishable from one that does not exist.

Usage:
    from inboxzero.db.store import DatabaseStore

    store = DatabaseStore("data/inboxzero.db")
    await store.initialize()

    thread = await store.get_thread("user-123", "thread-1")
    due = await store.get_due_deferrals("user-123", now)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from inboxzero.core.errors import DatabaseError, DeferralConflictError
from inboxzero.core.logging import get_logger
from inboxzero.db.models import init_database

logger = get_logger(__name__)

ActionType = Literal["defer", "reconcile", "cancel_deferral", "archive", "mark_read"]
TriggeredBy = Literal["user", "sweep", "cli"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width ISO-8601 form used for every stored timestamp.

    Always microsecond precision with a '+00:00' offset, so SQL text
    comparison orders the same way as the instants do.
    """
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass
class Thread:
    """Email thread record from the database."""

    id: str
    user_id: str
    conversation_id: str | None = None
    subject: str | None = None
    participants: list[str] = field(default_factory=list)
    last_message_at: datetime | None = None
    is_hidden: bool = False
    is_processed: bool = False
    processed_at: datetime | None = None
    is_read: bool = False
    created_at: datetime | None = None


@dataclass
class Message:
    """Email message record from the database."""

    id: str
    thread_id: str
    user_id: str
    message_id: str | None = None
    subject: str | None = None
    from_email: str | None = None
    received_at: datetime | None = None


@dataclass
class DeferralRecord:
    """Deferral record from the database."""

    id: str
    user_id: str
    email_thread_id: str
    defer_until: datetime
    created_at: datetime
    processed: bool = False


@dataclass(frozen=True)
class ThreadSummary:
    """Thread projection returned alongside due deferrals."""

    id: str
    subject: str | None
    last_message_at: datetime | None
    participants: list[str]


@dataclass
class DueDeferral:
    """A due deferral and its thread (None if the thread row is gone)."""

    deferral: DeferralRecord
    thread: ThreadSummary | None = None


@dataclass
class ActionLogEntry:
    """Action log entry from the database."""

    id: int
    timestamp: datetime
    user_id: str
    action_type: str
    thread_id: str | None = None
    details_json: dict[str, Any] | None = None
    triggered_by: str | None = None


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _load_participants(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(p) for p in value] if isinstance(value, list) else []


class DatabaseStore:
    """Database store for threads, messages, deferrals and the action log.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets the PRAGMAs every connection needs:
        - busy_timeout: 10s to handle concurrent access from sweep + API
        - synchronous: NORMAL (safe with WAL, faster writes)
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Thread Operations
    # =========================================================================

    async def save_thread(self, thread: Thread) -> None:
        """Insert or update a thread record (used by mail ingestion).

        Raises:
            DatabaseError: If the operation fails
        """
        created_at = thread.created_at or utc_now()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO email_threads (
                        id, user_id, conversation_id, subject, participants,
                        last_message_at, is_hidden, is_processed, processed_at,
                        is_read, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        conversation_id = excluded.conversation_id,
                        subject = excluded.subject,
                        participants = excluded.participants,
                        last_message_at = excluded.last_message_at,
                        is_hidden = excluded.is_hidden,
                        is_processed = excluded.is_processed,
                        processed_at = excluded.processed_at,
                        is_read = excluded.is_read
                    WHERE email_threads.user_id = excluded.user_id
                    """,
                    (
                        thread.id,
                        thread.user_id,
                        thread.conversation_id,
                        thread.subject,
                        json.dumps(thread.participants),
                        to_db_timestamp(thread.last_message_at) if thread.last_message_at else None,
                        1 if thread.is_hidden else 0,
                        1 if thread.is_processed else 0,
                        to_db_timestamp(thread.processed_at) if thread.processed_at else None,
                        1 if thread.is_read else 0,
                        to_db_timestamp(created_at),
                    ),
                )
                await db.commit()
            logger.debug("Thread saved", thread_id=thread.id, user_id=thread.user_id)

        except aiosqlite.Error as e:
            logger.error("Failed to save thread", thread_id=thread.id, error=str(e))
            raise DatabaseError(f"Failed to save thread {thread.id}: {e}") from e

    async def get_thread(self, user_id: str, thread_id: str) -> Thread | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM email_threads WHERE id = ? AND user_id = ?",
                    (thread_id, user_id),
                )
                row = await cursor.fetchone()
                return self._row_to_thread(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get thread", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get thread {thread_id}: {e}") from e

    async def list_inbox_threads(self, user_id: str, limit: int = 50) -> list[Thread]:
        """Get the user's active inbox: unprocessed, visible, oldest first.

        Args:
            user_id: Owner of the threads
            limit: Maximum number of threads to return

        Returns:
            Threads ordered by last_message_at ascending
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM email_threads
                    WHERE user_id = ? AND is_processed = 0 AND is_hidden = 0
                    ORDER BY last_message_at ASC, id ASC
                    LIMIT ?
                    """,
                    (user_id, limit),
                )
                rows = await cursor.fetchall()
                return [self._row_to_thread(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list inbox threads", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list inbox threads: {e}") from e

    async def hide_thread(self, user_id: str, thread_id: str, processed_at: datetime) -> bool:
        """Mark a thread hidden and processed (deferred or archived).

        Returns:
            True if a thread owned by user_id was updated
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE email_threads
                    SET is_hidden = 1, is_processed = 1, processed_at = ?
                    WHERE id = ? AND user_id = ?
                    """,
                    (to_db_timestamp(processed_at), thread_id, user_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to hide thread", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to hide thread {thread_id}: {e}") from e

    async def unhide_threads(self, user_id: str, thread_ids: Sequence[str]) -> int:
        """Return threads to the active inbox in one statement.

        Setting the flags is unconditional, so replaying this is harmless.

        Returns:
            Number of rows updated
        """
        if not thread_ids:
            return 0

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE email_threads
                    SET is_hidden = 0, is_processed = 0
                    WHERE user_id = ? AND id IN ({_placeholders(thread_ids)})
                    """,
                    (user_id, *thread_ids),
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error(
                "Failed to unhide threads",
                user_id=user_id,
                count=len(thread_ids),
                error=str(e),
            )
            raise DatabaseError(f"Failed to unhide threads: {e}") from e

    async def mark_thread_read(self, user_id: str, thread_id: str) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE email_threads SET is_read = 1 WHERE id = ? AND user_id = ?",
                    (thread_id, user_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to mark thread read", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to mark thread {thread_id} read: {e}") from e

    def _row_to_thread(self, row: aiosqlite.Row) -> Thread:
        """Convert a database row to a Thread dataclass."""
        return Thread(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            subject=row["subject"],
            participants=_load_participants(row["participants"]),
            last_message_at=from_db_timestamp(row["last_message_at"]),
            is_hidden=bool(row["is_hidden"]),
            is_processed=bool(row["is_processed"]),
            processed_at=from_db_timestamp(row["processed_at"]),
            is_read=bool(row["is_read"]),
            created_at=from_db_timestamp(row["created_at"]),
        )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def save_message(self, message: Message) -> None:
        """Insert or update a message record.

        Raises:
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO email_messages (
                        id, thread_id, user_id, message_id, subject, from_email, received_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        thread_id = excluded.thread_id,
                        message_id = excluded.message_id,
                        subject = excluded.subject,
                        from_email = excluded.from_email,
                        received_at = excluded.received_at
                    WHERE email_messages.user_id = excluded.user_id
                    """,
                    (
                        message.id,
                        message.thread_id,
                        message.user_id,
                        message.message_id,
                        message.subject,
                        message.from_email,
                        to_db_timestamp(message.received_at) if message.received_at else None,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save message", message_id=message.id, error=str(e))
            raise DatabaseError(f"Failed to save message {message.id}: {e}") from e

    async def get_latest_remote_message_id(self, user_id: str, thread_id: str) -> str | None:
        """Remote id of the thread's most recently received mirrored message.

        Messages without a remote id are skipped, so an older mirrored
        message wins over a newer local-only one.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT message_id FROM email_messages
                    WHERE user_id = ? AND thread_id = ? AND message_id IS NOT NULL
                    ORDER BY received_at DESC
                    LIMIT 1
                    """,
                    (user_id, thread_id),
                )
                row = await cursor.fetchone()
                return row["message_id"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get latest message id", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get latest message for thread {thread_id}: {e}") from e

    async def list_remote_message_ids(self, user_id: str, thread_id: str) -> list[str]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT message_id FROM email_messages
                    WHERE user_id = ? AND thread_id = ? AND message_id IS NOT NULL
                    ORDER BY received_at ASC
                    """,
                    (user_id, thread_id),
                )
                rows = await cursor.fetchall()
                return [row["message_id"] for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list message ids", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to list messages for thread {thread_id}: {e}") from e

    # =========================================================================
    # Deferral Operations
    # =========================================================================

    async def create_deferral(
        self,
        user_id: str,
        thread_id: str,
        defer_until: datetime,
        created_at: datetime | None = None,
    ) -> DeferralRecord:
        """Insert an unprocessed deferral for a thread.

        Args:
            user_id: Owner of the thread
            thread_id: Thread to defer
            defer_until: Instant the thread becomes due
            created_at: Creation time (defaults to now)

        Returns:
            The created DeferralRecord

        Raises:
            DeferralConflictError: If the thread already has an outstanding deferral
            DatabaseError: If the operation fails
        """
        record = DeferralRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email_thread_id=thread_id,
            defer_until=ensure_utc(defer_until),
            created_at=ensure_utc(created_at or utc_now()),
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO deferred_emails (
                        id, user_id, email_thread_id, defer_until, processed, created_at
                    ) VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (
                        record.id,
                        user_id,
                        thread_id,
                        to_db_timestamp(record.defer_until),
                        to_db_timestamp(record.created_at),
                    ),
                )
                await db.commit()

        except aiosqlite.IntegrityError as e:
            logger.warning("Outstanding deferral already exists", thread_id=thread_id)
            raise DeferralConflictError(
                f"Thread {thread_id} already has an outstanding deferral",
                thread_id=thread_id,
            ) from e
        except aiosqlite.Error as e:
            logger.error("Failed to create deferral", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to create deferral for thread {thread_id}: {e}") from e

        logger.debug("Deferral created", deferral_id=record.id, thread_id=thread_id)
        return record

    async def get_deferral(self, user_id: str, deferral_id: str) -> DeferralRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM deferred_emails WHERE id = ? AND user_id = ?",
                    (deferral_id, user_id),
                )
                row = await cursor.fetchone()
                return self._row_to_deferral(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get deferral", deferral_id=deferral_id, error=str(e))
            raise DatabaseError(f"Failed to get deferral {deferral_id}: {e}") from e

    async def get_outstanding_deferral(
        self, user_id: str, thread_id: str
    ) -> DeferralRecord | None:
        """Get the thread's unprocessed deferral, if any."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM deferred_emails
                    WHERE user_id = ? AND email_thread_id = ? AND processed = 0
                    LIMIT 1
                    """,
                    (user_id, thread_id),
                )
                row = await cursor.fetchone()
                return self._row_to_deferral(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get outstanding deferral", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to check deferrals for thread {thread_id}: {e}") from e

    async def list_deferrals(
        self, user_id: str, include_processed: bool = False
    ) -> list[DeferralRecord]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM deferred_emails WHERE user_id = ?"
                if not include_processed:
                    query += " AND processed = 0"
                query += " ORDER BY defer_until ASC, created_at ASC"

                cursor = await db.execute(query, (user_id,))
                rows = await cursor.fetchall()
                return [self._row_to_deferral(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list deferrals", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list deferrals: {e}") from e

    async def get_due_deferrals(self, user_id: str, now: datetime) -> list[DeferralRecord]:
        """Get unprocessed deferrals with defer_until <= now, earliest first.

        The boundary is inclusive: a deferral due exactly at ``now`` is due.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM deferred_emails
                    WHERE user_id = ? AND processed = 0 AND defer_until <= ?
                    ORDER BY defer_until ASC, created_at ASC
                    """,
                    (user_id, to_db_timestamp(now)),
                )
                rows = await cursor.fetchall()
                return [self._row_to_deferral(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get due deferrals", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get due deferrals: {e}") from e

    async def get_due_deferrals_with_threads(
        self, user_id: str, now: datetime
    ) -> list[DueDeferral]:
        """Due deferrals joined with a projection of their threads.

        Deferrals whose thread row is missing are kept with thread=None.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT d.*,
                           t.id AS t_id,
                           t.subject AS t_subject,
                           t.last_message_at AS t_last_message_at,
                           t.participants AS t_participants
                    FROM deferred_emails d
                    LEFT JOIN email_threads t
                        ON t.id = d.email_thread_id AND t.user_id = d.user_id
                    WHERE d.user_id = ? AND d.processed = 0 AND d.defer_until <= ?
                    ORDER BY d.defer_until ASC, d.created_at ASC
                    """,
                    (user_id, to_db_timestamp(now)),
                )
                rows = await cursor.fetchall()

        except aiosqlite.Error as e:
            logger.error("Failed to get due deferrals", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get due deferrals: {e}") from e

        result = []
        for row in rows:
            thread = None
            if row["t_id"] is not None:
                thread = ThreadSummary(
                    id=row["t_id"],
                    subject=row["t_subject"],
                    last_message_at=from_db_timestamp(row["t_last_message_at"]),
                    participants=_load_participants(row["t_participants"]),
                )
            result.append(DueDeferral(deferral=self._row_to_deferral(row), thread=thread))
        return result

    async def mark_deferrals_processed(self, user_id: str, deferral_ids: Sequence[str]) -> int:
        """Set processed on the given deferrals in one statement.

        Returns:
            Number of rows updated
        """
        if not deferral_ids:
            return 0

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE deferred_emails
                    SET processed = 1
                    WHERE user_id = ? AND id IN ({_placeholders(deferral_ids)})
                    """,
                    (user_id, *deferral_ids),
                )
                await db.commit()
                return cursor.rowcount

        except aiosqlite.Error as e:
            logger.error(
                "Failed to mark deferrals processed",
                user_id=user_id,
                count=len(deferral_ids),
                error=str(e),
            )
            raise DatabaseError(f"Failed to mark deferrals processed: {e}") from e

    async def get_users_with_due_deferrals(self, now: datetime) -> list[str]:
        """Distinct owners of at least one due, unprocessed deferral."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT DISTINCT user_id FROM deferred_emails
                    WHERE processed = 0 AND defer_until <= ?
                    ORDER BY user_id
                    """,
                    (to_db_timestamp(now),),
                )
                rows = await cursor.fetchall()
                return [row["user_id"] for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get users with due deferrals", error=str(e))
            raise DatabaseError(f"Failed to get users with due deferrals: {e}") from e

    def _row_to_deferral(self, row: aiosqlite.Row) -> DeferralRecord:
        """Convert a database row to a DeferralRecord dataclass."""
        return DeferralRecord(
            id=row["id"],
            user_id=row["user_id"],
            email_thread_id=row["email_thread_id"],
            defer_until=from_db_timestamp(row["defer_until"]),
            created_at=from_db_timestamp(row["created_at"]),
            processed=bool(row["processed"]),
        )

    # =========================================================================
    # Action Log Operations
    # =========================================================================

    async def log_action(
        self,
        user_id: str,
        action_type: ActionType,
        thread_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: TriggeredBy = "user",
    ) -> int:
        """Log a state change for the audit trail.

        Args:
            user_id: User whose data changed
            action_type: 'defer', 'reconcile', 'cancel_deferral', 'archive' or 'mark_read'
            thread_id: Associated thread (if applicable)
            details: Action details dictionary
            triggered_by: 'user', 'sweep' or 'cli'

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (
                        timestamp, user_id, action_type, thread_id, details_json, triggered_by
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        to_db_timestamp(utc_now()),
                        user_id,
                        action_type,
                        thread_id,
                        json.dumps(details, default=str) if details else None,
                        triggered_by,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log action", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self,
        user_id: str | None = None,
        limit: int = 100,
        thread_id: str | None = None,
        action_type: str | None = None,
    ) -> list[ActionLogEntry]:
        """Get action logs with optional filters, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if user_id:
                    query += " AND user_id = ?"
                    params.append(user_id)

                if thread_id:
                    query += " AND thread_id = ?"
                    params.append(thread_id)

                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)

                query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_action_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get action logs", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    def _row_to_action_log(self, row: aiosqlite.Row) -> ActionLogEntry:
        """Convert a database row to an ActionLogEntry dataclass."""
        details_json = None
        if row["details_json"]:
            try:
                details_json = json.loads(row["details_json"])
            except json.JSONDecodeError:
                pass

        return ActionLogEntry(
            id=row["id"],
            timestamp=from_db_timestamp(row["timestamp"]) or utc_now(),
            user_id=row["user_id"],
            action_type=row["action_type"],
            thread_id=row["thread_id"],
            details_json=details_json,
            triggered_by=row["triggered_by"],
        )
