"""SQLite database schema and initialization.

Tables:
- email_threads: Inbox threads with visibility/processing flags
- email_messages: Messages of a thread, with their remote Graph message ids
- deferred_emails: Deferrals mapping a thread to a due instant
- action_log: Audit trail of every state change

Timestamps are stored as fixed-width UTC ISO-8601 strings (microsecond
precision, '+00:00' suffix) so that text comparison is time comparison.

Usage:
    from inboxzero.db.models import init_database

    await init_database("data/inboxzero.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inboxzero.core.errors import DatabaseError
from inboxzero.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS email_threads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    conversation_id TEXT,                   -- Graph conversationId, if known
    subject TEXT,
    participants TEXT,                      -- JSON list of addresses
    last_message_at TEXT,
    is_hidden INTEGER NOT NULL DEFAULT 0,   -- 1: excluded from inbox views
    is_processed INTEGER NOT NULL DEFAULT 0,-- 1: archived or snoozed
    processed_at TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

-- Inbox listing: user's visible threads, oldest first
CREATE INDEX IF NOT EXISTS idx_threads_inbox
    ON email_threads(user_id, is_processed, is_hidden, last_message_at);

CREATE TABLE IF NOT EXISTS email_messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    message_id TEXT,                        -- Graph message id (NULL: not mirrored)
    subject TEXT,
    from_email TEXT,
    received_at TEXT
);

-- Latest-message lookup per thread
CREATE INDEX IF NOT EXISTS idx_messages_thread
    ON email_messages(user_id, thread_id, received_at DESC);

CREATE TABLE IF NOT EXISTS deferred_emails (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    email_thread_id TEXT NOT NULL,          -- weak reference, no foreign key
    defer_until TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

-- Due-deferral sweep: user's unprocessed rows in due order
CREATE INDEX IF NOT EXISTS idx_deferred_due
    ON deferred_emails(user_id, processed, defer_until);

-- At most one outstanding deferral per thread
CREATE UNIQUE INDEX IF NOT EXISTS idx_deferred_one_outstanding
    ON deferred_emails(user_id, email_thread_id) WHERE processed = 0;

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    user_id TEXT NOT NULL,
    action_type TEXT NOT NULL,              -- 'defer', 'reconcile', 'cancel_deferral', 'archive', 'mark_read'
    thread_id TEXT,
    details_json TEXT,
    triggered_by TEXT                       -- 'user', 'sweep', 'cli'
);

CREATE INDEX IF NOT EXISTS idx_action_log_user ON action_log(user_id, timestamp);
"""


async def init_database(db_path: str | Path) -> None:
    """Create the database file, enable WAL mode, and create all tables.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

        # Owner read/write only: the database holds mail metadata
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info("Database initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e

