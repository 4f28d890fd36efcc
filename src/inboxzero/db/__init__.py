"""SQLite persistence for threads, messages, deferrals and the action log."""

from inboxzero.db.models import init_database
from inboxzero.db.store import (
    ActionLogEntry,
    DatabaseStore,
    DeferralRecord,
    DueDeferral,
    Message,
    Thread,
    ThreadSummary,
)

__all__ = [
    "ActionLogEntry",
    "DatabaseStore",
    "DeferralRecord",
    "DueDeferral",
    "Message",
    "Thread",
    "ThreadSummary",
    "init_database",
]
