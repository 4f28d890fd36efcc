"""Microsoft Graph access for mirroring inbox state into Outlook.

- GraphClient: HTTP client with retries, backoff and rate limiting
- MailboxActions: snooze/unsnooze/archive/mark-read for one mailbox
- MailboxDirectory: resolves the mailbox adapter for an application user

Usage:
    from inboxzero.graph import MailboxDirectory

    mailbox = MailboxDirectory(config).for_user("user-123")
"""

from inboxzero.graph.client import GraphClient
from inboxzero.graph.mailbox import (
    MailboxActionResult,
    MailboxActions,
    MailboxAdapter,
    MailboxDirectory,
    MailboxProvider,
)

__all__ = [
    "GraphClient",
    "MailboxActionResult",
    "MailboxActions",
    "MailboxAdapter",
    "MailboxDirectory",
    "MailboxProvider",
]
