"""Best-effort mailbox actions mirrored into Outlook via Microsoft Graph.

The local database is the record of intent; these actions only mirror it
into the user's mailbox. Every action returns a MailboxActionResult and never
raises for remote failures, so callers can log and carry on.

Usage:
    from inboxzero.graph.mailbox import MailboxDirectory

    directory = MailboxDirectory(config)
    mailbox = directory.for_user("user-123")  # None: database-only tracking
    if mailbox:
        result = mailbox.snooze(message_id, until)
        if not result.success:
            logger.warning("mailbox_snooze_failed", error=result.error)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from inboxzero.auth.msal_auth import GraphAuth
from inboxzero.core.errors import (
    AuthenticationError,
    GraphAPIError,
    MailboxActionError,
    RateLimitExceeded,
)
from inboxzero.core.logging import get_logger
from inboxzero.graph.client import GraphClient

if TYPE_CHECKING:
    from inboxzero.config_schema import AppConfig

logger = get_logger(__name__)

# Well-known Graph folder names accepted as destinationId
INBOX_FOLDER = "inbox"
ARCHIVE_FOLDER = "archive"


@dataclass(frozen=True)
class MailboxActionResult:
    """Outcome of a remote mailbox action."""

    success: bool
    error: str | None = None
    folder_id: str | None = None


class MailboxAdapter(Protocol):
    """Remote mailbox capability used by the deferral and inbox services."""

    def snooze(self, message_id: str, until: datetime) -> MailboxActionResult: ...

    def unsnooze(self, message_id: str) -> MailboxActionResult: ...

    def archive(self, message_id: str) -> MailboxActionResult: ...

    def mark_read(self, message_id: str) -> MailboxActionResult: ...


class MailboxProvider(Protocol):
    """Resolves the mailbox adapter for a user, or None if the user has none."""

    def for_user(self, user_id: str) -> MailboxAdapter | None: ...


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def _short(message_id: str) -> str:
    return message_id[:20] + "..." if len(message_id) > 20 else message_id


class MailboxActions:
    """Graph-backed MailboxAdapter for one user's mailbox.

    Folder ids resolved by ensure_folder() are cached for the lifetime of the
    instance so repeated snoozes cost a single move request.

    Attributes:
        client: GraphClient authenticated as the mailbox owner
        snoozed_folder: Folder path snoozed messages are moved into
    """

    def __init__(self, client: GraphClient, snoozed_folder: str = "Snoozed"):
        self.client = client
        self.snoozed_folder = snoozed_folder
        self._folder_cache: dict[str, str] = {}
        self._cache_lock = threading.Lock()

    def ensure_folder(self, folder_path: str) -> str:
        """Return the id of ``folder_path``, creating missing levels.

        Args:
            folder_path: Slash-separated path like "Later/Snoozed"

        Returns:
            Graph folder id of the deepest level

        Raises:
            GraphAPIError: If a lookup or create request fails
        """
        with self._cache_lock:
            cached = self._folder_cache.get(folder_path)
        if cached:
            return cached

        parts = [p for p in folder_path.split("/") if p]
        current_path = ""
        parent_id: str | None = None

        for part in parts:
            current_path = f"{current_path}/{part}" if current_path else part

            with self._cache_lock:
                cached = self._folder_cache.get(current_path)
            if cached:
                parent_id = cached
                continue

            base = f"/me/mailFolders/{parent_id}/childFolders" if parent_id else "/me/mailFolders"
            found = self.client.get(
                base,
                params={"$filter": f"displayName eq '{_odata_literal(part)}'"},
            ).get("value", [])

            if found:
                folder_id = found[0]["id"]
            else:
                logger.info("Creating mailbox folder", path=current_path)
                folder_id = self.client.post(base, json={"displayName": part})["id"]

            with self._cache_lock:
                self._folder_cache[current_path] = folder_id
            parent_id = folder_id

        if parent_id is None:
            raise GraphAPIError(f"Invalid folder path '{folder_path}'", status_code=None)
        return parent_id

    def _move(self, message_id: str, destination_id: str) -> dict[str, Any]:
        return self.client.post(
            f"/me/messages/{message_id}/move",
            json={"destinationId": destination_id},
        )

    def _attempt(
        self,
        action: str,
        message_id: str,
        call: Callable[[], str | None],
    ) -> MailboxActionResult:
        """Run one remote action and convert any failure into a result."""
        try:
            folder_id = call()
        except (GraphAPIError, AuthenticationError, RateLimitExceeded, MailboxActionError) as e:
            logger.warning(
                "mailbox_action_failed",
                action=action,
                message_id=_short(message_id),
                error=str(e),
            )
            return MailboxActionResult(success=False, error=f"{action} failed: {e}")

        logger.info("mailbox_action_complete", action=action, message_id=_short(message_id))
        return MailboxActionResult(success=True, folder_id=folder_id)

    def snooze(self, message_id: str, until: datetime) -> MailboxActionResult:
        """Move the message into the snoozed folder until it is due."""

        def call() -> str:
            folder_id = self.ensure_folder(self.snoozed_folder)
            logger.info(
                "Snoozing message",
                message_id=_short(message_id),
                until=until.isoformat(),
                folder=self.snoozed_folder,
            )
            self._move(message_id, folder_id)
            return folder_id

        return self._attempt("snooze", message_id, call)

    def unsnooze(self, message_id: str) -> MailboxActionResult:
        """Move the message back to the Inbox."""

        def call() -> str:
            self._move(message_id, INBOX_FOLDER)
            return INBOX_FOLDER

        return self._attempt("unsnooze", message_id, call)

    def archive(self, message_id: str) -> MailboxActionResult:
        """Move the message to the well-known Archive folder."""

        def call() -> str:
            self._move(message_id, ARCHIVE_FOLDER)
            return ARCHIVE_FOLDER

        return self._attempt("archive", message_id, call)

    def mark_read(self, message_id: str) -> MailboxActionResult:
        def call() -> None:
            self.client.patch(f"/me/messages/{message_id}", json={"isRead": True})
            return None

        return self._attempt("mark_read", message_id, call)


class MailboxDirectory:
    """MailboxProvider backed by the accounts section of the config.

    A user without a configured account, or whose token cache holds no
    signed-in account, gets None: the services then track state in the
    database only. Adapters are built once per user and reused.
    """

    def __init__(
        self,
        config: AppConfig,
        auth_factory: Callable[..., GraphAuth] = GraphAuth,
    ):
        self.config = config
        self._auth_factory = auth_factory
        self._adapters: dict[str, MailboxActions] = {}
        self._lock = threading.Lock()

    def token_cache_path(self, user_id: str) -> Path:
        """Token cache file for ``user_id`` (account override or <dir>/<user_id>.json)."""
        account = self.config.get_account(user_id)
        if account and account.token_cache_path:
            return Path(account.token_cache_path)
        return Path(self.config.auth.token_cache_dir) / f"{user_id}.json"

    def auth_for_user(self, user_id: str, allow_interactive: bool = False) -> GraphAuth:
        """Build the token provider for ``user_id``'s cache file."""
        return self._auth_factory(
            client_id=self.config.auth.client_id,
            tenant_id=self.config.auth.tenant_id,
            scopes=self.config.auth.scopes,
            token_cache_path=self.token_cache_path(user_id),
            allow_interactive=allow_interactive,
        )

    def for_user(self, user_id: str) -> MailboxActions | None:
        with self._lock:
            cached = self._adapters.get(user_id)
        if cached:
            return cached

        if self.config.get_account(user_id) is None:
            logger.debug("No mailbox account configured", user_id=user_id)
            return None

        try:
            auth = self.auth_for_user(user_id)
        except ValueError as e:
            logger.warning("mailbox_auth_init_failed", user_id=user_id, error=str(e))
            return None

        if not auth.has_cached_account():
            logger.warning(
                "mailbox_not_linked",
                user_id=user_id,
                token_cache=str(auth.token_cache_path),
            )
            return None

        client = GraphClient(auth, bucket_name=f"ms_graph:{user_id}")
        adapter = MailboxActions(client, snoozed_folder=self.config.deferral.snoozed_folder)
        with self._lock:
            self._adapters.setdefault(user_id, adapter)
            return self._adapters[user_id]

    def clear(self) -> None:
        """Drop cached adapters (e.g. after a config reload changed accounts)."""
        with self._lock:
            self._adapters.clear()
