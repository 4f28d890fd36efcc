"""Best-effort mirroring of local state changes into the remote mailbox.

Local state is the record of intent. A remote action that fails, returns a
failure result, or raises is logged at warning level and never propagates.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from inboxzero.core.logging import get_logger

if TYPE_CHECKING:
    from inboxzero.graph.mailbox import MailboxActionResult, MailboxAdapter, MailboxProvider

logger = get_logger(__name__)


def resolve_mailbox(provider: MailboxProvider | None, user_id: str) -> MailboxAdapter | None:
    """Look up the user's adapter; a failing lookup counts as 'no adapter'."""
    if provider is None:
        return None
    try:
        return provider.for_user(user_id)
    except Exception as e:
        logger.warning("mailbox_lookup_failed", user_id=user_id, error=str(e))
        return None


def mirror_action(
    provider: MailboxProvider | None,
    user_id: str,
    action: str,
    message_id: str,
    call: Callable[[MailboxAdapter], MailboxActionResult],
) -> bool:
    """Run one remote mailbox action, swallowing every failure.

    Args:
        provider: Source of per-user adapters (None: database-only mode)
        user_id: Owner of the mailbox
        action: Action name for logging ('snooze', 'archive', ...)
        message_id: Remote message the action targets
        call: Invokes the action on the resolved adapter

    Returns:
        True only if an adapter ran the action and reported success
    """
    mailbox = resolve_mailbox(provider, user_id)
    if mailbox is None:
        logger.debug("mailbox_not_configured", user_id=user_id, action=action)
        return False

    try:
        result = call(mailbox)
    except Exception as e:
        logger.warning(
            "mailbox_action_raised",
            user_id=user_id,
            action=action,
            message_id=message_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False

    if not result.success:
        logger.warning(
            "mailbox_action_unsuccessful",
            user_id=user_id,
            action=action,
            message_id=message_id,
            error=result.error,
        )
        return False

    return True
