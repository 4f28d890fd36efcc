"""Action log helper shared by the engines."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from inboxzero.core.errors import DatabaseError
from inboxzero.core.logging import get_logger

if TYPE_CHECKING:
    from inboxzero.db.store import ActionType, DatabaseStore, TriggeredBy

logger = get_logger(__name__)


async def record_action(
    store: DatabaseStore,
    user_id: str,
    action_type: ActionType,
    thread_id: str | None,
    details: dict[str, Any],
    triggered_by: TriggeredBy,
) -> None:
    """Append to the audit trail. Called after the state change, so failure only warns."""
    try:
        await store.log_action(
            user_id,
            action_type,
            thread_id=thread_id,
            details=details,
            triggered_by=triggered_by,
        )
    except DatabaseError as e:
        logger.warning(
            "action_log_failed",
            user_id=user_id,
            action_type=action_type,
            error=str(e),
        )
