"""Periodic sweep that reconciles due deferrals for every user.

Each sweep:
1. Generates a sweep_id and sets it as the correlation ID
2. Finds every user with at least one due, unprocessed deferral
3. Runs reconcile_due per user; a failing user is logged and skipped
4. Logs a summary

Scheduled by the web app (APScheduler, sweep_interval_minutes) and run
one-shot or continuously from the CLI.

Usage:
    from inboxzero.engine.sweeper import DeferralSweeper

    sweeper = DeferralSweeper(store=db_store, service=deferral_service)
    result = await sweeper.run_sweep()
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from inboxzero.core.errors import DatabaseError, InboxZeroError, ReconciliationError
from inboxzero.core.logging import get_logger, set_correlation_id
from inboxzero.db.store import ensure_utc, utc_now

if TYPE_CHECKING:
    from inboxzero.db.store import DatabaseStore
    from inboxzero.engine.deferral import DeferralService

logger = get_logger(__name__)


@dataclass
class SweepResult:
    """Result of a single sweep."""

    sweep_id: str
    now: datetime
    duration_ms: int = 0
    users_checked: int = 0
    users_reconciled: int = 0
    deferrals_processed: int = 0
    failed_users: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_users


class DeferralSweeper:
    def __init__(self, store: DatabaseStore, service: DeferralService):
        self._store = store
        self._service = service

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """Reconcile due deferrals for every user.

        Args:
            now: Cut-off instant (defaults to wall-clock UTC)

        Returns:
            SweepResult with per-user counts and failures

        Raises:
            ReconciliationError: If the users with due deferrals cannot be
                looked up (stage "select"); nothing is reconciled
        """
        sweep_id = str(uuid.uuid4())
        set_correlation_id(sweep_id)
        start_time = time.monotonic()
        now = ensure_utc(now) if now else utc_now()

        result = SweepResult(sweep_id=sweep_id, now=now)
        logger.info("sweep_start", now=now.isoformat())

        try:
            try:
                user_ids = await self._store.get_users_with_due_deferrals(now)
            except DatabaseError as e:
                logger.error("sweep_user_lookup_failed", error=str(e))
                raise ReconciliationError(
                    f"Could not look up users with due deferrals: {e}",
                    user_id=None,
                    stage="select",
                ) from e

            result.users_checked = len(user_ids)

            for user_id in user_ids:
                try:
                    processed = await self._service.reconcile_due(
                        user_id, now, triggered_by="sweep"
                    )
                except InboxZeroError as e:
                    logger.error(
                        "sweep_user_failed",
                        user_id=user_id,
                        error=str(e),
                        error_type=type(e).__name__,
                        stage=getattr(e, "stage", None),
                    )
                    result.failed_users.append(user_id)
                    continue

                if processed:
                    result.users_reconciled += 1
                    result.deferrals_processed += len(processed)

        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "sweep_complete",
                duration_ms=result.duration_ms,
                users_checked=result.users_checked,
                users_reconciled=result.users_reconciled,
                deferrals_processed=result.deferrals_processed,
                failed_users=len(result.failed_users),
            )
            set_correlation_id(None)

        return result
