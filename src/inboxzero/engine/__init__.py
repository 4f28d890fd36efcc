"""Deferral and inbox engines.

This package provides:
- DeferralService: defer, reconcile, preview and cancel deferrals
- InboxService: list, archive and mark-read inbox threads
- DeferralSweeper: periodic reconcile across all users
"""

from inboxzero.engine.deferral import DeferralService, parse_instant
from inboxzero.engine.inbox import InboxService
from inboxzero.engine.sweeper import DeferralSweeper, SweepResult

__all__ = [
    "DeferralService",
    "DeferralSweeper",
    "InboxService",
    "SweepResult",
    "parse_instant",
]
