"""JSON API routes for inbox threads and deferrals.

All routes live on api_router (prefix /api) and act for the user named in
the X-User-Id header, which the authenticating proxy sets. Engine errors
map to HTTP status codes:

- InputValidationError -> 400
- NotFoundError -> 404
- DeferralConflictError -> 409
- ReconciliationError / DatabaseError -> 500
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from inboxzero.core.errors import (
    DatabaseError,
    DeferralConflictError,
    InboxZeroError,
    InputValidationError,
    NotFoundError,
    ReconciliationError,
)
from inboxzero.core.logging import get_logger
from inboxzero.db.store import (
    DatabaseStore,
    DeferralRecord,
    DueDeferral,
    Thread,
    to_db_timestamp,
    utc_now,
)
from inboxzero.engine.deferral import DeferralService, parse_instant
from inboxzero.engine.inbox import InboxService
from inboxzero.web.dependencies import (
    get_current_user_id,
    get_deferral_service,
    get_inbox_service,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")

VERSION = "0.1.0"

# Upper bound for ?limit= on list endpoints
MAX_PAGE_SIZE = 500


# ---------------------------------------------------------------------------
# Pydantic models for API input
# ---------------------------------------------------------------------------


class DeferRequest(BaseModel):
    """Request body for deferring a thread.

    Fields are optional here so that a missing one is reported as a 400
    by the deferral engine rather than a 422 by FastAPI.
    """

    email_id: str | None = None
    defer_until: str | None = None


class ReconcileRequest(BaseModel):
    """Request body for an on-demand reconcile (now defaults to server time)."""

    now: str | None = None


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _ts(value: datetime | None) -> str | None:
    return to_db_timestamp(value) if value else None


def _thread_to_dict(thread: Thread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "conversation_id": thread.conversation_id,
        "subject": thread.subject,
        "participants": thread.participants,
        "last_message_at": _ts(thread.last_message_at),
        "is_hidden": thread.is_hidden,
        "is_processed": thread.is_processed,
        "processed_at": _ts(thread.processed_at),
        "is_read": thread.is_read,
    }


def _deferral_to_dict(record: DeferralRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "email_thread_id": record.email_thread_id,
        "defer_until": _ts(record.defer_until),
        "processed": record.processed,
        "created_at": _ts(record.created_at),
    }


def _due_to_dict(due: DueDeferral) -> dict[str, Any]:
    data = _deferral_to_dict(due.deferral)
    data["thread"] = (
        {
            "id": due.thread.id,
            "subject": due.thread.subject,
            "last_message_at": _ts(due.thread.last_message_at),
            "participants": due.thread.participants,
        }
        if due.thread
        else None
    )
    return data


def _http_error(e: InboxZeroError) -> HTTPException:
    """Map an engine error to the HTTP error the client sees."""
    if isinstance(e, InputValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, DeferralConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ReconciliationError):
        logger.error("api_reconcile_failed", stage=e.stage, error=str(e))
        return HTTPException(status_code=500, detail=f"Reconcile failed at '{e.stage}': {e}")
    if isinstance(e, DatabaseError):
        logger.error("api_database_error", error=str(e))
        return HTTPException(status_code=500, detail=f"Database error: {e}")
    logger.error("api_unexpected_error", error=str(e), error_type=type(e).__name__)
    return HTTPException(status_code=500, detail=str(e))


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for Docker and monitoring."""
    store: DatabaseStore | None = getattr(request.app.state, "store", None)
    last_sweep = getattr(request.app.state, "last_sweep", None)

    return {
        "status": "healthy" if store is not None else "degraded",
        "database": store is not None,
        "sweep_enabled": getattr(request.app.state, "scheduler", None) is not None,
        "last_sweep": (
            {
                "sweep_id": last_sweep.sweep_id,
                "at": _ts(last_sweep.now),
                "deferrals_processed": last_sweep.deferrals_processed,
                "failed_users": len(last_sweep.failed_users),
            }
            if last_sweep
            else None
        ),
        "version": VERSION,
    }


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


@api_router.get("/threads")
async def list_threads(
    limit: int | None = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
    user_id: str = Depends(get_current_user_id),
    inbox: InboxService = Depends(get_inbox_service),
):
    """Active inbox for the caller, oldest message first."""
    try:
        threads = await inbox.list_inbox(user_id, limit=limit)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"threads": [_thread_to_dict(t) for t in threads]}


@api_router.get("/threads/{thread_id}")
async def get_thread(
    thread_id: str,
    user_id: str = Depends(get_current_user_id),
    inbox: InboxService = Depends(get_inbox_service),
):
    try:
        thread = await inbox.get_thread(user_id, thread_id)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return _thread_to_dict(thread)


@api_router.post("/threads/{thread_id}/archive")
async def archive_thread(
    thread_id: str,
    user_id: str = Depends(get_current_user_id),
    inbox: InboxService = Depends(get_inbox_service),
):
    try:
        thread = await inbox.archive_thread(user_id, thread_id)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"success": True, "thread": _thread_to_dict(thread)}


@api_router.post("/threads/{thread_id}/read")
async def mark_thread_read(
    thread_id: str,
    user_id: str = Depends(get_current_user_id),
    inbox: InboxService = Depends(get_inbox_service),
):
    try:
        thread = await inbox.mark_thread_read(user_id, thread_id)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"success": True, "thread": _thread_to_dict(thread)}


# ---------------------------------------------------------------------------
# Deferrals
# ---------------------------------------------------------------------------


@api_router.post("/deferrals", status_code=201)
async def create_deferral(
    body: DeferRequest,
    user_id: str = Depends(get_current_user_id),
    service: DeferralService = Depends(get_deferral_service),
):
    """Defer a thread until defer_until (ISO-8601)."""
    try:
        record = await service.defer(user_id, body.email_id, body.defer_until)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"success": True, "deferral": _deferral_to_dict(record)}


@api_router.get("/deferrals")
async def list_deferrals(
    include_processed: bool = False,
    user_id: str = Depends(get_current_user_id),
    service: DeferralService = Depends(get_deferral_service),
):
    try:
        records = await service.list_deferrals(user_id, include_processed=include_processed)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"deferrals": [_deferral_to_dict(r) for r in records]}


@api_router.get("/deferrals/due")
async def preview_due_deferrals(
    now: str | None = None,
    user_id: str = Depends(get_current_user_id),
    service: DeferralService = Depends(get_deferral_service),
):
    """What a reconcile at ``now`` would return to the inbox. Read-only."""
    try:
        cutoff = parse_instant(now, "now") if now else utc_now()
        due = await service.get_due_deferrals(user_id, cutoff)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"now": _ts(cutoff), "deferrals": [_due_to_dict(d) for d in due]}


@api_router.post("/deferrals/reconcile")
async def reconcile_deferrals(
    body: ReconcileRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    service: DeferralService = Depends(get_deferral_service),
):
    """Return the caller's due threads to the inbox."""
    try:
        cutoff = parse_instant(body.now, "now") if body and body.now else utc_now()
        processed = await service.reconcile_due(user_id, cutoff)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {
        "now": _ts(cutoff),
        "processed": len(processed),
        "deferrals": [_deferral_to_dict(r) for r in processed],
    }


@api_router.delete("/deferrals/{deferral_id}")
async def cancel_deferral(
    deferral_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DeferralService = Depends(get_deferral_service),
):
    try:
        record = await service.cancel_deferral(user_id, deferral_id)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {"success": True, "deferral": _deferral_to_dict(record)}


@api_router.get("/activity")
async def activity_log(
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    user_id: str = Depends(get_current_user_id),
    store: DatabaseStore = Depends(get_store),
):
    """Caller's recent state changes, newest first."""
    try:
        entries = await store.get_action_logs(user_id=user_id, limit=limit)
    except InboxZeroError as e:
        raise _http_error(e) from None
    return {
        "entries": [
            {
                "id": entry.id,
                "timestamp": _ts(entry.timestamp),
                "action_type": entry.action_type,
                "thread_id": entry.thread_id,
                "details": entry.details_json,
                "triggered_by": entry.triggered_by,
            }
            for entry in entries
        ]
    }
