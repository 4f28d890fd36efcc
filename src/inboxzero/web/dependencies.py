"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the routes and the sweep job.

Usage:
    from inboxzero.web.dependencies import get_deferral_service

    @router.get("/deferrals")
    async def list_deferrals(service: DeferralService = Depends(get_deferral_service)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Header, HTTPException, Request

if TYPE_CHECKING:
    from inboxzero.db.store import DatabaseStore
    from inboxzero.engine.deferral import DeferralService
    from inboxzero.engine.inbox import InboxService

USER_ID_HEADER = "X-User-Id"


def _require_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"Service not initialized: {name}")
    return value


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return _require_state(request, "store")


def get_deferral_service(request: Request) -> DeferralService:
    return _require_state(request, "deferral_service")


def get_inbox_service(request: Request) -> InboxService:
    return _require_state(request, "inbox_service")


def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """Caller identity forwarded by the authenticating proxy."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
