"""JSON API for inboxzero.

Provides a FastAPI-based interface for:
- Listing, archiving and marking inbox threads read
- Deferring threads and cancelling deferrals
- Previewing and running reconcile of due deferrals
"""

from inboxzero.web.app import create_app

__all__ = ["create_app"]
