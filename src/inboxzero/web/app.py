"""FastAPI application for the inboxzero JSON API.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- The /api router (threads, deferrals, health)

The deferral sweep runs as a background job via APScheduler's
BackgroundScheduler in the same process as uvicorn. The scheduler
thread bridges to the async event loop via run_coroutine_threadsafe.

Usage:
    from inboxzero.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from fastapi import FastAPI

from inboxzero.core.logging import get_logger

if TYPE_CHECKING:
    from inboxzero.config_schema import AppConfig

logger = get_logger(__name__)

# Upper bound for one scheduled sweep before the scheduler thread gives up waiting
SWEEP_TIMEOUT_SECONDS = 300
SWEEP_JOB_ID = "deferral_sweep"


def _empty_state(app: FastAPI) -> None:
    app.state.config = None
    app.state.store = None
    app.state.mailboxes = None
    app.state.deferral_service = None
    app.state.inbox_service = None
    app.state.sweeper = None
    app.state.scheduler = None
    app.state.last_sweep = None


def apply_reloaded_config(app: FastAPI, config: AppConfig) -> None:
    """Push a hot-reloaded config into the running services.

    Accounts, the snoozed folder, the inbox page size and the sweep interval
    apply immediately. A new database path, or enabling the sweep on a server
    that started with it disabled, takes effect on the next restart.
    """
    previous = app.state.config
    app.state.config = config

    if app.state.mailboxes is not None:
        app.state.mailboxes.config = config
        app.state.mailboxes.clear()
    if app.state.inbox_service is not None:
        app.state.inbox_service.page_size = config.deferral.inbox_page_size

    if previous is not None and previous.database.path != config.database.path:
        logger.warning(
            "config_reload_needs_restart",
            setting="database.path",
            active=previous.database.path,
        )

    interval = config.deferral.sweep_interval_minutes
    scheduler = app.state.scheduler
    if scheduler is not None and (
        previous is None or previous.deferral.sweep_interval_minutes != interval
    ):
        scheduler.reschedule_job(SWEEP_JOB_ID, trigger="interval", minutes=interval)
        logger.info("sweep_rescheduled", interval_minutes=interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Build the mailbox directory and engines
    4. Start APScheduler (if the sweep is enabled)

    On shutdown:
    - Stop APScheduler
    """
    from apscheduler.schedulers.background import BackgroundScheduler

    from inboxzero.config import get_config, reload_config_if_changed
    from inboxzero.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from inboxzero.db.store import DatabaseStore
    from inboxzero.engine.deferral import DeferralService
    from inboxzero.engine.inbox import InboxService
    from inboxzero.engine.sweeper import DeferralSweeper
    from inboxzero.graph.mailbox import MailboxDirectory

    _empty_state(app)

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        # App still starts so /api/health can report the problem
        yield
        return

    app.state.config = config

    # 2. Initialize database
    store = DatabaseStore(config.database.path)
    try:
        await store.initialize()
    except DatabaseError as e:
        logger.error("database_init_failed", error=str(e))
        yield
        return
    app.state.store = store

    # 3. Mailbox directory and engines
    mailboxes = MailboxDirectory(config)
    deferral_service = DeferralService(store=store, mailboxes=mailboxes)
    inbox_service = InboxService(
        store=store,
        mailboxes=mailboxes,
        page_size=config.deferral.inbox_page_size,
    )
    sweeper = DeferralSweeper(store=store, service=deferral_service)

    app.state.mailboxes = mailboxes
    app.state.deferral_service = deferral_service
    app.state.inbox_service = inbox_service
    app.state.sweeper = sweeper

    # 4. Start APScheduler
    scheduler = None
    if config.deferral.sweep_enabled:
        loop = asyncio.get_running_loop()

        def _run_sweep_sync():
            """Bridge the async sweep into the sync scheduler thread."""
            try:
                if reload_config_if_changed():
                    apply_reloaded_config(app, get_config())
                if not app.state.config.deferral.sweep_enabled:
                    # Job keeps running so a later reload can turn sweeping back on
                    logger.info("sweep_skipped", reason="disabled in config")
                    return
                future = asyncio.run_coroutine_threadsafe(sweeper.run_sweep(), loop)
                app.state.last_sweep = future.result(timeout=SWEEP_TIMEOUT_SECONDS)
            except Exception as e:
                logger.error("scheduled_sweep_failed", error=str(e))

        scheduler = BackgroundScheduler()
        scheduler.add_job(
            _run_sweep_sync,
            "interval",
            minutes=config.deferral.sweep_interval_minutes,
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now() + timedelta(seconds=10),
        )
        scheduler.start()
        logger.info(
            "scheduler_started",
            interval_minutes=config.deferral.sweep_interval_minutes,
        )

    app.state.scheduler = scheduler

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from inboxzero.web.routes import VERSION, api_router

    app = FastAPI(
        title="inboxzero",
        description="Inbox triage API with deferred-email reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.include_router(api_router)

    return app
