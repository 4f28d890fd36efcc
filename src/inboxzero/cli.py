"""Command-line interface for inboxzero.

Provides commands for configuration validation, mailbox sign-in, deferral
management, reconcile and the API server.

Usage:
    python -m inboxzero validate-config
    python -m inboxzero login --user user-123
    python -m inboxzero defer --user user-123 --thread thread-1 --until 2026-01-01T09:00:00Z
    python -m inboxzero reconcile --all
    python -m inboxzero serve
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from inboxzero.config import validate_config_file
from inboxzero.core.errors import InboxZeroError
from inboxzero.core.logging import configure_logging

if TYPE_CHECKING:
    from inboxzero.config_schema import AppConfig
    from inboxzero.db.store import DatabaseStore
    from inboxzero.engine.deferral import DeferralService
    from inboxzero.engine.sweeper import DeferralSweeper, SweepResult
    from inboxzero.graph.mailbox import MailboxDirectory

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    mailboxes: MailboxDirectory
    deferral_service: DeferralService
    sweeper: DeferralSweeper


def _load_config_or_exit() -> AppConfig:
    from inboxzero.config import get_config
    from inboxzero.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml with at least an [cyan]auth[/cyan] section.\n"
            "See config/config.yaml.example for a starting point."
        )
        sys.exit(1)


async def _init_cli_deps() -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, initializes the database, mailbox directory and engines.
    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from inboxzero.core.errors import DatabaseError
    from inboxzero.db.store import DatabaseStore
    from inboxzero.engine.deferral import DeferralService
    from inboxzero.engine.sweeper import DeferralSweeper
    from inboxzero.graph.mailbox import MailboxDirectory

    config = _load_config_or_exit()

    store = DatabaseStore(config.database.path)
    try:
        await store.initialize()
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)

    mailboxes = MailboxDirectory(config)
    deferral_service = DeferralService(store=store, mailboxes=mailboxes)
    sweeper = DeferralSweeper(store=store, service=deferral_service)

    return CLIDeps(
        config=config,
        store=store,
        mailboxes=mailboxes,
        deferral_service=deferral_service,
        sweeper=sweeper,
    )


def _run(coro) -> None:
    """Run a command coroutine with the CLI's error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except InboxZeroError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _parse_when(value: str | None, label: str) -> datetime | None:
    from inboxzero.engine.deferral import parse_instant

    if value is None:
        return None
    return parse_instant(value, label)


def _print_sweep(result: SweepResult) -> None:
    console.print(f"\n[bold]Sweep Summary[/bold] (sweep {result.sweep_id[:8]}...)")
    console.print(f"  Duration:    {result.duration_ms}ms")
    console.print(f"  Users:       {result.users_checked}")
    console.print(f"  Reconciled:  {result.users_reconciled}")
    console.print(f"  Deferrals:   {result.deferrals_processed}")
    if result.failed_users:
        console.print(f"  [red]Failed:[/red]      {', '.join(result.failed_users)}")


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """inboxzero - inbox triage with deferred-email reconciliation."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: $INBOXZERO_CONFIG_PATH or config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the API server and the deferral sweep scheduler."""
    import uvicorn

    from inboxzero.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The API trusts the X-User-Id header; only expose it behind the auth proxy."
        )

    config = _load_config_or_exit()
    configure_logging(log_level=config.logging.level, json_output=config.logging.json_output)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("login")
@click.option("--user", "user_id", required=True, help="Application user id to link")
@click.option("--reset", is_flag=True, help="Discard the cached token first")
def login(user_id: str, reset: bool) -> None:
    """Link a user's Outlook mailbox with the device code flow.

    The token is cached per user so the sweep and API can mirror
    deferrals into that mailbox without further prompts.
    """
    from inboxzero.graph.client import GraphClient
    from inboxzero.graph.mailbox import MailboxDirectory

    config = _load_config_or_exit()
    if config.get_account(user_id) is None:
        console.print(
            f"[yellow]Warning:[/yellow] '{user_id}' has no entry under [cyan]accounts[/cyan]; "
            "mailbox actions stay disabled for this user until one is added."
        )

    directory = MailboxDirectory(config)
    try:
        auth = directory.auth_for_user(user_id, allow_interactive=True)
        if reset:
            auth.clear_cache()
        email = GraphClient(auth).get_user_email()
    except InboxZeroError as e:
        console.print(f"[red]Login failed:[/red] {e}")
        sys.exit(1)

    console.print(
        f"[green]✓[/green] Linked [cyan]{email}[/cyan] for user [cyan]{user_id}[/cyan] "
        f"(token cache: {directory.token_cache_path(user_id)})"
    )


@cli.command("defer")
@click.option("--user", "user_id", required=True, help="Owner of the thread")
@click.option("--thread", "thread_id", required=True, help="Thread id to defer")
@click.option("--until", "until", required=True, help="Due instant (ISO-8601)")
def defer(user_id: str, thread_id: str, until: str) -> None:
    """Defer a thread until the given instant."""
    _run(_run_defer(user_id, thread_id, until))


async def _run_defer(user_id: str, thread_id: str, until: str) -> None:
    deps = await _init_cli_deps()
    record = await deps.deferral_service.defer(user_id, thread_id, until, triggered_by="cli")
    console.print(
        f"[green]✓[/green] Deferred thread [cyan]{thread_id}[/cyan] until "
        f"{record.defer_until.isoformat()} (deferral {record.id})"
    )


@cli.command("due")
@click.option("--user", "user_id", required=True, help="Owner of the deferrals")
@click.option("--now", "now", default=None, help="Cut-off instant (default: current time)")
def due(user_id: str, now: str | None) -> None:
    """List deferrals that a reconcile would return to the inbox."""
    _run(_run_due(user_id, now))


async def _run_due(user_id: str, now: str | None) -> None:
    from inboxzero.db.store import utc_now

    cutoff = _parse_when(now, "now") or utc_now()
    deps = await _init_cli_deps()
    rows = await deps.deferral_service.get_due_deferrals(user_id, cutoff)

    if not rows:
        console.print(f"No deferrals due at {cutoff.isoformat()}.")
        return

    table = Table(title=f"Due deferrals for {user_id}")
    table.add_column("Due", style="cyan")
    table.add_column("Thread")
    table.add_column("Subject")
    table.add_column("Deferral", style="dim")
    for row in rows:
        table.add_row(
            row.deferral.defer_until.isoformat(),
            row.deferral.email_thread_id,
            (row.thread.subject or "") if row.thread else "[dim](thread missing)[/dim]",
            row.deferral.id,
        )
    console.print(table)


@cli.command("reconcile")
@click.option("--user", "user_id", default=None, help="Reconcile one user")
@click.option("--all", "all_users", is_flag=True, help="Reconcile every user with due deferrals")
@click.option("--now", "now", default=None, help="Cut-off instant (default: current time)")
def reconcile(user_id: str | None, all_users: bool, now: str | None) -> None:
    """Return due deferred threads to the inbox (one-shot)."""
    if bool(user_id) == all_users:
        raise click.UsageError("Pass exactly one of --user or --all.")
    _run(_run_reconcile(user_id, all_users, now))


async def _run_reconcile(user_id: str | None, all_users: bool, now: str | None) -> None:
    from inboxzero.db.store import utc_now

    cutoff = _parse_when(now, "now") or utc_now()
    deps = await _init_cli_deps()

    if all_users:
        result = await deps.sweeper.run_sweep(cutoff)
        _print_sweep(result)
        if result.failed_users:
            sys.exit(1)
        return

    processed = await deps.deferral_service.reconcile_due(user_id, cutoff, triggered_by="cli")
    console.print(
        f"[green]✓[/green] Returned {len(processed)} deferred thread(s) to the inbox "
        f"for [cyan]{user_id}[/cyan]"
    )


@cli.command("sweep")
def sweep() -> None:
    """Run the deferral sweep continuously on the configured interval."""
    console.print("Starting deferral sweep in continuous mode (use 'serve' for API + sweep)...")
    try:
        asyncio.run(_run_sweep_continuous())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except InboxZeroError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_sweep_continuous() -> None:
    """Run the sweep in continuous mode with APScheduler."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    deps = await _init_cli_deps()
    interval = deps.config.deferral.sweep_interval_minutes

    async def run_sweep():
        try:
            result = await deps.sweeper.run_sweep()
        except InboxZeroError as e:
            console.print(f"[red]Sweep failed:[/red] {e}")
            return
        console.print(
            f"[dim]Sweep {result.sweep_id[:8]}...[/dim] "
            f"users={result.users_checked} deferrals={result.deferrals_processed} "
            f"failed={len(result.failed_users)} ({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_sweep,
        "interval",
        minutes=interval,
        id="deferral_sweep",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(f"Deferral sweep running every {interval} minutes. Press Ctrl+C to stop.")

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
