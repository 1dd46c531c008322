"""Command-line interface for the broadcast service.

This module provides a CLI for operating broadcast runs directly against the
database, without going through the HTTP API.

Usage:
    broadcast-service serve
    broadcast-service tick
    broadcast-service runs list
    broadcast-service runs show 12
    broadcast-service runs cancel 12
    broadcast-service deliveries 12 --status UNKNOWN
    broadcast-service users list --search alice
    broadcast-service subscribers add 123456789 --username alice

Example:
    $ broadcast-service --db ./broadcast.db runs list --json
    $ broadcast-service --db ./broadcast.db runs requeue-unknown 12
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import core_kwargs, load_settings
from .core import BroadcastCore, BroadcastServiceError
from .models import DeliveryFilter

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    "QUEUED": "yellow",
    "RUNNING": "cyan",
    "COMPLETED": "green",
    "COMPLETED_WITH_ERRORS": "magenta",
    "CANCELLED": "dim",
    "SENT": "green",
    "PROCESSING": "cyan",
    "PENDING": "yellow",
    "FAILED_RETRYABLE": "yellow",
    "FAILED_PERMANENT": "red",
    "UNKNOWN": "magenta",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _configure_logging() -> None:
    level = os.getenv("BROADCAST_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _fmt_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _styled_status(value: str) -> str:
    style = _STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def build_core(db_path: Optional[str], config_path: Optional[str]) -> BroadcastCore:
    """Create a core from the loaded settings, ``--db`` taking precedence."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    return BroadcastCore(**core_kwargs(settings))


def _execute(ctx: click.Context, action):
    """Initialise storage, run ``action(core)`` and exit non-zero on domain errors."""
    core = build_core(ctx.obj.get("db_path"), ctx.obj.get("config_path"))

    async def _run():
        await core.persistence.init_db()
        return await action(core)

    try:
        return run_async(_run())
    except BroadcastServiceError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.version_option(package_name="async-broadcast-service")
@click.option("--db", "db_path", envvar="BROADCAST_DB_PATH", help="SQLite database path.")
@click.option("--config", "config_path", envvar="BROADCAST_CONFIG", help="INI configuration file.")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str], config_path: Optional[str]) -> None:
    """broadcast-service: fan out messages to large audiences with crash-safe delivery."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["config_path"] = config_path


# ============================================================================
# Service commands
# ============================================================================

@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from settings).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from settings).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API together with the background dispatcher."""
    import uvicorn

    from .api import create_app, service_lifespan

    _configure_logging()
    settings = load_settings(ctx.obj.get("config_path"))
    if ctx.obj.get("db_path"):
        settings["db_path"] = ctx.obj["db_path"]
    core = BroadcastCore(**core_kwargs(settings))
    app = create_app(core, api_token=settings.get("api_token"), lifespan=service_lifespan(core))
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("tick")
@click.pass_context
def tick(ctx: click.Context) -> None:
    """Run a single dispatcher tick (for cron-driven deployments)."""
    _configure_logging()

    async def _tick(core: BroadcastCore):
        return await core.tick()

    claimed = _execute(ctx, _tick)
    if claimed:
        print_success("Processed one broadcast run.")
    else:
        console.print("[dim]No broadcast run to process.[/dim]")


@main.command("purge")
@click.pass_context
def purge(ctx: click.Context) -> None:
    """Delete finished runs older than the retention window."""

    async def _purge(core: BroadcastCore):
        return await core.purge_expired_runs()

    removed = _execute(ctx, _purge)
    print_success(f"Purged {removed} run(s).")


# ============================================================================
# RUNS commands
# ============================================================================

@main.group("runs")
def runs() -> None:
    """Inspect and operate broadcast runs."""


@runs.command("list")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", "-l", type=int, default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def runs_list(ctx: click.Context, page: int, limit: int, as_json: bool) -> None:
    """List runs, newest first."""

    async def _list(core: BroadcastCore):
        return await core.list_runs(page=page, limit=limit)

    result = _execute(ctx, _list)
    if as_json:
        print_json(result)
        return

    if not result["runs"]:
        console.print("[dim]No broadcast runs found.[/dim]")
        return

    meta = result["meta"]
    table = Table(title=f"Broadcast runs (page {meta['page']}/{max(meta['total_pages'], 1)}, total {meta['total']})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Status")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("Sent", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Unknown", justify="right")
    table.add_column("Created")

    for run in result["runs"]:
        table.add_row(
            str(run["id"]),
            _styled_status(run["status"]),
            run["kind"],
            run["target"],
            f"{run['sent_count']}/{run['total_recipients']}",
            str(run["pending_count"]),
            str(run["failed_count"]),
            str(run["unknown_count"]),
            _fmt_ts(run["created_at"]),
        )

    console.print(table)


@runs.command("show")
@click.argument("run_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def runs_show(ctx: click.Context, run_id: int, as_json: bool) -> None:
    """Show a run and its per-status delivery summary."""

    async def _show(core: BroadcastCore):
        return await core.get_run(run_id)

    run = _execute(ctx, _show)
    if as_json:
        print_json(run)
        return

    console.print(f"\n[bold cyan]Broadcast run {run['id']}[/bold cyan]\n")
    console.print(f"  Status:      {_styled_status(run['status'])}")
    console.print(f"  Kind:        {run['kind']}")
    console.print(f"  Target:      {run['target']}")
    console.print(f"  Recipients:  {run['total_recipients']}")
    console.print(f"  Created:     {_fmt_ts(run['created_at'])}")
    console.print(f"  Started:     {_fmt_ts(run.get('started_at'))}")
    console.print(f"  Finished:    {_fmt_ts(run.get('finished_at'))}")
    if run.get("image_paths"):
        console.print(f"  Images:      {', '.join(run['image_paths'])}")

    console.print("\n  [bold]Deliveries:[/bold]")
    for status, count in run["delivery_summary"].items():
        console.print(f"    {_styled_status(status):<40} {count}")

    console.print("\n  [bold]Message:[/bold]")
    console.print(f"    {run['message']}")
    console.print()


@runs.command("cancel")
@click.argument("run_id", type=int)
@click.pass_context
def runs_cancel(ctx: click.Context, run_id: int) -> None:
    """Cancel a queued or running broadcast."""

    async def _cancel(core: BroadcastCore):
        return await core.cancel_run(run_id)

    run = _execute(ctx, _cancel)
    print_success(f"Run {run_id} is {run['status']}.")


@runs.command("requeue-unknown")
@click.argument("run_id", type=int)
@click.pass_context
def runs_requeue_unknown(ctx: click.Context, run_id: int) -> None:
    """Retry deliveries whose outcome is unknown."""

    async def _requeue(core: BroadcastCore):
        return await core.requeue_unknown(run_id)

    requeued = _execute(ctx, _requeue)
    print_success(f"Requeued {requeued} unknown deliver{'y' if requeued == 1 else 'ies'} of run {run_id}.")


@runs.command("repost")
@click.argument("run_id", type=int)
@click.option("--requested-by", type=int, default=None, help="User id recorded as the requester.")
@click.pass_context
def runs_repost(ctx: click.Context, run_id: int, requested_by: Optional[int]) -> None:
    """Queue a new run with the same content and audience."""

    async def _repost(core: BroadcastCore):
        return await core.repost_run(run_id, requested_by=requested_by)

    run = _execute(ctx, _repost)
    print_success(f"Run {run_id} reposted as run {run['id']} ({run['total_recipients']} recipients).")


@runs.command("delete")
@click.argument("run_id", type=int)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def runs_delete(ctx: click.Context, run_id: int, force: bool) -> None:
    """Delete a finished run and its deliveries."""
    if not force:
        if not click.confirm(f"Delete run {run_id} and all its deliveries?"):
            console.print("Aborted.")
            return

    async def _delete(core: BroadcastCore):
        await core.delete_run(run_id)

    _execute(ctx, _delete)
    print_success(f"Run {run_id} deleted.")


# ============================================================================
# DELIVERIES command
# ============================================================================

@main.command("deliveries")
@click.argument("run_id", type=int)
@click.option(
    "--status",
    "-s",
    type=click.Choice([f.value for f in DeliveryFilter], case_sensitive=False),
    default=DeliveryFilter.ALL.value,
    show_default=True,
)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", "-l", type=int, default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deliveries(ctx: click.Context, run_id: int, status: str, page: int, limit: int, as_json: bool) -> None:
    """List the deliveries of a run, newest first."""

    async def _list(core: BroadcastCore):
        return await core.list_deliveries(run_id, status=status, page=page, limit=limit)

    result = _execute(ctx, _list)
    if as_json:
        print_json(result)
        return

    if not result["deliveries"]:
        console.print("[dim]No deliveries found.[/dim]")
        return

    table = Table(title=f"Run {run_id} deliveries ({result['meta']['total']} total)")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Address")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Sent")
    table.add_column("Next attempt")
    table.add_column("Error")

    for d in result["deliveries"]:
        name = d.get("user_first_name") or d.get("subscriber_first_name") or d.get("user_username") \
            or d.get("subscriber_username") or "-"
        table.add_row(
            str(d["id"]),
            d["address"],
            name,
            _styled_status(d["status"]),
            str(d["attempt_count"]),
            _fmt_ts(d.get("sent_at")),
            _fmt_ts(d.get("next_attempt_at")),
            (d.get("last_error") or "-")[:60],
        )

    console.print(table)


# ============================================================================
# USERS commands
# ============================================================================

@main.group("users")
def users() -> None:
    """Manage users addressable by ``users`` broadcasts."""


@users.command("list")
@click.option("--search", "-s", default=None, help="Match first name, username or address.")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", "-l", type=int, default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def users_list(ctx: click.Context, search: Optional[str], page: int, limit: int, as_json: bool) -> None:
    """List users with an address, newest first."""

    async def _list(core: BroadcastCore):
        return await core.list_users(search=search, page=page, limit=limit)

    result = _execute(ctx, _list)
    if as_json:
        print_json(result)
        return

    if not result["users"]:
        console.print("[dim]No users found.[/dim]")
        return

    table = Table(title=f"Users ({result['meta']['total']} total)")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Address")
    table.add_column("First name")
    table.add_column("Username")
    table.add_column("Created")

    for user in result["users"]:
        table.add_row(
            str(user["id"]),
            user["address"],
            user.get("first_name") or "-",
            user.get("username") or "-",
            str(user.get("created_at") or "-"),
        )

    console.print(table)


@users.command("add")
@click.argument("address")
@click.option("--first-name", help="First name.")
@click.option("--username", "-u", help="Username.")
@click.pass_context
def users_add(ctx: click.Context, address: str, first_name: Optional[str], username: Optional[str]) -> None:
    """Add a user to the broadcast audience."""

    async def _add(core: BroadcastCore):
        return await core.add_user(address, first_name=first_name, username=username)

    user = _execute(ctx, _add)
    print_success(f"User {user['id']} added ({user['address']}).")


# ============================================================================
# SUBSCRIBERS commands
# ============================================================================

@main.group("subscribers")
def subscribers() -> None:
    """Manage channel subscribers."""


@subscribers.command("add")
@click.argument("address")
@click.option("--username", "-u", help="Channel username.")
@click.option("--first-name", help="First name.")
@click.option("--last-name", help="Last name.")
@click.pass_context
def subscribers_add(
    ctx: click.Context,
    address: str,
    username: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
) -> None:
    """Register (or reactivate) a subscriber."""

    async def _add(core: BroadcastCore):
        await core.subscribers.register(address, username=username, first_name=first_name, last_name=last_name)

    _execute(ctx, _add)
    print_success(f"Subscriber {address} registered.")


if __name__ == "__main__":
    main()
