"""CLI output formatting functions.

This module contains functions for displaying sync runs, run details,
token state and per-entity status to the command line.
"""

from typing import TYPE_CHECKING, Any, Optional

import click

if TYPE_CHECKING:
    from crm_sync.sync.engine import SyncRun

# Colour per run status
STATUS_COLORS = {
    "completed": "green",
    "running": "cyan",
    "cancelled": "yellow",
    "failed": "red",
}

# Colour per token status
TOKEN_STATUS_COLORS = {
    "valid": "green",
    "expiring_soon": "yellow",
    "expired": "red",
    "no_token": "red",
}

# Rows shown before "... and N more"
DETAIL_DISPLAY_LIMIT = 50


def style_status(status: str) -> str:
    """Colour a run status for terminal output."""
    return click.style(status, fg=STATUS_COLORS.get(status, "white"))


def _short_timestamp(value: Optional[str]) -> str:
    if not value:
        return "-"
    # 2026-01-31T10:15:00.123456+00:00 -> 2026-01-31 10:15:00
    return value.replace("T", " ")[:19]


def format_run_line(run: dict[str, Any]) -> str:
    """
    Format one audit log row as a single line.

    Args:
        run: Row dictionary as returned by SyncDatabase.get_recent_sync_runs
    """
    return (
        f"#{run.get('id')} {_short_timestamp(run.get('started_at'))} "
        f"{run.get('sync_type', '?'):<9} {run.get('strategy', '?'):<11} "
        f"{style_status(run.get('status', '?'))} "
        f"processed={run.get('records_processed') or 0} "
        f"created={run.get('records_created') or 0} "
        f"updated={run.get('records_updated') or 0} "
        f"failed={run.get('records_failed') or 0}"
    )


def show_run_summary(run: "SyncRun") -> None:
    """
    Display the outcome of a finished sync run.

    Args:
        run: The SyncRun returned by the engine
    """
    status = run.status.value
    click.echo(
        f"{run.sync_type.value}: {style_status(status)} "
        f"({run.strategy.value}, run #{run.id})"
    )
    if run.modified_since is not None:
        click.echo(f"  Modified since: {run.modified_since.isoformat()}")
    click.echo(f"  Pages fetched:     {run.pages_fetched}")
    click.echo(f"  Records processed: {run.records_processed}")
    click.echo(f"  Created:           {run.records_created}")
    click.echo(f"  Updated:           {run.records_updated}")
    if run.records_failed:
        click.echo(click.style(f"  Failed:            {run.records_failed}", fg="yellow"))
    else:
        click.echo(f"  Failed:            {run.records_failed}")
    if run.duration_seconds is not None:
        click.echo(f"  Duration:          {run.duration_seconds:.1f}s")
    if run.error_message:
        click.echo(click.style(f"  Error: {run.error_message}", fg="red"))


def show_run_details(
    run: dict[str, Any],
    details: list[dict[str, Any]],
    limit: int = DETAIL_DISPLAY_LIMIT,
) -> None:
    """
    Display a stored sync run with its per-record details.

    Args:
        run: Audit log row for the run
        details: Rows from SyncDatabase.get_sync_run_details
        limit: Maximum number of detail rows to print
    """
    click.echo(f"=== Sync Run #{run.get('id')} ===\n")
    click.echo(f"Entity type:    {run.get('sync_type')}")
    click.echo(f"Strategy:       {run.get('strategy')}")
    click.echo(f"Status:         {style_status(run.get('status', '?'))}")
    click.echo(f"Triggered by:   {run.get('triggered_by') or '-'}")
    click.echo(f"Started:        {_short_timestamp(run.get('started_at'))}")
    click.echo(f"Completed:      {_short_timestamp(run.get('completed_at'))}")
    if run.get("modified_since"):
        click.echo(f"Modified since: {_short_timestamp(run.get('modified_since'))}")
    click.echo(f"Pages fetched:  {run.get('pages_fetched') or 0}")
    click.echo(
        f"Records:        {run.get('records_processed') or 0} processed, "
        f"{run.get('records_created') or 0} created, "
        f"{run.get('records_updated') or 0} updated, "
        f"{run.get('records_failed') or 0} failed"
    )
    if run.get("error_message"):
        click.echo(click.style(f"Error:          {run['error_message']}", fg="red"))

    errors = run.get("errors") or []
    if errors:
        click.echo(f"\nErrors ({len(errors)}):")
        for error in errors[:limit]:
            click.echo(click.style(f"  ! {error}", fg="yellow"))
        if len(errors) > limit:
            click.echo(f"  ... and {len(errors) - limit} more")

    if not details:
        return

    click.echo(f"\nRecords ({len(details)}):")
    symbols = {"created": "+", "updated": "~", "linked": "=", "failed": "!"}
    for detail in details[:limit]:
        action = detail.get("action", "?")
        line = (
            f"  {symbols.get(action, '?')} {detail.get('external_id') or '-'} "
            f"{action}"
        )
        if detail.get("local_id") is not None:
            line += f" (local #{detail['local_id']})"
        if detail.get("message"):
            line += f": {detail['message']}"
        click.echo(click.style(line, fg="red") if action == "failed" else line)
    if len(details) > limit:
        click.echo(f"  ... and {len(details) - limit} more")


def show_token_status(status: dict[str, Any], provider: str) -> None:
    """
    Display the token state reported by TokenManager.token_status().
    """
    state = status.get("status", "no_token")
    colored = click.style(state, fg=TOKEN_STATUS_COLORS.get(state, "white"))
    click.echo(f"Provider: {provider}")
    click.echo(f"Token:    {colored} - {status.get('message', '')}")
    if state == "no_token":
        return

    click.echo(f"Expires:  {_short_timestamp(status.get('expires_at'))} UTC")
    refresh = "yes" if status.get("has_refresh_token") else "no"
    click.echo(f"Refresh token: {refresh}")
    if status.get("last_used_at"):
        click.echo(f"Last used: {_short_timestamp(status['last_used_at'])}")


def show_entity_status(status: dict[str, dict[str, Any]]) -> None:
    """
    Display per-entity-type sync state from SyncEngine.get_status().
    """
    for entity_name, info in status.items():
        last = info.get("last_run")
        last_ok = info.get("last_successful")
        click.echo(f"{entity_name}:")
        click.echo(f"  Local rows:      {info.get('row_count', 0)}")
        if last is None:
            click.echo(click.style("  Never synced", fg="yellow"))
            continue
        click.echo(
            f"  Last run:        #{last.get('id')} {style_status(last.get('status', '?'))} "
            f"at {_short_timestamp(last.get('started_at'))}"
        )
        if last_ok is not None:
            click.echo(
                f"  Last completed:  {_short_timestamp(last_ok.get('completed_at'))}"
            )
