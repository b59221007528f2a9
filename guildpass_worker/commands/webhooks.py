"""Webhook Commands - failed payment event inspection and replay"""

import typer
from rich.console import Console

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.client.endpoints import client_from_config
from guildpass_worker.utils.formatting import (
    create_webhook_failures_table,
    print_error,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="webhooks", help="Payment webhook operations")


@app.command("failures")
def list_failures(
    limit: int = typer.Option(50, "--limit", "-l", min=1, max=200),
):
    """List failed and unprocessed webhook events"""
    try:
        with client_from_config() as client:
            data = client.list_webhook_failures(limit)
    except WorkerAPIError as e:
        print_error(f"Failed to list webhook failures: {e}")
        raise typer.Exit(1) from None

    failures = data.get("failures", [])
    if not failures:
        print_success("No failed webhook events")
        return
    console.print(create_webhook_failures_table(failures))


@app.command("replay")
def replay_event(event_id: str = typer.Argument(..., help="Provider event ID")):
    """Re-run processing of a stored webhook event"""
    try:
        with client_from_config() as client:
            result = client.replay_webhook(event_id)
    except WorkerAPIError as e:
        print_error(f"Replay failed: {e}")
        raise typer.Exit(1) from None

    if result.get("deduped"):
        print_warning(f"Event {event_id} was already processed")
        return
    print_success(
        f"Event {event_id} processed "
        f"(user={result.get('user_id')}, via={result.get('resolved_via')}, "
        f"status={result.get('subscription_status')})"
    )
