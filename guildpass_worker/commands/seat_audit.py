"""Seat Audit Commands - refreshes, sweeps and gate checks"""

import typer
from rich.console import Console
from rich.panel import Panel

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.client.endpoints import client_from_config
from guildpass_worker.utils.formatting import print_error, print_success

console = Console()
app = typer.Typer(name="seat-audit", help="Seat audit operations")


@app.command("refresh")
def refresh(
    tenant_key: str = typer.Argument(...),
    connector_id: str = typer.Argument(...),
    guild_id: str = typer.Argument(...),
):
    """Queue an immediate seat count for a guild"""
    try:
        with client_from_config() as client:
            result = client.seat_audit_refresh(tenant_key, connector_id, guild_id)
    except WorkerAPIError as e:
        print_error(f"Refresh failed: {e}")
        raise typer.Exit(1) from None

    state = "merged into existing job" if result.get("deduped") else "queued"
    print_success(f"Seat audit {state}: {result.get('job_id')}")


@app.command("sweep")
def sweep(
    limit: int | None = typer.Option(None, "--limit", "-l", min=1, max=500),
):
    """Queue audits for all due guilds"""
    try:
        with client_from_config() as client:
            result = client.seat_audit_sweep(limit)
    except WorkerAPIError as e:
        print_error(f"Sweep failed: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Scanned {result.get('scanned', 0)}, enqueued {result.get('enqueued', 0)}, "
        f"deduped {result.get('deduped', 0)}"
    )


@app.command("gate")
def gate(
    tenant_key: str = typer.Argument(...),
    connector_id: str = typer.Argument(...),
    guild_id: str = typer.Argument(...),
    max_age_ms: int | None = typer.Option(None, "--max-age-ms"),
):
    """Show whether mirrored content may be delivered to a guild"""
    try:
        with client_from_config() as client:
            decision = client.seat_audit_gate(
                tenant_key, connector_id, guild_id, max_age_ms
            )
    except WorkerAPIError as e:
        print_error(f"Gate check failed: {e}")
        raise typer.Exit(1) from None

    allowed = decision.get("allowed", False)
    console.print(
        Panel(
            f"• Action: [{'green' if allowed else 'red'}]{decision.get('action')}[/]\n"
            f"• Reason: [yellow]{decision.get('reason')}[/yellow]",
            title=f"Seat gate {guild_id}",
            border_style="green" if allowed else "red",
        )
    )
