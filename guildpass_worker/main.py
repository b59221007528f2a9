"""GuildPass worker CLI - Main Entry Point"""

import asyncio
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from guildpass.config.logging import bind_worker_context, setup_logging
from guildpass_worker import __version__
from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.client.endpoints import client_from_config
from guildpass_worker.commands import config, jobs, seat_audit, webhooks
from guildpass_worker.runner import run_worker
from guildpass_worker.settings import WorkerSettings
from guildpass_worker.utils.config_manager import config as config_manager
from guildpass_worker.utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="guildpass-worker",
    help="GuildPass queue worker and operator CLI",
    rich_markup_mode="rich",
)

app.add_typer(config.app, name="config")
app.add_typer(jobs.app, name="jobs")
app.add_typer(webhooks.app, name="webhooks")
app.add_typer(seat_audit.app, name="seat-audit")


@app.command()
def run():
    """Run the queue worker until SIGINT or SIGTERM"""
    try:
        settings = WorkerSettings()
    except ValidationError as e:
        print_error(f"Invalid worker configuration:\n{e}")
        raise typer.Exit(1) from None

    setup_logging(level=settings.log_level, debug=settings.debug)
    bind_worker_context(settings.worker_id)
    asyncio.run(run_worker(settings))


@app.command()
def status():
    """Check API health and queue backlog"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with client_from_config() as client:
            health = client.health_check()
    except WorkerAPIError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                "[red]Connection Failed[/red]\n\n"
                f"Make sure the GuildPass API is running at:\n[blue]{base_url}[/blue]\n\n"
                "You can update the API URL with:\n"
                "[cyan]guildpass-worker config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    queue = health.get("queue") or {}
    console.print(
        Panel(
            f"[green]Connected[/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Ready jobs: {queue.get('pending_ready', 0)}\n"
            f"• Processing: {queue.get('processing', 0)}\n"
            f"• Oldest lease: {queue.get('oldest_lease_age_seconds') or '-'}s\n"
            f"• Failed jobs: {queue.get('failed_jobs', 0)}\n"
            f"• Failed webhooks: {queue.get('failed_webhooks', 0)}",
            title="System Status",
            border_style="green",
        )
    )


def version_callback(value: Optional[bool]):
    if value:
        console.print(f"GuildPass worker v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """GuildPass worker: runs queue jobs and operates the GuildPass API."""


if __name__ == "__main__":
    app()
