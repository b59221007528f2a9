"""Jobs Commands - queue inspection and lease recovery"""

import typer
from rich.console import Console
from rich.panel import Panel

from guildpass_worker.client.base import WorkerAPIError
from guildpass_worker.client.endpoints import client_from_config
from guildpass_worker.utils.config_manager import config
from guildpass_worker.utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Job queue inspection commands")


@app.command("list")
def list_jobs(
    family: str | None = typer.Option(None, "--family", "-f", help="Filter by family"),
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    limit: int | None = typer.Option(
        None, "--limit", "-l", help="Number of jobs to show (default: display.page_size)"
    ),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """List jobs, newest first"""
    limit = limit or int(config.get("display.page_size", 20))
    try:
        with client_from_config() as client:
            data = client.list_jobs(
                family=family, status=status, limit=limit, offset=offset
            )
    except WorkerAPIError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    if not jobs:
        console.print(
            Panel(
                "[yellow]No jobs found[/yellow]\n\n"
                f"• Family: {family or 'any'}\n"
                f"• Status: {', '.join(status) if status else 'any'}",
                title="Empty Results",
                border_style="yellow",
            )
        )
        return

    console.print(create_jobs_table(jobs))
    print_info(f"Showing {len(jobs)} of {data.get('total', len(jobs))} jobs")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """Show one job"""
    try:
        with client_from_config() as client:
            job = client.get_job(job_id)
    except WorkerAPIError as e:
        print_error(f"Failed to fetch job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("stats")
def job_stats():
    """Per-family status counts"""
    try:
        with client_from_config() as client:
            stats = client.job_stats()
    except WorkerAPIError as e:
        print_error(f"Failed to fetch stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_table(stats))


@app.command("reclaim")
def reclaim_expired(
    ttl_s: int | None = typer.Option(
        None, "--ttl", help="Lease TTL in seconds (defaults to the server setting)"
    ),
):
    """Return jobs with expired leases to the queue"""
    try:
        with client_from_config() as client:
            data = client.reclaim_expired(ttl_s)
    except WorkerAPIError as e:
        print_error(f"Failed to reclaim leases: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Reclaimed {data.get('reclaimed', 0)} job(s) "
        f"(lease TTL {data.get('lease_ttl_s')}s)"
    )
