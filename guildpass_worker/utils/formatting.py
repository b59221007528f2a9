"""Rich formatting helpers for CLI output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
    "received": "yellow",
    "processed": "green",
}


def print_success(message: str):
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    console.print(f"[blue]ℹ {message}[/blue]")


def _styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _scope_summary(scope: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in scope.items())


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job listing"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Family", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center")
    table.add_column("Run After", style="yellow")
    table.add_column("Scope", style="white")
    table.add_column("Last Error", style="red")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],
            job.get("family", ""),
            _styled_status(job.get("status", "")),
            f"{job.get('attempt_count', 0)}/{job.get('max_attempts', 0)}",
            str(job.get("run_after", "")),
            _scope_summary(job.get("scope", {})),
            job.get("last_error") or "-",
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    lines = [
        f"• Family: [magenta]{job.get('family')}[/magenta]",
        f"• Status: {_styled_status(job.get('status', ''))}",
        f"• Source: {job.get('source') or '-'}",
        f"• Attempts: {job.get('attempt_count')}/{job.get('max_attempts')}",
        f"• Run after: [yellow]{job.get('run_after')}[/yellow]",
        f"• Claimed by: {job.get('claim_worker_id') or '-'}",
        f"• Scope: {_scope_summary(job.get('scope', {}))}",
    ]
    if job.get("last_error"):
        lines.append(f"• Last error: [red]{job['last_error']}[/red]")
    return Panel("\n".join(lines), title=f"Job {job.get('id')}", border_style="cyan")


def create_stats_table(stats: dict[str, Any]) -> Table:
    table = Table(title="Queue Overview", box=box.ROUNDED)
    table.add_column("Family", style="magenta")
    for status in ("pending", "processing", "completed", "failed"):
        table.add_column(status.capitalize(), justify="right")
    table.add_column("Ready", justify="right", style="yellow")

    pending_ready = stats.get("pending_ready", {})
    for family, counts in sorted(stats.get("by_family", {}).items()):
        table.add_row(
            family,
            *(str(counts.get(s, 0)) for s in ("pending", "processing", "completed", "failed")),
            str(pending_ready.get(family, 0)),
        )
    return table


def create_webhook_failures_table(failures: list[dict[str, Any]]) -> Table:
    table = Table(title="Webhook Failures", box=box.ROUNDED)
    table.add_column("Event ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center")
    table.add_column("Received", style="yellow")
    table.add_column("Error", style="red")

    for event in failures:
        table.add_row(
            event.get("event_id", ""),
            event.get("event_type", ""),
            _styled_status(event.get("status", "")),
            str(event.get("attempt_count", 0)),
            str(event.get("received_at", "")),
            event.get("error") or "-",
        )
    return table
