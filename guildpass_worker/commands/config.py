"""Configuration Commands - CLI settings management"""

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from guildpass_worker.utils.config_manager import config
from guildpass_worker.utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="config", help="CLI configuration management")


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key (e.g., 'api.base_url')"),
    value: str = typer.Argument(..., help="Configuration value"),
):
    """Set a configuration value"""
    if key == "api.base_url" and not value.startswith(("http://", "https://")):
        print_error("API base URL must start with http:// or https://")
        raise typer.Exit(1)

    if key.endswith(".timeout") and not value.isdigit():
        print_error("Timeout values must be numeric (seconds)")
        raise typer.Exit(1)

    try:
        config.set(key, int(value) if key.endswith(".timeout") else value)
    except OSError as e:
        print_error(f"Failed to set configuration: {e}")
        raise typer.Exit(1) from None

    shown = "****" if key.endswith("_token") else value
    print_success(f"Set {key} = {shown}")
    if key == "api.base_url":
        print_info("Test connection with: guildpass-worker status")


@app.command("get")
def get_config(
    key: str = typer.Argument(..., help="Configuration key (e.g., 'api.base_url')"),
):
    """Get a configuration value"""
    value = config.get(key)
    if value is None:
        console.print(f"[yellow]Key '{key}' not found[/yellow]")
        console.print("Use [cyan]guildpass-worker config show[/cyan] to see all keys")
        raise typer.Exit(1)
    if key.endswith("_token") and value:
        value = "****"
    console.print(f"[cyan]{key}[/cyan] = [yellow]{value}[/yellow]")


@app.command("show")
def show_config():
    """Show all configuration settings (tokens masked)"""
    console.print(
        Panel(
            "[bold cyan]GuildPass CLI Configuration[/bold cyan]\n\n"
            f"[dim]Stored in {config.config_file}[/dim]",
            title="Configuration",
            border_style="blue",
        )
    )
    console.print(yaml.safe_dump(config.redacted(), default_flow_style=False))


@app.command("reset")
def reset_config(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Reset configuration to defaults"""
    if not yes and not Confirm.ask("Reset ALL configuration to defaults?"):
        console.print("Configuration reset cancelled.")
        return

    try:
        config.reset()
    except OSError as e:
        print_error(f"Failed to reset configuration: {e}")
        raise typer.Exit(1) from None
    print_success("Configuration reset to defaults")
