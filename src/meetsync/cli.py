"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import create_example_config, load_settings
from .models import ConflictPolicy, SyncDirection, location_text
from .runtime import build_runtime

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


@asynccontextmanager
async def open_runtime(settings):
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        await runtime.aclose()


@click.group()
@click.version_option(version="2.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """meetsync - keep local meetings and Google Calendar in sync."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run HTTP server with background auto-sync (container friendly)."""
    try:
        import uvicorn
        uvicorn.run("meetsync.server:create_app", factory=True, host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--direction', '-d',
              type=click.Choice([d.value for d in SyncDirection]),
              help='Persist a new sync direction before syncing')
@async_command
async def sync(ctx, direction):
    """Run one reconciliation pass now."""
    settings = ctx.obj['settings']

    try:
        async with open_runtime(settings) as runtime:
            if direction:
                await runtime.engine.update_sync_settings(sync_direction=direction)
            result = await runtime.engine.force_sync()

        if result is None:
            console.print("[yellow]A sync is already in progress[/yellow]")
            return

        logger.info("sync_completed", created=result.created, updated=result.updated,
                    errors=len(result.errors))
        _display_sync_result(result)

    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@async_command
async def status(ctx):
    """Show connection state and sync settings."""
    settings = ctx.obj['settings']

    async with open_runtime(settings) as runtime:
        sync_status = await runtime.engine.get_sync_status()

    table = Table(show_header=False, title="Sync Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    connected = "[green]✓ Connected[/green]" if sync_status.is_connected else "[red]✗ Not connected[/red]"
    table.add_row("Google Calendar", connected)
    table.add_row("Auto sync", "on" if sync_status.auto_sync else "off")
    table.add_row("Interval", f"{sync_status.sync_interval_minutes} minutes")
    table.add_row("Direction", sync_status.sync_direction.value)
    table.add_row("Last sync", _format_time(sync_status.last_sync_time))
    console.print(table)


@cli.command()
@async_command
async def stats(ctx):
    """Show how many meetings and events are linked."""
    settings = ctx.obj['settings']

    try:
        async with open_runtime(settings) as runtime:
            statistics = await runtime.engine.get_sync_statistics()
    except Exception as e:
        console.print(f"[red]Failed to get statistics: {e}[/red]")
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta", title="Sync Statistics")
    table.add_column("Side", style="cyan")
    table.add_column("Total", justify="center")
    table.add_column("Synced", justify="center")
    table.add_row("Local meetings", str(statistics.total_local_meetings),
                  str(statistics.synced_local_meetings))
    table.add_row("Google events", str(statistics.total_remote_events),
                  str(statistics.synced_remote_events))
    console.print(table)
    if statistics.orphaned_mappings:
        console.print(f"[yellow]⚠️  {statistics.orphaned_mappings} orphaned mappings, "
                      f"run [bold]meetsync cleanup[/bold][/yellow]")


@cli.command()
@async_command
async def conflicts(ctx):
    """List mapped pairs whose two sides disagree."""
    settings = ctx.obj['settings']

    try:
        async with open_runtime(settings) as runtime:
            found = await runtime.engine.get_conflicts()
    except Exception as e:
        console.print(f"[red]Failed to get conflicts: {e}[/red]")
        sys.exit(1)

    if not found:
        console.print("[green]No conflicts found[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Local ID", style="dim")
    table.add_column("Local")
    table.add_column("Google")
    for conflict in found:
        local, remote = conflict.local_meeting, conflict.remote_meeting
        table.add_row(
            local.id,
            f"{local.title}\n{local.date} {local.time}\n{location_text(local.location)}",
            f"{remote.title}\n{remote.date} {remote.time}\n{location_text(remote.location)}",
        )
    console.print(table)
    console.print(Panel(
        f"[yellow]Found {len(found)} conflicts[/yellow]\n"
        "Use [bold]meetsync resolve LOCAL_ID --policy keepLocal|keepRemote|merge[/bold] to resolve one.",
        title="Conflicts Detected",
        border_style="yellow"
    ))


@cli.command()
@click.argument('local_id')
@click.option('--policy', '-p', required=True,
              type=click.Choice([p.value for p in ConflictPolicy]),
              help='Which side wins')
@async_command
async def resolve(ctx, local_id, policy):
    """Resolve the conflict for one local meeting."""
    settings = ctx.obj['settings']

    async with open_runtime(settings) as runtime:
        found = [c for c in await runtime.engine.get_conflicts() if c.local_meeting.id == local_id]
        if not found:
            console.print(f"[yellow]No conflict found for meeting {local_id}[/yellow]")
            return
        resolved = await runtime.engine.resolve_conflict(found[0], policy)

    if resolved:
        console.print(f"[green]✓ Conflict for {local_id} resolved ({policy})[/green]")
    else:
        console.print(f"[red]Google Calendar rejected the update for {local_id}[/red]")
        sys.exit(1)


@cli.command()
@async_command
async def cleanup(ctx):
    """Remove mappings whose meeting or event no longer exists."""
    settings = ctx.obj['settings']

    async with open_runtime(settings) as runtime:
        removed = await runtime.engine.cleanup_orphan_mappings()
    console.print(f"[green]Removed {removed} orphaned mappings[/green]")


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides stored settings)')
@async_command
async def daemon(ctx, interval):
    """Run auto-sync continuously."""
    settings = ctx.obj['settings']

    async with open_runtime(settings) as runtime:
        if interval:
            await runtime.engine.update_sync_settings(sync_interval_minutes=interval)

        if not await runtime.initialize():
            console.print("[red]Google Calendar access not available, store tokens first[/red]")
            sys.exit(1)

        sync_settings = await runtime.settings_store.load()
        if not runtime.scheduler.is_running:
            runtime.scheduler.start(sync_settings.sync_interval_minutes)
        console.print(f"[green]Starting meetsync daemon[/green] - interval: "
                      f"{sync_settings.sync_interval_minutes} minutes")

        try:
            while True:
                await asyncio.sleep(3600)
        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\n[yellow]Daemon stopped by user[/yellow]")


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@cli.group()
def tokens():
    """Google OAuth token management."""
    pass


@tokens.command('set')
@click.option('--access-token', required=True, help='OAuth access token')
@click.option('--refresh-token', help='OAuth refresh token')
@click.option('--expires-in', type=int, help='Access token lifetime in seconds')
@async_command
async def set_tokens(ctx, access_token, refresh_token, expires_in):
    """Store tokens obtained from the app's OAuth flow."""
    settings = ctx.obj['settings']

    async with open_runtime(settings) as runtime:
        await runtime.token_store.store_tokens(
            access_token, refresh_token=refresh_token, expires_in=expires_in
        )
    console.print("[green]✓ Tokens stored[/green]")


@tokens.command('clear')
@click.confirmation_option(prompt='Disconnect Google Calendar?')
@async_command
async def clear_tokens(ctx):
    """Forget stored Google tokens."""
    settings = ctx.obj['settings']

    async with open_runtime(settings) as runtime:
        await runtime.token_store.clear()
    console.print("[green]✓ Tokens cleared[/green]")


def _format_time(value) -> str:
    if value is None:
        return "never"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S %Z")
    return str(value)


def _display_sync_result(result):
    """Display sync results."""
    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Errors", justify="center")
    table.add_row(str(result.created), str(result.updated), str(result.deleted), str(len(result.errors)))
    console.print(table)

    for error in result.errors:
        console.print(f"[red]  {error.direction.value} {error.entity_id}: {error.message}[/red]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
