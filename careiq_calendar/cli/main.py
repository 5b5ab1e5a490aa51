import logging
import secrets
from zoneinfo import ZoneInfo

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress
from rich.table import Table

from ..config.manager import ConfigManager
from ..database.connection import DatabaseManager
from ..database.models import Provider
from ..exceptions import CalendarSyncError
from ..integrations import create_oauth_flow
from ..integrations.base import create_provider_client
from ..models.sync import SyncOptions
from ..services.calendar_sync_service import CalendarSyncService
from ..services.conflict_service import ConflictService, RESOLUTIONS
from ..services.credential_manager import CredentialManager
from ..services.integration_service import IntegrationService

console = Console()
config_manager = ConfigManager()

PROVIDER_CHOICE = click.Choice(Provider.ALL)


def init_database() -> DatabaseManager:
    config_manager.ensure_directories()
    db = DatabaseManager(config_manager.get('app.database_url'))
    db.init_database()
    return db


def _display_time(value) -> str:
    """Timestamp in the configured display time zone"""
    zone = ZoneInfo(config_manager.get('app.timezone', 'UTC'))
    return value.astimezone(zone).strftime("%b %d %H:%M")


def _status_style(status: str) -> str:
    return {
        'success': 'green',
        'partial_success': 'yellow',
        'error': 'red',
        'pending': 'yellow',
        'synced': 'green',
    }.get(status, 'white')


@click.group()
@click.option('--config', '-c', help='Path to .env file')
@click.option('--user', '-u', envvar='CAREIQ_USER_ID', default='local', show_default=True,
              help='User whose calendars to operate on')
@click.pass_context
def cli(ctx, config, user):
    """CareIQ calendar sync - keep facility events in step with Google, Outlook and iCloud"""
    global config_manager
    if config:
        config_manager = ConfigManager(config)
    logging.basicConfig(level=config_manager.get('development.log_level', 'INFO'))
    ctx.ensure_object(dict)
    ctx.obj['user_id'] = user


@cli.command()
def setup():
    """Run the setup wizard"""
    config_manager.setup_wizard()
    console.print("\nTo connect a calendar, try: careiq-calendar connect google")


@cli.command('init-db')
def init_db():
    """Create the database tables"""
    init_database()
    console.print(f"[green]✓[/green] Database ready at {config_manager.get('app.database_url')}")


@cli.command()
@click.argument('provider', type=PROVIDER_CHOICE)
@click.option('--direction', '-d', type=click.Choice(['push', 'pull', 'bidirectional']),
              default='bidirectional', show_default=True)
@click.option('--calendar', 'calendar_id', default=None, help='External calendar id (default: primary)')
@click.pass_context
def sync(ctx, provider, direction, calendar_id):
    """Sync your calendar with a provider"""
    db = init_database()
    service = CalendarSyncService(db, config_manager)
    options = SyncOptions(
        provider=provider,
        user_id=ctx.obj['user_id'],
        direction=direction,
        external_calendar_id=calendar_id,
    )

    with Progress() as progress:
        task = progress.add_task(f"[cyan]Syncing {provider} calendar...", total=100)
        result = service.sync_calendar(options)
        progress.update(task, advance=100)

    style = _status_style(result.status)
    console.print(f"\n[bold {style}]Sync finished: {result.status or 'skipped'}[/bold {style}]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="dim")
    table.add_column("Count")

    table.add_row("Processed", str(result.events_processed))
    table.add_row("Created", str(result.events_created))
    table.add_row("Updated", str(result.events_updated))
    table.add_row("Deleted", str(result.events_deleted))
    table.add_row("Conflicts", str(result.conflicts_detected))
    table.add_row("Time (ms)", str(result.execution_time_ms))
    console.print(table)

    if result.errors:
        console.print("\n[bold red]Errors:[/bold red]")
        for error in result.errors:
            console.print(f"- {error}")
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument('provider', type=PROVIDER_CHOICE)
@click.pass_context
def calendars(ctx, provider):
    """List the calendars available on a provider"""
    db = init_database()
    session = db.get_session()
    try:
        credential_manager = CredentialManager(session, config_manager)
        credentials = credential_manager.ensure_fresh(
            credential_manager.get_credentials(ctx.obj['user_id'], provider)
        )
        client = create_provider_client(provider, credentials, config_manager)
        items = client.list_calendars()
    except CalendarSyncError as e:
        console.print(f"[bold red]{e}[/bold red]")
        ctx.exit(1)
    finally:
        session.close()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Primary")
    table.add_column("Writable")
    for item in items:
        table.add_row(
            item.id,
            item.name,
            "yes" if item.primary else "",
            {True: "yes", False: "no"}.get(item.can_write, "?"),
        )
    console.print(table)


@cli.command()
@click.option('--status', '-s', default='pending', show_default=True, help="Resolution status or 'all'")
@click.option('--limit', '-n', default=50, show_default=True)
@click.pass_context
def conflicts(ctx, status, limit):
    """Show sync conflicts"""
    db = init_database()
    session = db.get_session()
    try:
        items = ConflictService(session).list_conflicts(ctx.obj['user_id'], status=status, limit=limit)

        if not items:
            console.print(f"[yellow]No {status} conflicts[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Provider")
        table.add_column("Local Title")
        table.add_column("External Title")
        table.add_column("Status")
        table.add_column("Detected", style="dim")
        for conflict in items:
            table.add_row(
                conflict.id,
                conflict.provider or "",
                (conflict.local_data or {}).get('title', ''),
                (conflict.external_data or {}).get('title', ''),
                conflict.resolution_status,
                _display_time(conflict.created_at) if conflict.created_at else "",
            )
        console.print(table)
    finally:
        session.close()


@cli.command()
@click.argument('conflict_id')
@click.argument('resolution', type=click.Choice(RESOLUTIONS))
@click.option('--title', default=None, help='Title to apply with resolved_manual')
@click.pass_context
def resolve(ctx, conflict_id, resolution, title):
    """Resolve a sync conflict"""
    db = init_database()
    session = db.get_session()
    try:
        resolved_data = {'title': title} if title else None
        ConflictService(session).resolve_conflict(
            ctx.obj['user_id'], conflict_id, resolution, resolved_data=resolved_data,
        )
        console.print(f"[green]✓[/green] Conflict {conflict_id} marked {resolution}")
    except CalendarSyncError as e:
        console.print(f"[bold red]{e}[/bold red]")
        ctx.exit(1)
    finally:
        session.close()


@cli.command()
@click.pass_context
def integrations(ctx):
    """Show connected calendar providers"""
    db = init_database()
    session = db.get_session()
    try:
        items = IntegrationService(session).list_integrations(ctx.obj['user_id'])
        if not items:
            console.print("[yellow]No calendars connected[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Provider")
        table.add_column("Name")
        table.add_column("Active")
        table.add_column("Last Sync", style="dim")
        table.add_column("Status")
        for integration in items:
            status = integration.last_sync_status or ""
            table.add_row(
                integration.provider,
                integration.display_name or "",
                "yes" if integration.is_active else "no",
                _display_time(integration.last_sync_at) if integration.last_sync_at else "never",
                f"[{_status_style(status)}]{status}[/{_status_style(status)}]",
            )
        console.print(table)
    finally:
        session.close()


@cli.command()
@click.argument('provider', type=click.Choice(Provider.OAUTH))
@click.pass_context
def connect(ctx, provider):
    """Authorize an OAuth calendar provider"""
    if not config_manager.validate(providers=(provider,)):
        ctx.exit(1)

    flow = create_oauth_flow(provider, config_manager)
    console.print(Panel.fit(
        f"Open this URL in your browser and approve access:\n\n{flow.authorization_url(state=secrets.token_urlsafe(16))}",
        title=f"Connect {provider}",
    ))
    code = click.prompt("Paste the authorization code")

    db = init_database()
    session = db.get_session()
    try:
        tokens = flow.exchange_code(code.strip())
        IntegrationService(session).connect_oauth(ctx.obj['user_id'], provider, tokens)
        console.print(f"[green]✓[/green] Connected {provider}")
    except CalendarSyncError as e:
        console.print(f"[bold red]{e}[/bold red]")
        ctx.exit(1)
    finally:
        session.close()


@cli.command('connect-caldav')
@click.option('--username', prompt='Apple ID', help='Apple ID email')
@click.option('--password', prompt='App-specific password', hide_input=True)
@click.option('--url', default=None, help='CalDAV server URL (default: iCloud)')
@click.pass_context
def connect_caldav(ctx, username, password, url):
    """Connect an iCloud (CalDAV) calendar"""
    db = init_database()
    session = db.get_session()
    try:
        IntegrationService(session).connect_caldav(
            ctx.obj['user_id'], username, password, url or config_manager.get('apple.caldav_url'),
        )
        console.print("[green]✓[/green] Connected iCloud calendar")
    finally:
        session.close()


@cli.command()
@click.argument('provider', type=PROVIDER_CHOICE)
@click.pass_context
def disconnect(ctx, provider):
    """Disconnect a provider and unlink its events"""
    if not click.confirm(f"Disconnect {provider}?", default=False):
        return
    db = init_database()
    session = db.get_session()
    try:
        IntegrationService(session).disconnect(ctx.obj['user_id'], provider)
        console.print(f"[green]✓[/green] Disconnected {provider}")
    except CalendarSyncError as e:
        console.print(f"[bold red]{e}[/bold red]")
        ctx.exit(1)
    finally:
        session.close()


if __name__ == '__main__':
    cli()
