"""
Command-line interface for calsync.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from calsync.config import load_settings
from calsync.db import StateDatabase
from calsync.db import query_status
from calsync.models import DEFAULT_CONFIG
from calsync.models import CalendarSyncError
from calsync.models import ConnectResult
from calsync.models import ItemStatus
from calsync.models import Provider
from calsync.models import SyncAction
from calsync.models import SyncReport
from calsync.models import SyncSettings
from calsync.sync import CalendarSynchronizer
from calsync.tokens import TokenManager
from calsync.tokens import build_authorization_url
from calsync.tokens import complete_oauth_callback
from calsync.tokens import connect_app_password
from calsync.tokens import disconnect as disconnect_provider

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Sync local calendar events with Google Calendar, Outlook and CalDAV.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help="State DB path (overrides config)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _settings() -> SyncSettings:
    try:
        return load_settings(state.config_path, state.state_db, state.verbose)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


def _parse_provider(value: str) -> Provider:
    try:
        return Provider.parse(value)
    except CalendarSyncError as e:
        raise typer.BadParameter(str(e)) from None


def _print_connect_result(result: ConnectResult) -> None:
    if result.success:
        console.print(
            f"[green]✓[/] Connected [bold]{result.provider}[/] for user {result.user_id}"
        )
        return
    console.print(f"[bold red]Failed:[/] {result.provider}: {result.error}")
    raise typer.Exit(1)


def _print_report(report: SyncReport) -> None:
    """Problem rows per provider, then the results grid."""
    failures = report.failures
    if failures:
        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("Provider")
        table.add_column("Event")
        table.add_column("Status")
        table.add_column("Detail", overflow="fold")
        for item in failures:
            style = "yellow" if item.status is ItemStatus.UNSUPPORTED else "bold red"
            table.add_row(
                item.provider.value if item.provider else "—",
                str(item.event_id or item.external_id or "—"),
                Text(item.status.value, style=style),
                item.detail,
            )
        console.print(Panel(table, title="[bold]Problems[/bold]", expand=False))

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    if report.operation == "sync_in":
        results.add_row("Fetched", str(report.fetched))
        results.add_row("Inserted", str(len(report.inserted)))
    else:
        results.add_row("Pushed", str(len(report.by_status(ItemStatus.OK))))
    results.add_row("Skipped", str(len(report.by_status(ItemStatus.SKIPPED))))
    results.add_row("Unsupported", str(len(report.by_status(ItemStatus.UNSUPPORTED))))
    error_val = Text(str(report.errors))
    if report.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


def _run_sync(settings: SyncSettings, user_id: int | None, work) -> SyncReport:
    """Preflight, open state, run ``work(synchronizer)``, map errors to exit codes."""
    from calsync.preflight import run_preflight_checks

    if not run_preflight_checks(settings, console, user_id):
        raise typer.Exit(1)

    try:
        with StateDatabase(settings.state_db_path) as state_db:
            synchronizer = CalendarSynchronizer(settings, state_db)
            try:
                work(synchronizer)
            finally:
                synchronizer.close()
            return synchronizer.report
    except typer.Exit:
        raise
    except CalendarSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e


_USER_OPT = Annotated[int, typer.Option("--user", "-u", help="Local user id")]
_PROVIDER_ARG = Annotated[str, typer.Argument(help="google, outlook or apple")]


# ---------------------------------------------------------------------------
# Subcommands: connect / disconnect
# ---------------------------------------------------------------------------


@app.command("auth-url")
def auth_url(provider: _PROVIDER_ARG, user: _USER_OPT) -> None:
    """Print the consent-screen URL that starts the OAuth connect flow."""
    parsed = _parse_provider(provider)
    settings = _settings()
    try:
        if not settings.oauth_config(parsed).is_configured:
            console.print(
                f"[bold red]Error:[/] {parsed.value} OAuth client is not configured "
                f"(see [cyan]{state.config_path}[/])"
            )
            raise typer.Exit(1)
        url = build_authorization_url(parsed, settings, user)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    console.print(url, soft_wrap=True, markup=False, emoji=False, highlight=False)


@app.command()
def connect(
    provider: _PROVIDER_ARG,
    code: Annotated[str | None, typer.Option("--code", help="Authorization code")] = None,
    oauth_state: Annotated[
        str | None, typer.Option("--state", help="State returned with the code")
    ] = None,
    error: Annotated[
        str | None, typer.Option("--error", help="Error reported by the provider")
    ] = None,
) -> None:
    """Finish the OAuth flow with the code and state from the redirect."""
    settings = _settings()
    with StateDatabase(settings.state_db_path) as state_db:
        manager = TokenManager(state_db, settings)
        try:
            result = complete_oauth_callback(manager, provider, code, oauth_state, error)
        finally:
            manager.client.close()
    _print_connect_result(result)


@app.command("connect-apple")
def connect_apple(
    user: _USER_OPT,
    username: Annotated[str, typer.Option("--username", help="Apple ID (CalDAV account)")],
    app_password: Annotated[
        str,
        typer.Option(
            "--app-password",
            prompt=True,
            hide_input=True,
            help="App-specific password (prompted if omitted)",
        ),
    ],
) -> None:
    """Store an Apple ID and app-specific password for CalDAV."""
    settings = _settings()
    with StateDatabase(settings.state_db_path) as state_db:
        manager = TokenManager(state_db, settings)
        try:
            result = connect_app_password(manager, user, username, app_password)
        finally:
            manager.client.close()
    _print_connect_result(result)


@app.command()
def disconnect(provider: _PROVIDER_ARG, user: _USER_OPT) -> None:
    """Remove the stored credential for one provider."""
    settings = _settings()
    with StateDatabase(settings.state_db_path) as state_db:
        manager = TokenManager(state_db, settings)
        try:
            result = disconnect_provider(manager, user, provider)
        finally:
            manager.client.close()
    if not result.success:
        console.print(f"[bold red]Failed:[/] {result.error}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Disconnected [bold]{result.provider}[/] for user {user}")


# ---------------------------------------------------------------------------
# Subcommands: pull / push
# ---------------------------------------------------------------------------


@app.command()
def pull(user: _USER_OPT) -> None:
    """Import new events from every provider the user has connected."""
    settings = _settings()
    inserted = []

    def _work(synchronizer: CalendarSynchronizer) -> None:
        inserted.extend(synchronizer.sync_in_from_provider(user))

    report = _run_sync(settings, user, _work)

    if inserted:
        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("ID", justify="right")
        table.add_column("Title")
        table.add_column("Start")
        table.add_column("End")
        for event in inserted:
            fmt = "%Y-%m-%d" if event.all_day else "%Y-%m-%d %H:%M"
            table.add_row(
                str(event.id),
                event.title,
                event.start_time.strftime(fmt),
                event.end_time.strftime(fmt),
            )
        console.print(Panel(table, title="[bold]Imported events[/bold]", expand=False))

    _print_report(report)
    if report.errors:
        raise typer.Exit(1)


@app.command()
def push(
    event_id: Annotated[int, typer.Argument(help="Local event id")],
    action: Annotated[
        SyncAction, typer.Option("--action", "-a", help="Mutation to mirror")
    ] = SyncAction.UPDATE,
) -> None:
    """Mirror a create, update or delete of a local event to every provider.

    For [cyan]delete[/], the local event is removed after the providers are told.
    """
    settings = _settings()

    def _work(synchronizer: CalendarSynchronizer) -> None:
        event = synchronizer.event_store.get_event(event_id)
        if event is None:
            console.print(f"[bold red]Error:[/] Event {event_id} not found.")
            raise typer.Exit(1)
        synchronizer.sync_out_to_provider(event.user_id, event, action)
        if action is SyncAction.DELETE:
            synchronizer.event_store.delete_event(event_id)
            synchronizer.state_db.commit()

    report = _run_sync(settings, None, _work)

    _print_report(report)
    if report.errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status(
    user: Annotated[int | None, typer.Option("--user", "-u", help="Limit to one user")] = None,
) -> None:
    """Show configuration, connected providers and mapping counts."""
    settings = _settings()
    config_exists = state.config_path.exists()
    db_exists = settings.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(settings.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    for provider in (Provider.GOOGLE, Provider.OUTLOOK):
        configured = settings.oauth_config(provider).is_configured
        cfg_info.append(f"\n  {provider.display_name + ':':<18}", style="bold")
        cfg_info.append(
            "OAuth client configured" if configured else "OAuth client not configured",
            style="green" if configured else "yellow",
        )
    cfg_info.append(f"\n  {'CalDAV:':<18}", style="bold")
    cfg_info.append(settings.caldav.calendar_url)

    console.print(Panel(cfg_info, title="[bold]calsync — Status[/bold]"))

    rows = query_status(settings.state_db_path, user)
    if not rows:
        if not db_exists:
            console.print(
                "[yellow]No state database yet — run[/] "
                "[cyan]calsync connect[/] "
                "[yellow]to create it.[/]"
            )
        else:
            console.print("[yellow]No providers connected.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("User", justify="right")
    table.add_column("Provider")
    table.add_column("Token expires")
    table.add_column("Events", justify="right")
    table.add_column("Calendars", justify="right")
    table.add_column("Updated")

    now = datetime.now().timestamp()
    for row in rows:
        expires_at = row["expires_at"]
        if expires_at is None:
            expires = Text("never", style="dim")
        else:
            expires = Text(
                datetime.fromtimestamp(expires_at).strftime("%Y-%m-%d %H:%M:%S"),
                style="red" if expires_at <= now else "green",
            )
        updated = row["updated_at"]
        table.add_row(
            str(row["user_id"]),
            Provider(row["provider"]).display_name,
            expires,
            str(row["mapped_events"]),
            str(row["mapped_calendars"]),
            datetime.fromtimestamp(updated).strftime("%Y-%m-%d %H:%M:%S") if updated else "—",
        )

    console.print(Panel(table, title="[bold]Connected providers[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
