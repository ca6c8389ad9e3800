"""
Main CLI application using Typer.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import pendulum
import typer
from pendulum import DateTime
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..adapters.booking_store import BookingStore
from ..adapters.credential_store import CredentialStore, TokenCipher, load_encryption_key
from ..adapters.database import Database
from ..adapters.graph_client import GraphCalendarClient
from ..adapters.mock_graph_client import MockGraphClient, MockOAuthClient
from ..adapters.oauth_client import OAuthClient
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import BookingSyncError, InvalidInputError
from ..domain.models import SlotResult, TimeRange
from ..logging_config import setup_logging
from ..services.busy_cache import BusyCache
from ..services.conflict_guard import BookingConflictGuard
from ..services.provider_client import ProviderClient
from ..services.scheduler import SchedulingOrchestrator
from ..services.sync_queue import SyncRetryQueue
from ..services.token_manager import TokenRefreshManager

app = typer.Typer(
    name="bookingsync",
    help="Booking availability with Microsoft Graph calendar sync",
    add_completion=False,
)

console = Console()


@dataclass
class CLIState:
    config_file: Optional[Path] = None
    mock: bool = False
    mock_calendar: Optional[Path] = None


def _load_config(state: CLIState) -> AppConfig:
    return AppConfig.load_from_yaml(state.config_file or get_default_config_path())


def _build_orchestrator(config: AppConfig, state: CLIState) -> SchedulingOrchestrator:
    """Wire stores, provider access and services from the configuration."""
    database = Database(config.storage.database_path)
    cipher = TokenCipher(load_encryption_key(config.storage.resolve_encryption_key()))
    credentials = CredentialStore(database, cipher)
    bookings = BookingStore(database)

    if state.mock:
        api = MockGraphClient(data_file=state.mock_calendar)
        authorization = MockOAuthClient()
    else:
        timeout = config.sync.provider_timeout_seconds
        api = GraphCalendarClient(timeout=timeout)
        authorization = OAuthClient(config.provider, timeout=timeout)

    token_manager = TokenRefreshManager(
        credentials,
        authorization,
        refresh_skew_minutes=config.sync.refresh_skew_minutes,
    )

    return SchedulingOrchestrator(
        policy_for=config.policy_for,
        bookings=bookings,
        guard=BookingConflictGuard(database, bookings),
        credentials=credentials,
        token_manager=token_manager,
        provider=ProviderClient(token_manager, api),
        authorization=authorization,
        busy_cache=BusyCache(ttl_seconds=config.sync.busy_cache_ttl_seconds),
        sync_queue=SyncRetryQueue(database, config.sync.retry_delays_seconds),
        sync_workers=config.sync.sync_workers,
    )


def _orchestrator(ctx: typer.Context) -> tuple[AppConfig, SchedulingOrchestrator]:
    state: CLIState = ctx.obj
    try:
        config = _load_config(state)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if state.mock:
        console.print("[yellow]⚠  Mock mode: no calls to Microsoft Graph[/yellow]")

    try:
        orchestrator = _build_orchestrator(config, state)
    except BookingSyncError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    # Pending calendar pushes finish before the command exits
    ctx.call_on_close(orchestrator.close)
    return config, orchestrator


def _parse_instant(value: str, tz: str) -> DateTime:
    """Parse an ISO 8601 instant; values without an offset are read in ``tz``."""
    try:
        parsed = pendulum.parse(value, tz=tz)
    except ValueError as e:
        raise InvalidInputError(f"Invalid date/time '{value}': {e}") from e
    if not isinstance(parsed, DateTime):
        raise InvalidInputError(f"Expected a date and time, got '{value}'")
    return parsed


def _host_timezone(config: AppConfig, host_id: str) -> str:
    host = config.find_host(host_id)
    return (host.timezone if host and host.timezone else None) or config.timezone


def _fail(error: BookingSyncError) -> NoReturn:
    console.print(f"[bold red]Error ({error.http_status}):[/bold red] {error}")
    raise typer.Exit(1)


def _render_slots(result: SlotResult, tz: str) -> None:
    table = Table(
        title=f"{result.host_id} · {result.date.isoformat()} · {result.duration} min",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Start", style="bold")
    table.add_column("End")
    table.add_column("Status")

    for slot in result.slots:
        table.add_row(
            slot.start.in_timezone(tz).format("HH:mm"),
            slot.end.in_timezone(tz).format("HH:mm"),
            "[green]available[/green]" if slot.available else "[red]busy[/red]",
        )

    console.print()
    console.print(table)
    if result.external_sync.degraded:
        console.print(
            f"[yellow]⚠ External calendar {result.external_sync.value}; "
            f"showing internal bookings only.[/yellow]"
        )
    console.print()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml")] = None,
    mock: Annotated[bool, typer.Option("--mock", help="Use the in-memory provider instead of Microsoft Graph.")] = False,
    mock_calendar: Annotated[Optional[Path], typer.Option("--mock-calendar", help="JSON file with busy blocks for --mock.")] = None,
    log_level: Annotated[Optional[str], typer.Option("--log-level", help="Logging level (default: BOOKINGSYNC_LOG_LEVEL or WARNING)")] = None,
):
    """
    Compute bookable slots, create bookings and keep host calendars in sync.
    """
    setup_logging(log_level)
    ctx.obj = CLIState(config_file=config_file, mock=mock, mock_calendar=mock_calendar)


@app.command()
def slots(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id from the config")],
    date: Annotated[str, typer.Argument(help="Day (YYYY-MM-DD)")],
    duration: Annotated[int, typer.Option("--duration", "-d", help="Slot length in minutes (15-480)")] = 60,
    as_json: Annotated[bool, typer.Option("--json", help="Print the result as JSON")] = False,
):
    """
    List candidate slots of a host for one day.

    Examples:

        bookingsync slots anna 2024-01-15
        bookingsync slots anna 2024-01-15 --duration 30 --json
    """
    config, orchestrator = _orchestrator(ctx)
    try:
        result = orchestrator.get_available_slots(host, date, duration)
    except BookingSyncError as e:
        _fail(e)

    if as_json:
        console.print_json(data=result.to_dict())
        return

    if not result.slots:
        console.print("[yellow]⚠ No slots on this day.[/yellow]")
        return
    _render_slots(result, _host_timezone(config, host))


@app.command()
def check(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id")],
    start: Annotated[str, typer.Argument(help="Start (ISO 8601)")],
    end: Annotated[str, typer.Argument(help="End (ISO 8601)")],
):
    """
    Check whether an explicit range is free.
    """
    config, orchestrator = _orchestrator(ctx)
    tz = _host_timezone(config, host)
    try:
        result = orchestrator.check_availability(host, _parse_instant(start, tz), _parse_instant(end, tz))
    except BookingSyncError as e:
        _fail(e)

    if result.available:
        console.print("[bold green]✓ Available[/bold green]")
    else:
        console.print("[bold red]✗ Not available[/bold red]")
    if result.external_sync.degraded:
        console.print(f"[yellow]⚠ External calendar {result.external_sync.value}[/yellow]")


@app.command()
def book(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id")],
    client: Annotated[str, typer.Argument(help="Client id")],
    start: Annotated[str, typer.Argument(help="Start (ISO 8601)")],
    end: Annotated[str, typer.Argument(help="End (ISO 8601)")],
    title: Annotated[str, typer.Option("--title", help="Event title")] = "",
    description: Annotated[str, typer.Option("--description", help="Event description")] = "",
    location: Annotated[str, typer.Option("--location", help="Event location")] = "",
):
    """
    Book a range for a client.
    """
    config, orchestrator = _orchestrator(ctx)
    tz = _host_timezone(config, host)
    try:
        start_at = _parse_instant(start, tz)
        end_at = _parse_instant(end, tz)
        if start_at >= end_at:
            raise InvalidInputError("Start must be before end")
        booking = orchestrator.create_booking(
            host,
            client,
            TimeRange(start=start_at, end=end_at),
            {"title": title, "description": description, "location": location},
        )
    except BookingSyncError as e:
        _fail(e)

    console.print(Panel.fit(
        f"[bold green]✓ Booked[/bold green]\n\n"
        f"[bold]Id:[/bold] {booking.id}\n"
        f"[bold]Host:[/bold] {booking.host_id}\n"
        f"[bold]Time:[/bold] {booking.time_range.start.in_timezone(tz).format('YYYY-MM-DD HH:mm')}"
        f" - {booking.time_range.end.in_timezone(tz).format('HH:mm')}",
        title="Booking",
    ))


@app.command()
def reschedule(
    ctx: typer.Context,
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    start: Annotated[str, typer.Argument(help="New start (ISO 8601)")],
    end: Annotated[str, typer.Argument(help="New end (ISO 8601)")],
    host: Annotated[Optional[str], typer.Option("--host", help="Host id, for reading times in the host's timezone")] = None,
):
    """
    Move a booking to a new range.

    Examples:

        bookingsync reschedule 4f2a... 2024-01-15T14:00 2024-01-15T14:30 --host anna
    """
    config, orchestrator = _orchestrator(ctx)
    tz = _host_timezone(config, host) if host else config.timezone
    try:
        start_at = _parse_instant(start, tz)
        end_at = _parse_instant(end, tz)
        if start_at >= end_at:
            raise InvalidInputError("Start must be before end")
        booking = orchestrator.reschedule_booking(booking_id, TimeRange(start=start_at, end=end_at))
    except BookingSyncError as e:
        _fail(e)

    tz = _host_timezone(config, booking.host_id)
    console.print(
        f"[green]✓ Moved booking {booking.id} to "
        f"{booking.time_range.start.in_timezone(tz).format('YYYY-MM-DD HH:mm')}"
        f" - {booking.time_range.end.in_timezone(tz).format('HH:mm')}[/green]"
    )


@app.command()
def cancel(
    ctx: typer.Context,
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    reason: Annotated[Optional[str], typer.Option("--reason", help="Cancellation reason")] = None,
):
    """
    Cancel a booking. Cancelling twice is harmless.
    """
    _, orchestrator = _orchestrator(ctx)
    try:
        booking = orchestrator.cancel_booking(booking_id, reason)
    except BookingSyncError as e:
        _fail(e)
    console.print(f"[green]✓ Booking {booking.id} is {booking.status.value.lower()}[/green]")


@app.command()
def connect(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id")],
):
    """
    Print the consent URL that connects a host's calendar.
    """
    _, orchestrator = _orchestrator(ctx)
    try:
        url = orchestrator.connect_calendar(host)
    except BookingSyncError as e:
        _fail(e)

    console.print("\nOpen this URL, sign in and pass the returned code to [bold]authorize[/bold]:\n")
    console.print(url, soft_wrap=True)
    console.print()


@app.command()
def authorize(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id")],
    code: Annotated[str, typer.Argument(help="Authorization code from the redirect")],
):
    """
    Finish connecting a calendar with the authorization code.
    """
    _, orchestrator = _orchestrator(ctx)
    try:
        status = orchestrator.complete_connection(host, code)
    except BookingSyncError as e:
        _fail(e)
    console.print(f"[green]✓ Connected {status.provider} calendar {status.account_email or ''}[/green]")


@app.command()
def disconnect(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id")],
):
    """
    Remove a host's calendar connection and pending sync jobs.
    """
    _, orchestrator = _orchestrator(ctx)
    try:
        removed = orchestrator.disconnect_calendar(host)
    except BookingSyncError as e:
        _fail(e)
    if removed:
        console.print(f"[green]✓ Disconnected calendar of {host}[/green]")
    else:
        console.print(f"[yellow]{host} had no calendar connected.[/yellow]")


@app.command()
def status(
    ctx: typer.Context,
    host: Annotated[str, typer.Argument(help="Host id")],
):
    """
    Show a host's calendar connection.
    """
    _, orchestrator = _orchestrator(ctx)
    try:
        result = orchestrator.calendar_status(host)
    except BookingSyncError as e:
        _fail(e)

    if not result.connected:
        console.print(f"[yellow]{host}: no calendar connected[/yellow]")
        return

    table = Table(title=f"Calendar of {host}", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Provider", result.provider or "")
    table.add_row("Account", result.account_email or "")
    table.add_row("State", result.state.value if result.state else "")
    table.add_row("Token expired", "yes" if result.expired else "no")
    table.add_row("Sync enabled", "yes" if result.sync_enabled else "[red]no[/red]")
    console.print()
    console.print(table)
    console.print()


@app.command()
def sync(ctx: typer.Context):
    """
    Deliver due calendar pushes, updates and deletes.
    """
    _, orchestrator = _orchestrator(ctx)
    try:
        delivered = orchestrator.process_sync_queue()
    except BookingSyncError as e:
        _fail(e)
    console.print(f"[green]✓ {delivered} job(s) delivered[/green]")


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]bookingsync[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
