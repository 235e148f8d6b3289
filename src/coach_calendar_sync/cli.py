"""
Command-line interface for Coach Calendar Sync.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from coach_calendar_sync.db import AppDatabase
from coach_calendar_sync.db import SettingsStore
from coach_calendar_sync.handlers import CalendarHandlers
from coach_calendar_sync.models import DEFAULT_DB
from coach_calendar_sync.models import CalendarSyncError
from coach_calendar_sync.models import parse_timestamp
from coach_calendar_sync.settings import CLIENT_SECRET_KEY
from coach_calendar_sync.settings import KNOWN_KEYS
from coach_calendar_sync.settings import TOKENS_KEY
from coach_calendar_sync.settings import load_settings
from coach_calendar_sync.sync import CalendarSyncService

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Mirror training sessions to Google Calendar and send invitations.",
)
config_app = typer.Typer(no_args_is_help=True, help="Read and write stored settings.")
app.add_typer(config_app, name="config")

console = Console()

_SECRET_KEYS = {CLIENT_SECRET_KEY, TOKENS_KEY}


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    db_path: Path = field(default_factory=lambda: DEFAULT_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    db: Annotated[
        Path,
        typer.Option("--db", help=f"Application database path (default: {DEFAULT_DB})"),
    ] = DEFAULT_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.db_path = db
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


def _validate_timestamp(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        parse_timestamp(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid ISO-8601 timestamp: {value!r}") from None
    return value


def _preflight() -> None:
    from coach_calendar_sync.preflight import run_preflight_checks

    with AppDatabase(state.db_path) as db:
        settings = load_settings(SettingsStore(db))
    if not run_preflight_checks(state.db_path, settings, console):
        raise typer.Exit(1)


def _run(operation: Callable[[CalendarHandlers], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """Open the database and service, run one handler call, and close both."""

    async def runner():
        with AppDatabase(state.db_path) as db:
            async with CalendarSyncService(db) as service:
                return await operation(CalendarHandlers(service))

    try:
        return asyncio.run(runner())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None


def _check(result: dict[str, Any]) -> dict[str, Any]:
    if not result.get("ok"):
        console.print(f"[bold red]Error:[/] {result.get('error', 'unknown error')}")
        raise typer.Exit(1)
    return result


def _short_time(value: str | None) -> str:
    if not value:
        return "—"
    try:
        return parse_timestamp(value).astimezone().strftime("%a %Y-%m-%d %H:%M")
    except ValueError:
        # all-day events carry a bare date
        return value


_START_ARG = Annotated[
    str, typer.Argument(help="Range start (ISO-8601)", callback=_validate_timestamp)
]
_END_ARG = Annotated[str, typer.Argument(help="Range end (ISO-8601)", callback=_validate_timestamp)]
_SESSION_ARG = Annotated[str, typer.Argument(help="Session id")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


# ---------------------------------------------------------------------------
# Subcommands: credential
# ---------------------------------------------------------------------------


@app.command()
def auth() -> None:
    """Authorize access to Google Calendar (opens a browser if needed)."""
    _preflight()

    async def operation(handlers: CalendarHandlers) -> dict[str, Any]:
        try:
            await handlers.service.credentials.get_client()
        except CalendarSyncError as e:
            return {"ok": False, "error": str(e)}
        return {"ok": True}

    _check(_run(operation))
    console.print("[green]✓[/] Google Calendar access authorized")


@app.command()
def disconnect() -> None:
    """Forget the stored Google credential."""
    _check(_run(lambda handlers: handlers.disconnect()))
    console.print("[green]✓[/] Disconnected from Google Calendar")


# ---------------------------------------------------------------------------
# Subcommands: reads
# ---------------------------------------------------------------------------


@app.command()
def sessions(start: _START_ARG, end: _END_ARG) -> None:
    """List local sessions overlapping a time range."""
    result = _check(_run(lambda handlers: handlers.list_sessions(start, end)))

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Start")
    table.add_column("Trainee")
    table.add_column("Email")
    table.add_column("Status")
    table.add_column("Remote event", style="dim")
    table.add_column("Id", style="dim")
    for row in result["sessions"]:
        name = " ".join(p for p in (row["firstName"], row["lastName"]) if p) or "—"
        table.add_row(
            _short_time(row["startTime"]),
            name,
            row["email"] or "—",
            row["status"],
            row["remoteEventId"] or "—",
            row["id"],
        )
    console.print(Panel(table, title=f"[bold]Sessions[/bold] ({len(result['sessions'])})"))


@app.command()
def events(start: _START_ARG, end: _END_ARG) -> None:
    """List events on the remote calendar in a time range."""
    _preflight()
    result = _check(_run(lambda handlers: handlers.list_events(start, end)))

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Summary")
    table.add_column("Id", style="dim")
    for item in result["items"]:
        table.add_row(
            _short_time(item["start"]),
            _short_time(item["end"]),
            item["summary"] + (" [dim](all day)[/dim]" if item["allDay"] else ""),
            item["id"],
        )
    console.print(Panel(table, title=f"[bold]Remote events[/bold] ({len(result['items'])})"))


@app.command()
def history(
    start: Annotated[
        str | None,
        typer.Option("--start", help="First day, inclusive (default: 30 days ago)"),
    ] = None,
    end: Annotated[
        str | None,
        typer.Option("--end", help="Last day, inclusive (default: today)"),
    ] = None,
) -> None:
    """Show sessions with invitations sent in a time range."""
    start = _validate_timestamp(start)
    end = _validate_timestamp(end)
    result = _check(_run(lambda handlers: handlers.history(start, end)))

    if not result["items"]:
        console.print("[yellow]No invitations sent in this range.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Session start")
    table.add_column("Location")
    table.add_column("Participants", justify="right")
    table.add_column("First sent")
    table.add_column("Last sent")
    for row in result["items"]:
        table.add_row(
            _short_time(row["start_time"]),
            row["location"] or "—",
            str(row["participants"]),
            _short_time(row["first_sent_at"]),
            _short_time(row["last_sent_at"]),
        )
    console.print(Panel(table, title="[bold]Invitation history[/bold]"))


# ---------------------------------------------------------------------------
# Subcommands: writes
# ---------------------------------------------------------------------------


@app.command()
def upsert(
    session_id: _SESSION_ARG,
    invite: Annotated[
        bool, typer.Option("--invite", help="Add the trainee as attendee and notify them")
    ] = False,
) -> None:
    """Create or update the remote event for one session."""
    _preflight()
    result = _check(
        _run(lambda handlers: handlers.upsert_session(session_id, include_attendee=invite))
    )
    console.print(f"[green]✓[/] Remote event [cyan]{result['remoteEventId']}[/]")


@app.command()
def delete(session_id: _SESSION_ARG) -> None:
    """Delete the remote event for one session."""
    _preflight()
    result = _check(_run(lambda handlers: handlers.delete_session_event(session_id)))
    if result.get("skipped"):
        console.print("[yellow]Session has no remote event, nothing to delete.[/]")
    else:
        console.print("[green]✓[/] Remote event deleted")


@app.command()
def send(session_id: _SESSION_ARG) -> None:
    """Send a calendar invitation for one session."""
    _preflight()
    result = _check(_run(lambda handlers: handlers.send_invite(session_id)))
    console.print(f"[green]✓[/] Invitation sent (event [cyan]{result['remoteEventId']}[/])")


@app.command("send-all")
def send_all(start: _START_ARG, end: _END_ARG, yes: _YES = False) -> None:
    """Send invitations for every session in a time range."""
    _preflight()

    if not yes:
        listing = _check(_run(lambda handlers: handlers.list_sessions(start, end)))
        count = len(listing["sessions"])
        if not count:
            console.print("[yellow]No sessions in this range.[/]")
            return
        info = Text()
        info.append("  Range:     ", style="bold")
        info.append(f"{start} → {end}\n")
        info.append("  Sessions:  ", style="bold")
        info.append(str(count))
        console.print(Panel(info, title="[bold]Send invitations[/bold]"))
        typer.confirm("Proceed?", abort=True)

    result = _check(_run(lambda handlers: handlers.send_all(start, end)))

    # -- Results table -------------------------------------------------------
    failures = [r for r in result["results"] if not r["ok"]]
    if failures:
        table = Table(show_header=True, header_style="bold red", box=None, padding=(0, 2))
        table.add_column("Session")
        table.add_column("Error")
        for row in failures:
            table.add_row(row["sessionId"], row.get("error", ""))
        console.print(Panel(table, title="[bold red]Failed[/bold red]", expand=False))

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Sent", str(result["created"]))
    results.add_row("Total", str(result["total"]))
    error_val = Text(str(len(failures)))
    if not failures:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)
    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if failures:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and credential state."""
    if not state.db_path.exists():
        console.print(
            "[yellow]No database yet — run[/] "
            "[cyan]coach-calendar-sync config set[/] "
            "[yellow]to create it.[/]"
        )
        return

    with AppDatabase(state.db_path) as db:
        store = SettingsStore(db)
        settings = load_settings(store)
        has_tokens = bool(store.get(TOKENS_KEY))

    info = Text()
    info.append("  Database:  ", style="bold")
    info.append(f"{state.db_path}\n")
    info.append("  Client id: ", style="bold")
    if settings.client_id:
        info.append(f"{settings.client_id}\n")
    else:
        info.append("not configured\n", style="bold red")
    info.append("  Access:    ", style="bold")
    if has_tokens:
        info.append("authorized\n", style="green")
    else:
        info.append("not authorized\n", style="yellow")
    info.append("  Calendar:  ", style="bold")
    info.append(f"{settings.calendar_id}\n")
    info.append("  Timezone:  ", style="bold")
    info.append(f"{settings.timezone}\n")
    info.append("  Interval:  ", style="bold")
    info.append(f"{settings.min_interval_ms} ms between invitations")

    console.print(Panel(info, title="[bold]Coach Calendar Sync — Status[/bold]"))


# ---------------------------------------------------------------------------
# Subcommands: config
# ---------------------------------------------------------------------------


def _display_value(key: str, raw: str | None) -> str:
    if raw is None:
        return "—"
    if key in _SECRET_KEYS:
        return "[dim](hidden)[/dim]"
    return raw


@config_app.command("get")
def config_get(key: Annotated[str, typer.Argument(help="Setting key")]) -> None:
    """Print one stored setting."""
    with AppDatabase(state.db_path) as db:
        value = SettingsStore(db).get(key)
    if value is None:
        console.print(f"[yellow]{key} is not set[/]")
        raise typer.Exit(1)
    console.print(value if isinstance(value, str) else json.dumps(value))


@config_app.command("set")
def config_set(
    key: Annotated[str, typer.Argument(help="Setting key")],
    value: Annotated[str, typer.Argument(help="Value; JSON numbers and objects are decoded")],
) -> None:
    """Store one setting."""
    if key not in KNOWN_KEYS:
        console.print(f"[yellow]Warning:[/] [cyan]{key}[/] is not a recognised setting")
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = value
    with AppDatabase(state.db_path) as db:
        SettingsStore(db).set(key, parsed)
    console.print(f"[green]✓[/] {key} updated")


@config_app.command("list")
def config_list() -> None:
    """List recognised settings and any others stored."""
    with AppDatabase(state.db_path) as db:
        stored = dict(SettingsStore(db).items())

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Key")
    table.add_column("Value")
    for key in KNOWN_KEYS:
        table.add_row(key, _display_value(key, stored.get(key)))
    for key in sorted(set(stored) - set(KNOWN_KEYS)):
        table.add_row(f"[dim]{key}[/dim]", _display_value(key, stored[key]))
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
