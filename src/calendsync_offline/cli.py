"""
Command-line interface for CalendSync Offline.
"""

import asyncio
import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from calendsync_offline.db import EntryDatabase
from calendsync_offline.models import DEFAULT_BASE_URL
from calendsync_offline.models import DEFAULT_CONFIG
from calendsync_offline.models import DEFAULT_DB_PATH
from calendsync_offline.models import FULL_SYNC_BUFFER_DAYS
from calendsync_offline.models import MAX_RETRIES
from calendsync_offline.models import LocalEntry
from calendsync_offline.models import OfflineSyncError
from calendsync_offline.models import PushChannelError
from calendsync_offline.models import SyncConfig
from calendsync_offline.models import SyncStatus
from calendsync_offline.push import PushListener
from calendsync_offline.sync import LiveUpdateReconciler
from calendsync_offline.sync import OfflineCalendar
from calendsync_offline.sync import OfflineSynchronizer
from calendsync_offline.sync import SyncEngine

CONFIG_SECTION = "calendsync"

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Offline-first calendar client: inspect and flush the local change queue.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    db_path: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    db: Annotated[
        Path | None,
        typer.Option("--db", help=f"Local database path (default: {DEFAULT_DB_PATH})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
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


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "yes", "true", "on"):
        return True
    if lowered in ("0", "no", "false", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _build_config(base_url: str | None = None) -> SyncConfig:
    """Merge config file values with command-line overrides."""
    config_file = _load_config_file(state.config_path)

    db_path = state.db_path
    if db_path is None:
        db_path = Path(config_file.get("db_path", DEFAULT_DB_PATH)).expanduser()

    try:
        retry_delay = config_file.get("retry_base_delay")
        return SyncConfig(
            base_url=base_url or config_file.get("base_url", DEFAULT_BASE_URL),
            db_path=db_path,
            max_retries=int(config_file.get("max_retries", MAX_RETRIES)),
            request_timeout=float(config_file.get("request_timeout", 10.0)),
            retry_base_delay=float(retry_delay) if retry_delay else None,
            fail_fast_client_errors=_parse_bool(
                config_file.get("fail_fast_client_errors", "false")
            ),
            session_cookie=config_file.get("session_cookie") or None,
            verbose=state.verbose,
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/] invalid value in {state.config_path}: {e}")
        raise typer.Exit(1) from None


def _require_db(cfg: SyncConfig) -> None:
    if not cfg.db_path.exists():
        console.print(
            f"[yellow]No local database at[/] {cfg.db_path} "
            "[yellow](nothing recorded yet).[/]"
        )
        raise typer.Exit(0)


def _entry_date(entry: LocalEntry) -> str:
    if entry.end_date and entry.end_date != entry.start_date:
        return f"{entry.start_date} → {entry.end_date}"
    if entry.start_time:
        return f"{entry.start_date} {entry.start_time}"
    return entry.start_date


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration, queue size and entry counts by sync status."""
    cfg = _build_config()
    config_exists = state.config_path.exists()
    db_exists = cfg.db_path.exists()

    info = Text()
    info.append("  Config:   ", style="bold")
    info.append(str(state.config_path) + " ")
    info.append("✓" if config_exists else "(not found)", style="green" if config_exists else "red")
    info.append("\n  Database: ", style="bold")
    info.append(str(cfg.db_path) + " ")
    info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    info.append("\n  Server:   ", style="bold")
    info.append(cfg.base_url)

    console.print(Panel(info, title="[bold]CalendSync Offline — Status[/bold]"))

    if not db_exists:
        console.print(
            "[yellow]No local database yet. It is created on the first edit or by[/] "
            "[cyan]calendsync-offline listen[/][yellow].[/]"
        )
        return

    with EntryDatabase(cfg.db_path) as db:
        counts = db.count_entries_by_status()
        pending_ops = db.count_operations()

    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column(justify="right")
    for sync_status in SyncStatus:
        table.add_row(sync_status.value.capitalize(), str(counts.get(sync_status.value, 0)))
    queued = Text(str(pending_ops))
    if pending_ops:
        queued.stylize("bold yellow")
    else:
        queued.append(" ✓", style="green")
    table.add_row("Queued operations", queued)

    console.print(Panel(table, title="[bold]Local entries[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommands: queue / conflicts
# ---------------------------------------------------------------------------


@app.command()
def queue() -> None:
    """List queued operations in replay order."""
    from calendsync_offline.sync.operations import sort_by_created_at

    cfg = _build_config()
    _require_db(cfg)
    with EntryDatabase(cfg.db_path) as db:
        ops = sort_by_created_at(db.all_operations())

    if not ops:
        console.print("[green]Queue is empty, everything is synced.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("#", justify="right")
    table.add_column("Operation")
    table.add_column("Entry")
    table.add_column("Queued at")
    table.add_column("Retries", justify="right")
    table.add_column("Last error", style="red")
    for n, op in enumerate(ops, start=1):
        table.add_row(
            str(n),
            op.operation.value,
            op.entry_id,
            op.created_at,
            f"{op.retry_count}/{cfg.max_retries}",
            op.last_error or "",
        )
    console.print(Panel(table, title=f"[bold]Pending operations ({len(ops)})[/bold]", expand=False))


@app.command()
def conflicts() -> None:
    """List entries whose changes could not be synced."""
    cfg = _build_config()
    _require_db(cfg)
    with EntryDatabase(cfg.db_path) as db:
        entries = db.entries_by_status(SyncStatus.CONFLICT)

    if not entries:
        console.print("[green]No conflicts.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Entry")
    table.add_column("Title")
    table.add_column("Date")
    table.add_column("Failed")
    table.add_column("Error", style="red")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.title,
            _entry_date(entry),
            entry.conflict_operation.value if entry.conflict_operation else "—",
            entry.last_sync_error or "",
        )
    console.print(Panel(table, title=f"[bold red]Conflicts ({len(entries)})[/bold red]", expand=False))
    console.print(
        "Resolve with [cyan]calendsync-offline retry ENTRY_ID[/] "
        "or [cyan]calendsync-offline discard ENTRY_ID[/]."
    )


# ---------------------------------------------------------------------------
# Subcommand: flush
# ---------------------------------------------------------------------------

_BASE_URL_OPT = Annotated[
    str | None,
    typer.Option("--base-url", "-u", help="Server base URL (overrides config)"),
]


@app.command()
def flush(base_url: _BASE_URL_OPT = None) -> None:
    """Replay queued operations against the server once."""
    from calendsync_offline.preflight import run_preflight_checks

    cfg = _build_config(base_url)
    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    try:
        stats = asyncio.run(OfflineSynchronizer(cfg).run())
    except OfflineSyncError as e:
        console.print(f"[bold red]Flush failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Synced", str(stats.synced))
    results.add_row("Deleted", str(stats.deleted))
    results.add_row("Will retry", str(stats.retried))
    conflict_val = Text(str(stats.conflicts))
    if stats.conflicts == 0:
        conflict_val.append(" ✓", style="green")
    else:
        conflict_val.stylize("bold red")
    results.add_row("Conflicts", conflict_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if stats.conflicts:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: pull
# ---------------------------------------------------------------------------


@app.command()
def pull(
    calendar_id: Annotated[str, typer.Argument(help="Calendar to download")],
    day: Annotated[
        str | None,
        typer.Option("--day", help="Centre of the downloaded range (YYYY-MM-DD, default today)"),
    ] = None,
    buffer_days: Annotated[
        int, typer.Option("--buffer-days", help="Days fetched either side of --day")
    ] = FULL_SYNC_BUFFER_DAYS,
    base_url: _BASE_URL_OPT = None,
) -> None:
    """Replace the local copy of a calendar with the server's entries.

    Entries with unsent local edits or conflicts are kept as they are.
    """
    cfg = _build_config(base_url)

    async def _pull() -> int:
        with EntryDatabase(cfg.db_path) as db:
            async with SyncEngine(db, config=cfg) as engine:
                calendar = OfflineCalendar(engine, calendar_id)
                return await calendar.full_sync(day, buffer_days)

    try:
        written = asyncio.run(_pull())
    except (OfflineSyncError, httpx.HTTPError) as e:
        console.print(f"[bold red]Pull failed:[/] {e}")
        raise typer.Exit(1) from None
    noun = "entry" if written == 1 else "entries"
    console.print(f"Stored [green]{written}[/] {noun} for [cyan]{calendar_id}[/].")


# ---------------------------------------------------------------------------
# Subcommand: listen
# ---------------------------------------------------------------------------


@app.command()
def listen(
    calendar_id: Annotated[str, typer.Argument(help="Calendar to subscribe to")],
    base_url: _BASE_URL_OPT = None,
) -> None:
    """Apply live updates from the server until interrupted."""
    cfg = _build_config(base_url)

    async def _listen() -> int:
        with EntryDatabase(cfg.db_path) as db:
            async with SyncEngine(db, config=cfg) as engine:
                await OfflineCalendar(engine, calendar_id).initialize()
            listener = PushListener(
                cfg.base_url,
                calendar_id,
                LiveUpdateReconciler(db),
                db,
                session_cookie=cfg.session_cookie,
            )
            await listener.run()
            return listener.events_applied

    console.print(f"Listening to [cyan]{calendar_id}[/] on {cfg.base_url} (Ctrl+C to stop)")
    try:
        applied = asyncio.run(_listen())
    except PushChannelError as e:
        console.print(f"[bold red]Push channel lost:[/] {e}")
        raise typer.Exit(1) from None
    except (OfflineSyncError, httpx.HTTPError) as e:
        console.print(f"[bold red]Listen failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/]")
        raise typer.Exit(130) from None
    console.print(f"Applied {applied} event(s).")


# ---------------------------------------------------------------------------
# Subcommands: retry / discard
# ---------------------------------------------------------------------------

_ENTRY_ARG = Annotated[str, typer.Argument(help="Id of the conflicting entry")]


def _resolve_conflict(entry_id: str, retry: bool, base_url: str | None) -> LocalEntry | None:
    cfg = _build_config(base_url)
    _require_db(cfg)

    async def _run() -> LocalEntry | None:
        with EntryDatabase(cfg.db_path) as db:
            entry = db.get_entry(entry_id)
            calendar_id = entry.calendar_id if entry else ""
            async with SyncEngine(db, config=cfg) as engine:
                calendar = OfflineCalendar(engine, calendar_id)
                if retry:
                    return await calendar.retry_conflict(entry_id)
                return await calendar.discard_conflict(entry_id)

    try:
        return asyncio.run(_run())
    except OfflineSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


@app.command()
def retry(entry_id: _ENTRY_ARG, base_url: _BASE_URL_OPT = None) -> None:
    """Queue a conflicting change again and try to flush it right away."""
    entry = _resolve_conflict(entry_id, retry=True, base_url=base_url)
    console.print(
        f"Re-queued [cyan]{entry.pending_operation.value}[/] for [bold]{entry.title}[/] ({entry_id})."
    )


@app.command()
def discard(entry_id: _ENTRY_ARG) -> None:
    """Drop a conflicting local change."""
    entry = _resolve_conflict(entry_id, retry=False, base_url=None)
    if entry is None:
        console.print(f"Removed unsynced entry {entry_id}.")
    else:
        console.print(f"Kept [bold]{entry.title}[/] as last synced; local change dropped.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
