"""
Command-line interface for calendar-notify.
"""

import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from calendar_notify.catalog import load_batch
from calendar_notify.db import LedgerDatabase
from calendar_notify.db import query_status
from calendar_notify.engine import OccurrenceProcessor
from calendar_notify.ledger import NotificationLedger
from calendar_notify.models import DEFAULT_CONFIG
from calendar_notify.models import DEFAULT_STATE_DB
from calendar_notify.models import CalendarArtifact
from calendar_notify.models import CalendarNotifyError
from calendar_notify.models import Channel
from calendar_notify.models import NotifyConfig
from calendar_notify.models import ProcessingResult

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Build appointment calendars with personalised alarms and update sequencing.",
)

console = Console()

CONFIG_SECTION = "calendar-notify"


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
        typer.Option("--state-db", help=f"Ledger DB path (default: {DEFAULT_STATE_DB})"),
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
        force=True,
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _state_db_path(config_file: dict[str, str]) -> Path:
    if state.state_db is not None:
        return state.state_db
    if config_file.get("state_db"):
        return Path(config_file["state_db"]).expanduser()
    return DEFAULT_STATE_DB


def _build_config(
    channel: Channel,
    output_dir: Path | None,
    timezone: str | None,
    dry_run: bool,
    yes: bool,
) -> NotifyConfig:
    config_file = _load_config_file(state.config_path)
    if output_dir is None and config_file.get("output_dir"):
        output_dir = Path(config_file["output_dir"]).expanduser()
    return NotifyConfig(
        state_db_path=_state_db_path(config_file),
        channel=channel,
        timezone=timezone or config_file.get("timezone", "UTC"),
        time_format=config_file.get("time_format", "%H:%M"),
        output_dir=output_dir,
        dry_run=dry_run,
        verbose=state.verbose,
        yes=yes,
    )


def _artifact_filename(artifact: CalendarArtifact) -> str:
    return f"{artifact.user_id}-{artifact.instance_id}-{artifact.channel.value}.ics"


def _write_calendars(output_dir: Path, result: ProcessingResult) -> int:
    """Write one .ics file per artifact; each file is swapped into place whole."""
    output_dir.mkdir(parents=True, exist_ok=True)
    for artifact in result.artifacts:
        target = output_dir / _artifact_filename(artifact)
        partial = target.with_name(target.name + ".part")
        partial.write_bytes(artifact.to_ical())
        partial.replace(target)
    return len(result.artifacts)


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------

_CHANNEL_OPT = Annotated[
    Channel,
    typer.Option("--channel", help="Delivery channel whose ledger is advanced"),
]


@app.command()
def calendars(
    batch_file: Annotated[
        Path, typer.Argument(help="JSON export of occurrences and alarm rules", exists=True)
    ],
    channel: _CHANNEL_OPT = Channel.EMAIL,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Directory for the generated .ics files"),
    ] = None,
    timezone: Annotated[
        str | None,
        typer.Option("--timezone", help="IANA zone of the occurrence wall-clock times"),
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", "-n", help="Preview without advancing the ledger")
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
) -> None:
    """Build one calendar per occurrence and advance the ledger for stale ones."""
    cfg = _build_config(channel, output_dir, timezone, dry_run, yes)
    if cfg.output_dir is None and not cfg.dry_run:
        console.print(
            "[bold red]Error:[/] an output directory is required "
            "(--output-dir or output_dir in the config file) unless --dry-run is given"
        )
        raise typer.Exit(1)

    try:
        occurrences, catalog = load_batch(batch_file)
    except CalendarNotifyError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None

    # -- Info panel ----------------------------------------------------------
    info = Text()
    info.append("  Batch:     ", style="bold")
    info.append(f"{batch_file} ({len(occurrences)} occurrence(s))\n")
    info.append("  Ledger:    ", style="bold")
    info.append(f"{cfg.state_db_path}\n")
    info.append("  Channel:   ", style="bold")
    info.append(cfg.channel.value, style="cyan")
    info.append("\n  Timezone:  ", style="bold")
    info.append(cfg.timezone)
    if cfg.output_dir:
        info.append("\n  Output:    ", style="bold")
        info.append(str(cfg.output_dir))
    if cfg.dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")

    console.print(Panel(info, title="[bold]Calendar Notify[/bold]"))

    if not cfg.yes and not cfg.dry_run:
        typer.confirm("Proceed?", abort=True)

    # -- Run -----------------------------------------------------------------
    written = 0

    def deliver(result: ProcessingResult) -> None:
        nonlocal written
        written = _write_calendars(cfg.output_dir, result)

    try:
        with LedgerDatabase(cfg.state_db_path) as ledger_db:
            processor = OccurrenceProcessor(catalog, NotificationLedger(ledger_db), cfg)
            result = processor.process(occurrences, deliver=None if cfg.dry_run else deliver)
    except CalendarNotifyError as e:
        console.print(f"[bold red]Batch failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e

    # -- Results table -------------------------------------------------------
    stats = processor.stats
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Calendars", str(stats.produced))
    results.add_row("Users", str(len(result.by_user)))
    advanced = Text(str(stats.advanced))
    if cfg.dry_run:
        advanced.append(" (not saved)", style="magenta")
    results.add_row("Sequence advanced", advanced)
    results.add_row("Unchanged", str(stats.unchanged))
    if not cfg.dry_run:
        results.add_row("Files written", str(written))

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and ledger summary."""
    config_file = _load_config_file(state.config_path)
    db_path = _state_db_path(config_file)
    config_exists = state.config_path.exists()
    db_exists = db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  Ledger:   ", style="bold")
    cfg_info.append(str(db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Timezone: ", style="bold")
    cfg_info.append(config_file.get("timezone", "UTC"))
    console.print(Panel(cfg_info, title="[bold]Configuration[/bold]"))

    rows = query_status(db_path)
    if not rows:
        console.print("[dim]No ledger entries recorded yet.[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Channel")
    table.add_column("Entries", justify="right")
    table.add_column("Highest sequence", justify="right")
    table.add_column("Last sent (UTC)")
    for row in rows:
        table.add_row(
            row["channel"],
            str(row["count"]),
            str(row["max_sequence"]),
            row["last_sent_at"] or "—",
        )
    console.print(Panel(table, title="[bold]Ledger[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: ledger
# ---------------------------------------------------------------------------


@app.command()
def ledger(
    user: Annotated[
        int | None, typer.Option("--user", "-u", help="Only show entries for this user ID")
    ] = None,
) -> None:
    """List notification ledger entries."""
    db_path = _state_db_path(_load_config_file(state.config_path))
    if not db_path.exists():
        console.print(f"[yellow]Ledger database not found:[/] {db_path}")
        raise typer.Exit(1)

    with LedgerDatabase(db_path) as ledger_db:
        rows = ledger_db.all_entries(user)

    if not rows:
        console.print("[dim]No matching ledger entries.[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("User", justify="right")
    table.add_column("Instance", justify="right")
    table.add_column("Channel")
    table.add_column("Sequence", justify="right")
    table.add_column("Last sent (UTC)")
    for row in rows:
        table.add_row(
            str(row["user_id"]),
            str(row["instance_id"]),
            row["channel"],
            str(row["sequence_number"]),
            row["last_sent_at"] or Text("never", style="dim"),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
