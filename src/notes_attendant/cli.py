"""Command line interface for the notes attendant."""

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Optional, TypeVar

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .apod import DEFAULT_TIMEOUT
from .config import AttendantConfig, ConfigError, default_config_path
from .operations import OperationError, VaultOperations
from .pipeline import BatchOutcome, CollaboratorError, PartialFailureError
from .twir import IssueRange

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Precondition and collaborator failures: nothing was attempted per file.
FATAL_ERRORS = (ConfigError, CollaboratorError, OperationError)

app = typer.Typer(
    name="nta",
    help="Notes attendant - maintenance for a Markdown notes vault",
    no_args_is_help=True,
)
grab_app = typer.Typer(help="Create notes from external sources", no_args_is_help=True)
show_app = typer.Typer(help="Show information from external sources", no_args_is_help=True)
add_app = typer.Typer(help="Add data to notes", no_args_is_help=True)
rename_app = typer.Typer(help="Rename data in notes", no_args_is_help=True)
remove_app = typer.Typer(help="Remove data from notes", no_args_is_help=True)

app.add_typer(grab_app, name="grab")
app.add_typer(show_app, name="show")
app.add_typer(add_app, name="add")
app.add_typer(rename_app, name="rename")
app.add_typer(remove_app, name="remove")

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbosity: int) -> None:
    """Log to stderr, and to ``NTA_LOG_FILE`` when it is set."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = os.getenv("NTA_LOG_FILE")
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


@app.callback()
def main_callback(
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)"
    ),
):
    """Keep a notes vault tidy."""
    load_dotenv()
    setup_logging(verbose)


def _execute(action: Callable[[VaultOperations], Awaitable[T]]) -> T:
    """Run one async vault action, turning precondition failures into exit code 2."""

    async def run() -> T:
        config = AttendantConfig.load()
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True) as client:
            return await action(VaultOperations(config, http_client=client))

    try:
        return asyncio.run(run())
    except FATAL_ERRORS as e:
        logger.debug("Operation aborted", exc_info=True)
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(2)


def _print_affected(outcome: BatchOutcome, title: str) -> None:
    if outcome.affected:
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim")
        table.add_column("File", style="green")
        for index, path in enumerate(sorted(outcome.affected), 1):
            table.add_row(str(index), str(path))
        console.print(table)
    else:
        console.print(f"[dim]{title}: nothing to do[/dim]")


def _exit_on_failures(outcome: BatchOutcome) -> None:
    try:
        outcome.raise_for_failures()
    except PartialFailureError as e:
        for failure in e.failures:
            logger.error(str(failure))
            err_console.print(f"[red]{escape(str(failure))}[/red]")
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)


def _report(outcome: BatchOutcome, title: str) -> None:
    """Print what changed; exit with code 1 if any unit failed."""
    _print_affected(outcome, title)
    _exit_on_failures(outcome)


@app.command()
def repair(
    wiki_refs: bool = typer.Option(False, "--wiki-refs", help="Repair wiki references"),
    remove_unused_files: bool = typer.Option(
        False, "--remove-unused-files", help="Remove attachments no note refers to"
    ),
    rename_files: bool = typer.Option(
        False, "--rename-files", help="Give attachments opaque UUID names"
    ),
    twir_issues: bool = typer.Option(
        False, "--twir-issues", help="Move legacy This Week in Rust notes"
    ),
    apod_issues: bool = typer.Option(
        False, "--apod-issues", help="Move legacy Astronomy Picture of the Day notes"
    ),
    remove_created: bool = typer.Option(
        False, "--remove-created", help="Remove the created field from notes"
    ),
    banners: bool = typer.Option(False, "--banners", help="Normalize note banners"),
):
    """Repair the vault."""
    selected: list[tuple[str, Callable[[VaultOperations], Awaitable[BatchOutcome]]]] = []
    if wiki_refs:
        selected.append(("Repaired wiki references", lambda ops: ops.repair_wiki_refs()))
    if remove_unused_files:
        selected.append(("Removed unused files", lambda ops: ops.remove_unused_files()))
    if rename_files:
        selected.append(("Renamed attached files", lambda ops: ops.rename_attached_files()))
    if twir_issues:
        selected.append(("Repaired TWiR issues", lambda ops: ops.repair_twir_issues()))
    if apod_issues:
        selected.append(("Repaired APoD issues", lambda ops: ops.repair_apod_issues()))
    if remove_created:
        selected.append(("Removed created fields", lambda ops: ops.remove_created()))
    if banners:
        selected.append(("Repaired banners", lambda ops: ops.repair_banners()))

    if not selected:
        err_console.print("[yellow]Nothing to repair, pass at least one option[/yellow]")
        raise typer.Exit(2)

    outcome = BatchOutcome()
    for title, action in selected:
        partial = _execute(action)
        _print_affected(partial, title)
        outcome = outcome.merge(partial)
    _exit_on_failures(outcome)


@grab_app.command("apod")
def grab_apod(
    daily: bool = typer.Option(False, "--daily", "-d", help="Link the note from the daily note"),
    tags: Optional[list[str]] = typer.Option(
        None, "--tag", "-t", help="Astronomy subtag (repeatable)"
    ),
):
    """Grab today's Astronomy Picture of the Day."""
    outcome = _execute(lambda ops: ops.grab_apod(update_daily=daily, subtags=tags))
    _report(outcome, "Astronomy Picture of the Day")


def _parse_issues(value: str) -> IssueRange:
    try:
        return IssueRange.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


@grab_app.command("twir")
def grab_twir(
    issues: str = typer.Option(..., "--issues", "-i", help="Issue number or range, e.g. 500-505"),
    daily: bool = typer.Option(False, "--daily", "-d", help="Link notes from daily notes"),
):
    """Grab This Week in Rust issues."""
    issue_range = _parse_issues(issues)
    outcome = _execute(lambda ops: ops.grab_twir(issue_range, update_daily=daily))
    _report(outcome, "This Week in Rust")


@show_app.command("twir")
def show_twir(
    last: bool = typer.Option(False, "--last", help="Show only the newest issue"),
):
    """List This Week in Rust issues."""
    issues = _execute(lambda ops: ops.list_twir_issues(last=last))

    table = Table(title="This Week in Rust", show_header=True, header_style="bold cyan")
    table.add_column("Date", style="dim")
    table.add_column("Title", style="green")
    table.add_column("URL")
    for issue in issues:
        table.add_row(issue.published.date().isoformat(), issue.title, issue.url)
    console.print(table)


@add_app.command("banner")
def add_banner(
    file_name: str = typer.Argument(..., help="Banner file name"),
    note_type: str = typer.Option(..., "--type", "-t", help="Note type"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Required tag (repeatable)"),
):
    """Add a banner to notes of a type."""
    outcome = _execute(lambda ops: ops.add_banner(file_name, note_type, tags))
    _report(outcome, "Added banners")


@add_app.command("calendar")
def add_calendar(
    year: Optional[int] = typer.Option(None, "--year", "-y", help="Year (default: current)"),
    month: Optional[int] = typer.Option(None, "--month", "-m", help="Month (default: current)"),
):
    """Add a month calendar to the monthly note."""
    today = date.today()
    outcome = _execute(lambda ops: ops.add_calendar(year or today.year, month or today.month))
    _report(outcome, "Added calendar")


@add_app.command("created")
def add_created(
    note_type: str = typer.Option(..., "--type", "-t", help="Note type"),
):
    """Add the created field to notes of a type."""
    outcome = _execute(lambda ops: ops.add_created(note_type))
    _report(outcome, "Added created fields")


@rename_app.command("banner")
def rename_banner(
    old_name: str = typer.Argument(..., help="Current banner file name"),
    new_name: str = typer.Argument(..., help="New banner file name"),
):
    """Rename a banner in every note using it."""
    outcome = _execute(lambda ops: ops.rename_banner(old_name, new_name))
    _report(outcome, "Renamed banners")


@remove_app.command("line")
def remove_line(
    line: str = typer.Argument(..., help="Text the removed lines end with"),
):
    """Remove matching lines from every note."""
    outcome = _execute(lambda ops: ops.remove_line(line))
    _report(outcome, "Removed lines")


@remove_app.command("bookmarks")
def remove_bookmarks():
    """Remove raindrop bookmark notes."""
    outcome = _execute(lambda ops: ops.remove_raindrop_notes())
    _report(outcome, "Removed bookmarks")


@app.command("config")
def config_command(
    key: str = typer.Argument(..., help="Dotted key, e.g. vault.root"),
    value: str = typer.Argument(..., help="New value"),
    update: bool = typer.Option(
        False, "--update", help="Re-base sub-paths when changing vault.root"
    ),
):
    """Set a configuration value."""
    path = default_config_path()
    try:
        config = AttendantConfig.load(path, apply_env=False)
        saved = config.with_value(key, value, update=update).save(path)
    except ConfigError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(2)
    console.print(f"[green]Configuration saved to {saved}[/green]")


def main() -> None:
    """Main entry point for the nta command."""
    app()


if __name__ == "__main__":
    main()
