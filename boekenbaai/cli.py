"""Command line for staff: imports, barcode and ISBN lookups, activity and status."""

import asyncio
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from boekenbaai.config import settings
from boekenbaai.database import JsonDocumentStore
from boekenbaai.errors import LibraryError
from boekenbaai.history import HistoryFilter, query_history
from boekenbaai.importer import Importer
from boekenbaai.library import Library
from boekenbaai.services.http_client import cleanup_http_client
from boekenbaai.services.isbn_lookup import IsbnMetadataCache
from boekenbaai.spreadsheet import read_file
from boekenbaai.ui_helpers import (
    print_barcode_lookup,
    print_history,
    print_import_report,
    print_metadata,
    print_status,
    set_output_mode,
)

logger = logging.getLogger(__name__)

console = Console(stderr=True)

app = typer.Typer(help=f"{settings.app_name} library command line")


def _library(data_path: Optional[Path]) -> Library:
    return Library(JsonDocumentStore(data_path) if data_path else None)


def _fail(exc: LibraryError) -> None:
    console.print(f"[bold red]Error:[/] {exc.message}")
    raise typer.Exit(code=1)


async def _run_and_close(coro):
    try:
        return await coro
    finally:
        await cleanup_http_client()


DataOption = typer.Option(None, "--data", "-d", help="Path of the library JSON document")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at LOG_LEVEL instead of warnings only"),
):
    """Global CLI options (output mode, logging)."""
    level = settings.log_level if verbose else "WARNING"
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    if output:
        set_output_mode(output)


@app.command("import-books")
def cli_import_books(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="xlsx or csv file"),
    enrich: Optional[bool] = typer.Option(None, "--enrich/--no-enrich", help="Fill empty fields from ISBN metadata"),
    data: Optional[Path] = DataOption,
):
    """Import books; copies sharing a barcode are matched by title."""
    try:
        rows = read_file(file)
        importer = Importer(_library(data), isbn_cache=IsbnMetadataCache.from_settings())
        report = asyncio.run(_run_and_close(importer.import_books(rows, enrich_isbn=enrich)))
    except LibraryError as exc:
        _fail(exc)
    print_import_report(report.to_dict(), title="Book import")


@app.command("import-students")
def cli_import_students(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="xlsx or csv file"),
    data: Optional[Path] = DataOption,
):
    """Import student accounts and their classes."""
    try:
        report = Importer(_library(data)).import_students(read_file(file))
    except LibraryError as exc:
        _fail(exc)
    print_import_report(report.to_dict(), title="Student import")


@app.command("import-teachers")
def cli_import_teachers(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="xlsx or csv file"),
    data: Optional[Path] = DataOption,
):
    """Import teacher accounts and their classes."""
    try:
        report = Importer(_library(data)).import_teachers(read_file(file))
    except LibraryError as exc:
        _fail(exc)
    print_import_report(report.to_dict(), title="Teacher import")


@app.command("barcode")
def cli_barcode(
    barcode: str = typer.Argument(..., help="Scanned barcode or ISBN"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Only the copies with this title"),
    data: Optional[Path] = DataOption,
):
    """Show the copies under a barcode, grouped by title."""
    try:
        lookup = _library(data).lookup_by_barcode(barcode, title=title)
    except LibraryError as exc:
        _fail(exc)
    print_barcode_lookup(lookup.to_dict())


@app.command("isbn")
def cli_isbn(isbn: str = typer.Argument(..., help="ISBN to look up")):
    """Look up bibliographic metadata for an ISBN."""
    cache = IsbnMetadataCache.from_settings()
    metadata = asyncio.run(_run_and_close(cache.lookup(isbn)))
    print_metadata(metadata)


@app.command("history")
def cli_history(
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of entries"),
    student: Optional[str] = typer.Option(None, "--student", help="Only this student's activity"),
    teacher: Optional[str] = typer.Option(None, "--teacher", help="Only activity in this teacher's classes"),
    data: Optional[Path] = DataOption,
):
    """Show recent activity, newest first."""
    document = _library(data).snapshot()
    entries = query_history(document, HistoryFilter(student_id=student, teacher_id=teacher, limit=limit))
    print_history(entries)


@app.command("status")
def cli_status(data: Optional[Path] = DataOption):
    """Show how many books are in the collection and how many are out."""
    print_status(_library(data).status_summary())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or settings.api_port
    print(f"Starting {settings.app_name} API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "boekenbaai.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    raise typer.Exit(code=subprocess.run(args).returncode)


if __name__ == "__main__":
    app()
