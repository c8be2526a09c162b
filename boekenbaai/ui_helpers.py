import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BOEKENBAAI_CLI_OUTPUT"
OUTPUT_MODES = {"plain", "json", "rich"}

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in OUTPUT_MODES:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    mode = os.environ.get(OUTPUT_MODE_ENV, "plain").lower()
    return mode if mode in OUTPUT_MODES else "plain"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def print_import_report(report: Dict[str, Any], title: str = "Import") -> None:
    """Print an ``ImportReport.to_dict()`` in the current output mode.

    Generated passwords are shown once, so every mode lists the accounts.
    """
    mode = get_output_mode()
    if mode == "json":
        _print_json(report)
        return

    summary = (
        f"Created: {report.get('created', 0)}  Updated: {report.get('updated', 0)}  "
        f"Unchanged: {report.get('unchanged', 0)}  Skipped: {len(report.get('skipped', []))}"
    )
    skipped = report.get("skipped", [])
    accounts = report.get("accounts", [])

    if mode == "rich":
        _console.print(Panel.fit(summary, title=f"📥 {title}", border_style="blue"))
        if accounts:
            table = Table(title="Accounts", header_style="bold cyan")
            for column in ("Status", "Name", "Username", "Classes", "Password"):
                table.add_column(column)
            for account in accounts:
                table.add_row(
                    account.get("status", ""),
                    account.get("name", ""),
                    account.get("username", ""),
                    ", ".join(account.get("classes", [])),
                    account.get("password") or "",
                )
            _console.print(table)
        if skipped:
            table = Table(title="Skipped rows", header_style="bold yellow")
            table.add_column("Row", justify="right")
            table.add_column("Reason")
            for entry in skipped:
                table.add_row(str(entry.get("row", "")), entry.get("reason", ""))
            _console.print(table)
        return

    print(summary)
    for account in accounts:
        print(f"{account.get('status')}: {account.get('username')} ({account.get('name')}) "
              f"password: {account.get('password') or '-'}")
    for entry in skipped:
        print(f"Row {entry.get('row')} skipped: {entry.get('reason')}")


def print_barcode_lookup(lookup: Dict[str, Any]) -> None:
    mode = get_output_mode()
    groups = lookup.get("groups", [])
    if mode == "json":
        _print_json(lookup)
    elif mode == "rich":
        table = Table(title=f"🔎 Barcode {lookup.get('barcode', '')}", show_lines=True, header_style="bold cyan")
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Available", justify="right")
        table.add_column("Total", justify="right")
        for group in groups:
            table.add_row(group["title"], group["author"], str(group["availableCopies"]), str(group["totalCopies"]))
        _console.print(table)
    else:
        for group in groups:
            print(f"{group['title']} by {group['author']}: "
                  f"{group['availableCopies']}/{group['totalCopies']} available")


def print_metadata(metadata: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(metadata)
        return
    if not metadata.get("found"):
        print(f"No metadata found for {metadata.get('barcode') or 'this ISBN'} (source: {metadata.get('source')})")
        return
    lines = [
        f"Title: {metadata.get('title', '')}",
        f"Author: {metadata.get('author', '')}",
        f"Publisher: {metadata.get('publisher', '')}",
        f"Year: {metadata.get('publishedYear') or ''}",
        f"Pages: {metadata.get('pageCount') or ''}",
        f"Source: {metadata.get('source', '')}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=f"📘 {metadata.get('barcode', '')}", border_style="green"))
    else:
        print("\n".join(lines))


def print_history(entries: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(entries)
        return
    if not entries:
        print("No activity yet.")
        return
    if mode == "rich":
        table = Table(title="🕑 Activity", header_style="bold cyan")
        table.add_column("When", no_wrap=True)
        table.add_column("Type")
        table.add_column("Message")
        for entry in entries:
            table.add_row(entry.get("timestamp", ""), entry.get("type", ""), entry.get("message", ""))
        _console.print(table)
    else:
        for entry in entries:
            print(f"{entry.get('timestamp', '')} [{entry.get('type', '')}] {entry.get('message', '')}")


def print_status(summary: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(summary)
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in summary.items())
        _console.print(Panel.fit(content, title="📊 Status", border_style="blue"))
    else:
        for key, value in summary.items():
            print(f"{key}: {value}")
