import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False))


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: '[id] ISBN - Title by Author (STATUS)' lines, or 'No books in library.'
    - json: array of book dicts
    - rich: table
    """
    mode = get_output_mode()
    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _print_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", justify="right")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Status")
        for b in books:
            status_style = "green" if b.status.value == "AVAILABLE" else "yellow"
            table.add_row(str(b.id), b.isbn, b.title, b.author, f"[{status_style}]{b.status.value}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"[{b.id}] {b.isbn} - {b.title} by {b.author} ({b.status.value})")


def print_users(users: List[Any]) -> None:
    mode = get_output_mode()
    if not users:
        print("No users registered.")
        return

    if mode == "json":
        _print_json([u.to_dict() for u in users])
    elif mode == "rich":
        table = Table(title="👤 Users", header_style="bold cyan")
        table.add_column("ID", style="dim", justify="right")
        table.add_column("Name")
        table.add_column("Email", style="magenta")
        table.add_column("Role")
        for u in users:
            table.add_row(str(u.id), u.name, u.email, u.role.value)
        _console.print(table)
    else:
        for u in users:
            print(f"[{u.id}] {u.name} <{u.email}> {u.role.value}")


def print_loans(loans: List[Any]) -> None:
    """Print loans; an active loan shows 'active' in place of its return date."""
    mode = get_output_mode()
    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        _print_json([l.to_dict() for l in loans])
    elif mode == "rich":
        table = Table(title="🔖 Loans", header_style="bold cyan")
        table.add_column("ID", style="dim", justify="right")
        table.add_column("User", justify="right")
        table.add_column("Book", justify="right")
        table.add_column("Loaned")
        table.add_column("Returned")
        for l in loans:
            returned = l.return_date.isoformat() if l.return_date else "[yellow]active[/]"
            table.add_row(str(l.id), str(l.user_id), str(l.book_id), l.loan_date.isoformat(), returned)
        _console.print(table)
    else:
        for l in loans:
            returned = l.return_date.isoformat() if l.return_date else "active"
            print(f"[{l.id}] user {l.user_id} book {l.book_id} {l.loan_date.isoformat()} -> {returned}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "available_books": "Available Books",
        "total_users": "Total Users",
        "active_loans": "Active Loans",
    }

    if mode == "json":
        _print_json({key: stats.get(key, 0) for key in labels})
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")


def print_record(record: Any, message: str) -> None:
    """Print the outcome of a single-record command (add, issue, return)."""
    if get_output_mode() == "json":
        _print_json(record.to_dict())
    else:
        print(message)
