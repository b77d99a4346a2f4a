import logging
import os
import subprocess
import sys
from contextlib import contextmanager
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from errors import LibraryError
from library import Library
from utils.ui_helpers import (print_books, print_loans, print_record, print_stats_result, print_users,
                              set_output_mode)

APP_NAME = "Library CLI"

console = Console()
logger = logging.getLogger(__name__)

_state = {"db_file": settings.database_file}

app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: str = typer.Option(
        settings.database_file,
        "--db",
        envvar="LIBRARY_DB_FILE",
        help="SQLite database file",
    ),
):
    """Global CLI options (output mode, database file)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)
    _state["db_file"] = db


def _get_library() -> Library:
    return Library(db_file=_state["db_file"])


@contextmanager
def _cli_errors():
    """Turn domain failures into 'Error: <message>' and exit code 1."""
    try:
        yield
    except LibraryError as e:
        logger.debug(f"Command failed: {e.kind.value}: {e.message}")
        typer.echo(f"Error: {e.message}")
        raise typer.Exit(code=1)


@app.command("init")
def cli_init(seed: Optional[str] = typer.Option(None, "--seed", help="JSON file with sample books, users and loans")):
    """Create the database schema, optionally loading sample data."""
    db = database.initialize_database(_state["db_file"])
    print(f"Database ready at {db.db_file}")
    if seed:
        count = database.seed_from_json(db, seed)
        print(f"Seeded {count} books from {seed}")


@app.command("books")
def cli_books(
    title: Optional[str] = typer.Option(None, "--title", help="Filter by title substring"),
    author: Optional[str] = typer.Option(None, "--author", help="Filter by author substring"),
):
    """List books in the catalog."""
    with _cli_errors():
        print_books(_get_library().list_books(title=title, author=author))


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    isbn: str,
    published: str = typer.Option(..., "--published", help="Publication date, YYYY-MM-DD"),
):
    """Add a book to the catalog."""
    with _cli_errors():
        book = _get_library().add_book(title, author, isbn, published_date=published)
        print_record(book, f"Added book {book.id}: {book.title} by {book.author}")


@app.command("users")
def cli_users():
    """List registered users."""
    with _cli_errors():
        print_users(_get_library().list_users())


@app.command("add-user")
def cli_add_user(
    name: str,
    email: str,
    role: str = typer.Option("USER", "--role", help="USER or ADMIN"),
):
    """Register a new user."""
    with _cli_errors():
        user = _get_library().register_user(name, email, role=role.upper())
        print_record(user, f"Registered user {user.id}: {user.name} <{user.email}>")


@app.command("loans")
def cli_loans(
    user: Optional[int] = typer.Option(None, "--user", help="Only loans of this user ID"),
    book: Optional[int] = typer.Option(None, "--book", help="Only loans of this book ID"),
    active: bool = typer.Option(False, "--active", help="Only loans not yet returned"),
):
    """List loans."""
    with _cli_errors():
        print_loans(_get_library().loans.list_loans(user_id=user, book_id=book, active_only=active))


@app.command("issue")
def cli_issue(
    user_id: int,
    book_id: int,
    loan_date: Optional[str] = typer.Option(None, "--loan-date", help="YYYY-MM-DD, defaults to today"),
):
    """Lend a book to a user."""
    with _cli_errors():
        loan = _get_library().loans.issue_loan(user_id, book_id, loan_date=loan_date)
        print_record(loan, f"Issued loan {loan.id}: book {loan.book_id} to user {loan.user_id}")


@app.command("return")
def cli_return(
    loan_id: int,
    return_date: Optional[str] = typer.Option(None, "--return-date", help="YYYY-MM-DD, defaults to today"),
):
    """Return a borrowed book."""
    with _cli_errors():
        loan = _get_library().loans.return_loan(loan_id, return_date=return_date)
        print_record(loan, f"Returned loan {loan.id} on {loan.return_date.isoformat()}")


@app.command("stats")
def cli_stats():
    """Show catalog, membership and loan counts."""
    with _cli_errors():
        print_stats_result(_get_library().get_statistics())


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API using uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        completed = subprocess.run(args, env={**os.environ, "LIBRARY_DB_FILE": _state["db_file"]})
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not launch uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        raise typer.Exit(code=0)
    if completed.returncode:
        raise typer.Exit(code=completed.returncode)


if __name__ == "__main__":
    app()
