import json
import os
import subprocess
import sys
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich import box

from .borrowing import BorrowingService
from .catalog import CatalogService
from .config import configure_logging, settings
from .database import Database
from .errors import DatabaseUnavailableError, LibraryError
from .seed import seed_database

APP_NAME = "Library CLI"

# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

console = Console()
app = typer.Typer(help=APP_NAME)

_state: Dict[str, Any] = {"database_url": None}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _settings():
    if _state["database_url"]:
        return settings.override(database_url=_state["database_url"])
    return settings


def _open_database() -> Database:
    """Connect to the configured database or exit with status 1."""
    db = Database(_settings().database_path, pool_size=1)
    try:
        db.connect()
    except DatabaseUnavailableError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    return db


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="Overrides DATABASE_URL for this command.",
    ),
):
    """Operator commands for the library backend."""
    configure_logging(settings.log_level)
    if output:
        set_output_mode(output)
    _state["database_url"] = database_url


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    db = _open_database()
    try:
        db.create_tables()
        print(f"Database ready at {db.path}")
    finally:
        db.close()


@app.command("seed")
def cli_seed():
    """Load the sample catalog, users and loans."""
    db = _open_database()
    try:
        counts = seed_database(db, _settings())
    finally:
        db.close()
    if not counts:
        print("Database already contains books; nothing seeded.")
        return
    print("Database seeded successfully!")
    for name, count in counts.items():
        print(f"  {name}: {count}")
    print("Test credentials: test.user@example.com / testpass123")


@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Title, author or description text"),
    page: int = typer.Option(1, "--page", help="Page number"),
    limit: int = typer.Option(20, "--limit", help="Books per page"),
):
    """List the catalog."""
    db = _open_database()
    try:
        db.create_tables()
        result = CatalogService(db, _settings()).list_books(page, limit, search=search)
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()
    print_books(result.items)
    if result.items:
        print(f"Page {result.page}/{result.total_pages} ({result.total} books)")


@app.command("overdue")
def cli_overdue():
    """List open loans past their due date."""
    db = _open_database()
    try:
        db.create_tables()
        records = BorrowingService(db, _settings()).list_overdue()
    finally:
        db.close()
    print_overdue(records)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Run the API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting Library API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending.api:app",
        "--host", host,
        "--port", str(port),
    ]
    env = dict(os.environ)
    if _state["database_url"]:
        env["DATABASE_URL"] = _state["database_url"]
    proc = subprocess.run(args, env=env)
    if proc.returncode:
        raise typer.Exit(code=proc.returncode)


# ------------------------- Output ------------------------- #
def print_books(books: List[Any]) -> None:
    mode = get_output_mode()
    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", box=box.SIMPLE_HEAVY, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("ISBN", no_wrap=True)
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author or "", b.isbn, f"{b.available_copies}/{b.total_copies}")
        console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author or 'Unknown'} ({b.available_copies}/{b.total_copies} available)")


def print_overdue(records: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if not records:
        print("No overdue loans.")
        return

    if mode == "json":
        print(json.dumps(records, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏰ Overdue loans", box=box.SIMPLE_HEAVY, header_style="bold red")
        table.add_column("Borrow ID", no_wrap=True)
        table.add_column("Borrower")
        table.add_column("Book")
        table.add_column("Due", no_wrap=True)
        table.add_column("Fine so far", justify="right")
        for r in records:
            table.add_row(
                str(r["borrowId"]),
                f"{r['user']['firstName']} {r['user']['lastName']}",
                r["book"]["title"],
                r["dueDate"][:10],
                f"${r['accruedFine']:.2f}",
            )
        console.print(table)
    else:
        for r in records:
            borrower = f"{r['user']['firstName']} {r['user']['lastName']}"
            print(f"{r['borrowId']} - {r['book']['title']} ({borrower}) due {r['dueDate'][:10]}, fine ${r['accruedFine']:.2f}")


if __name__ == "__main__":
    app()
