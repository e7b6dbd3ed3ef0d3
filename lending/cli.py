import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from lending.circulation import CirculationService
from lending.config import configure_logging, settings
from lending.database import SQLiteRepository
from lending.errors import LendingError, StorageError
from lending.ui_helpers import (
    print_borrowing,
    print_borrowings,
    print_editions,
    print_members,
    print_stats_result,
    set_output_mode,
)

console = Console()


class ServiceManager:
    """Holds one CirculationService per database file."""

    _instance: Optional[CirculationService] = None
    _db_file: Optional[str] = None

    @classmethod
    def get_instance(cls) -> CirculationService:
        db_file = settings.db_file
        if cls._instance is None or cls._db_file != db_file:
            cls._instance = CirculationService(SQLiteRepository(db_file), policy=settings.policy())
            cls._db_file = db_file
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file = None


def _fail(exc: Exception) -> None:
    if isinstance(exc, StorageError):
        print(f"Storage error: {exc}")
    else:
        print(f"Error: {exc}")
    raise typer.Exit(code=1)


app = typer.Typer(help="Library lending CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
):
    """Global options (output mode, database file)."""
    configure_logging()
    if output:
        set_output_mode(output)
    if db:
        settings.db_file = db


@app.command("member-add")
def cli_member_add(name: str, email: str):
    """Register a new member."""
    try:
        member = ServiceManager.get_instance().register_member(name, email)
    except (LendingError, StorageError) as e:
        _fail(e)
    print(f"Member added: {member.id} ({member.email})")


@app.command("member-deactivate")
def cli_member_deactivate(member_id: str):
    """Deactivate a member so they cannot start new borrowings."""
    try:
        ServiceManager.get_instance().set_member_active(member_id, False)
    except (LendingError, StorageError) as e:
        _fail(e)
    print(f"Member {member_id} deactivated.")


@app.command("members")
def cli_members():
    """List members by name."""
    try:
        members = ServiceManager.get_instance().list_members()
    except StorageError as e:
        _fail(e)
    print_members(members)


@app.command("edition-add")
def cli_edition_add(
    title: str,
    stock: int = typer.Option(1, "--stock", help="Number of copies"),
    price: Optional[float] = typer.Option(None, "--price", help="Unit price"),
    format: Optional[str] = typer.Option(None, "--format", help="e.g. hardcover"),
):
    """Add an edition with its copy pool."""
    try:
        edition = ServiceManager.get_instance().add_edition(title, stock, price=price, format=format)
    except (LendingError, StorageError) as e:
        _fail(e)
    print(f"Edition added: {edition.id} ({edition.book_title}, {edition.stock_quantity} copies)")


@app.command("editions")
def cli_editions():
    """List editions with their available copies."""
    try:
        editions = ServiceManager.get_instance().list_editions()
    except StorageError as e:
        _fail(e)
    print_editions(editions)


@app.command("borrow")
def cli_borrow(
    member_id: str,
    edition_id: str,
    due: Optional[str] = typer.Option(None, "--due", help="ISO-8601 due date"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Lend a copy of an edition to a member."""
    try:
        borrowing = ServiceManager.get_instance().borrow(member_id, edition_id, due_date=due, notes=notes)
    except (LendingError, StorageError) as e:
        _fail(e)
    print_borrowing(borrowing)


@app.command("return")
def cli_return(borrowing_id: str):
    """Return a borrowed copy, charging a fine if late."""
    try:
        borrowing = ServiceManager.get_instance().return_borrowing(borrowing_id)
    except (LendingError, StorageError) as e:
        _fail(e)
    print_borrowing(borrowing)


@app.command("lost")
def cli_lost(borrowing_id: str):
    """Mark a borrowed copy as lost."""
    try:
        borrowing = ServiceManager.get_instance().mark_lost(borrowing_id)
    except (LendingError, StorageError) as e:
        _fail(e)
    print_borrowing(borrowing)


@app.command("overdue")
def cli_overdue():
    """List overdue borrowings, oldest due date first."""
    print_borrowings(ServiceManager.get_instance().list_overdue(), empty_message="No overdue borrowings.")


@app.command("history")
def cli_history(member_id: str):
    """Show a member's borrowing history."""
    try:
        items = ServiceManager.get_instance().member_history(member_id)
    except (LendingError, StorageError) as e:
        _fail(e)
    print_borrowings(items)


@app.command("stats")
def cli_stats():
    """Show borrowing counts and total fines."""
    print_stats_result(ServiceManager.get_instance().stats())


@app.command("serve")
def cli_serve():
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting lending API on http://{host}:{port}/")
    env = dict(os.environ, LENDING_DB_FILE=settings.db_file)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "lending.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, env=env)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped.[/]")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
