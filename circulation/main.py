import json
import logging
import os
import subprocess
import sys
import webbrowser
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from .config import settings
from .database import DATABASE_FILE, open_stores
from .engine import CirculationEngine
from .errors import CirculationError
from .models import Book, ReturnCondition, ShelfLocation, User, UserRole, UserStatus
from .status import days_remaining
from .ui_helpers import (
    print_loan,
    print_loans_result,
    print_notifications,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Circulation CLI"

console = Console(stderr=True)


class EngineManager:
    """Process-wide engine, rebuilt when the database file changes."""

    _instance: Optional[CirculationEngine] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def current_db_file(cls) -> str:
        return os.environ.get("LIBRARY_DB_FILE") or DATABASE_FILE

    @classmethod
    def get_instance(cls) -> CirculationEngine:
        current_db = cls.current_db_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = CirculationEngine(*open_stores(current_db))
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help="Library circulation CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    if output:
        set_output_mode(output)


@app.command("issue")
def cli_issue(
    book_id: str,
    user_id: str,
    days: int = typer.Option(
        settings.default_loan_days,
        "--days",
        "-d",
        help=f"Loan duration in days (usually one of {', '.join(map(str, settings.loan_duration_choices))})",
    ),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Notes recorded on the loan"),
):
    """Lend one copy of a book to a user."""
    engine = EngineManager.get_instance()
    try:
        loan = engine.issue_loan(book_id, user_id, days, notes)
    except (CirculationError, ValueError) as e:
        _fail(str(e))
    print(f"Issued loan {loan.id}: {loan.book_title} to {loan.student_name}, due {loan.due_date:%Y-%m-%d}")


@app.command("return")
def cli_return(
    loan_id: str,
    condition: ReturnCondition = typer.Option(ReturnCondition.EXCELLENT, "--condition", "-c", help="Condition of the returned copy"),
    notes: str = typer.Option("", "--notes", "-n", help="Notes appended to the loan"),
):
    """Close a loan and report the penalty and where to reshelve the copy."""
    engine = EngineManager.get_instance()
    try:
        loan = engine.return_loan(loan_id, condition, notes)
    except (CirculationError, ValueError) as e:
        _fail(str(e))
    print(f"Loan {loan.id} closed as {loan.status.value}. Penalty: {loan.penalty_amount}")
    print_loan(loan)


@app.command("note")
def cli_note(loan_id: str, text: str):
    """Append a note to a loan."""
    engine = EngineManager.get_instance()
    try:
        loan = engine.append_note(loan_id, text)
    except (CirculationError, ValueError) as e:
        _fail(str(e))
    print(f"Notes: {loan.notes}")


@app.command("show")
def cli_show(loan_id: str):
    """Show one loan, with the days left before it falls due."""
    engine = EngineManager.get_instance()
    try:
        loan = engine.get_loan(loan_id)
    except CirculationError as e:
        _fail(str(e))
    print_loan(loan, days_left=days_remaining(loan, engine.now()))


@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="active | overdue | returned | lost | all"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Only loans of this user"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search book title, borrower or ids"),
):
    """List loans with their current status."""
    engine = EngineManager.get_instance()
    try:
        loans = engine.list_loans(status=status, user_id=user_id, query=query)
    except ValueError as e:
        _fail(str(e))
    print_loans_result(loans)


@app.command("notifications")
def cli_notifications(user_id: str):
    """Show overdue reminders for a user."""
    engine = EngineManager.get_instance()
    try:
        notes = engine.notifications_for(user_id)
    except CirculationError as e:
        _fail(str(e))
    print_notifications(notes)


@app.command("stats")
def cli_stats():
    """Show circulation statistics."""
    print_stats_result(EngineManager.get_instance().statistics())


@app.command("add-book")
def cli_add_book(
    book_id: str,
    title: str,
    author: str = typer.Option("", "--author", "-a"),
    copies: int = typer.Option(1, "--copies", min=0),
    cabinet: str = typer.Option("", "--cabinet"),
    shelf: str = typer.Option("", "--shelf"),
    order: str = typer.Option("", "--order"),
):
    """Add a title to the catalog with all copies on the shelf."""
    engine = EngineManager.get_instance()
    try:
        book = engine.add_book(Book(
            id=book_id,
            title=title,
            author=author,
            total_copies=copies,
            location=ShelfLocation(cabinet, shelf, order),
        ))
    except ValueError as e:
        _fail(str(e))
    print(f"Added book {book.id}: {book.title} ({book.total_copies} copies)")


@app.command("add-user")
def cli_add_user(
    user_id: str,
    name: str,
    email: str = typer.Option("", "--email"),
    role: UserRole = typer.Option(UserRole.STUDENT, "--role"),
    status: UserStatus = typer.Option(UserStatus.ACTIVE, "--status"),
):
    """Register a user in the directory."""
    engine = EngineManager.get_instance()
    try:
        user = engine.add_user(User(id=user_id, name=name, email=email, role=role, status=status))
    except ValueError as e:
        _fail(str(e))
    print(f"Added user {user.id}: {user.name} ({user.role.value})")


@app.command("update-user")
def cli_update_user(
    user_id: str,
    name: Optional[str] = typer.Option(None, "--name"),
    email: Optional[str] = typer.Option(None, "--email"),
    role: Optional[UserRole] = typer.Option(None, "--role"),
    status: Optional[UserStatus] = typer.Option(None, "--status", help="active | inactive | suspended"),
):
    """Edit a user, e.g. suspend or reactivate borrowing."""
    fields = {k: v for k, v in {"name": name, "email": email, "role": role, "status": status}.items() if v is not None}
    if not fields:
        _fail("Provide at least one field to update.")
    engine = EngineManager.get_instance()
    try:
        user = engine.update_user(user_id, **fields)
    except (CirculationError, ValueError) as e:
        _fail(str(e))
    print(f"Updated user {user.id}: {user.name} ({user.role.value}, {user.status.value})")


@app.command("import")
def cli_import(path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of loan records")):
    """Bulk-issue loans from a JSON file, one issue per record."""
    try:
        records = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        _fail(f"Could not read {path}: {e}")
    if not isinstance(records, list):
        _fail("Import file must contain a JSON list.")

    report = EngineManager.get_instance().import_loans(records)
    print(f"Imported {len(report.issued)} loans, {len(report.failures)} rejected.")
    for failure in report.failures:
        print(f"  record {failure.index}: {failure.reason}")
    if report.failures:
        raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(no_browser: bool = typer.Option(False, "--no-browser", help="Do not open the API docs")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if not no_browser:
        try:
            webbrowser.open(url)
        except Exception:
            console.print("[yellow]Could not open a web browser automatically.[/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "circulation.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        console.print("[dim]Server stopped.[/]")


if __name__ == "__main__":
    app()
