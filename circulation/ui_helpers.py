import os
import json
from typing import List, Any, Dict, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


def print_loan(loan: Any, days_left: Optional[int] = None) -> None:
    """Print one loan in the current output mode.

    ``days_left`` is shown for open loans when the caller knows it.
    """
    mode = get_output_mode()
    if mode == "json":
        data = loan.to_dict()
        if days_left is not None:
            data["days_remaining"] = days_left
        print(json.dumps(data, ensure_ascii=False))
        return

    location = loan.original_location
    lines = [
        f"Loan: {loan.id}",
        f"Book: {loan.book_title} ({loan.book_id})",
        f"Borrower: {loan.student_name} ({loan.user_id})",
        f"Due: {_date(loan.due_date)}",
        f"Status: {loan.status.value}",
    ]
    if days_left is not None and loan.is_open:
        lines.append(f"Days remaining: {days_left}")
    if loan.penalty_amount is not None:
        lines.append(f"Penalty: {loan.penalty_amount}")
    if location.cabinet or location.book_shelf_number:
        lines.append(
            f"Shelf: cabinet {location.cabinet or '-'}, shelf {location.book_shelf_number or '-'}, "
            f"order {location.shelf_order or '-'}"
        )
    if loan.notes:
        lines.append(f"Notes: {loan.notes}")

    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="📖 Loan", border_style="blue"))
    else:
        for line in lines:
            print(line)


def print_loans_result(loans: List[Any]) -> None:
    """Print a list of loans.
    - plain: 'ID - Title -> Borrower [status] due YYYY-MM-DD' lines, or 'No loans found.'
    - json: JSON array of loan dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Due", style="white")
        table.add_column("Status", style="white")
        for l in loans:
            style = "red" if l.status.value == "overdue" else "white"
            table.add_row(l.id, l.book_title, l.student_name, _date(l.due_date), f"[{style}]{l.status.value}[/]")
        _console.print(table)
    else:
        for l in loans:
            print(f"{l.id} - {l.book_title} -> {l.student_name} [{l.status.value}] due {_date(l.due_date)}")


def print_notifications(notes: List[str]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(notes, ensure_ascii=False))
        return
    if not notes:
        print("No notifications.")
        return
    for note in notes:
        if mode == "rich":
            _console.print(f"[bold yellow]🔔 {note}[/]")
        else:
            print(note)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print circulation statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "active": "Active Loans",
        "overdue": "Overdue",
        "returned": "Returned",
        "lost": "Lost",
        "new_today": "Issued Today",
        "books": "Titles",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "borrowed": "Borrowed Copies",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
