"""Copy-count helpers for catalog titles.

A title's ``remaining_copies`` must always stay within ``[0, total_copies]``.
The engine moves it one step at a time through ``decremented`` and
``incremented``; catalog edits go through ``rebalanced``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List

from .errors import UnavailableError

if TYPE_CHECKING:
    from .models import Book, Loan


def check_copy_counts(total: int, remaining: int) -> None:
    if total < 0:
        raise ValueError(f"Total copies cannot be negative (got {total}).")
    if remaining < 0 or remaining > total:
        raise ValueError(f"Remaining copies must be between 0 and {total} (got {remaining}).")


def decremented(remaining: int) -> int:
    if remaining <= 0:
        raise UnavailableError("No remaining copies available.")
    return remaining - 1


def incremented(remaining: int, total: int) -> int:
    return min(remaining + 1, total)


def rebalanced(book: "Book", new_total: int) -> int:
    """Return the remaining count after changing a title's total copies.

    Copies currently out stay out, so the new total may not drop below them.
    """
    out = book.total_copies - book.remaining_copies
    if new_total < out:
        raise ValueError(
            f"Cannot reduce total copies to {new_total}: {out} copies are currently on loan."
        )
    remaining = new_total - out
    check_copy_counts(new_total, remaining)
    return remaining


def outstanding_count(loans: Iterable["Loan"], book_id: str) -> int:
    return sum(1 for loan in loans if loan.book_id == book_id and loan.is_open)


def audit_book(book: "Book", loans: Iterable["Loan"]) -> List[str]:
    """List invariant violations for one title, empty when consistent."""
    loans = [loan for loan in loans if loan.book_id == book.id]
    problems: List[str] = []
    try:
        check_copy_counts(book.total_copies, book.remaining_copies)
    except ValueError as e:
        problems.append(str(e))

    # lost copies never come back, so the equality only holds without them
    if any(loan.status.value == "lost" for loan in loans):
        return problems

    out = outstanding_count(loans, book.id)
    if out != book.borrowed_copies:
        problems.append(
            f"Book {book.id}: {out} open loans but {book.borrowed_copies} copies marked out."
        )
    return problems
