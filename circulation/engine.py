from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from .config import settings
from .errors import (
    AlreadyClosedError,
    CirculationError,
    ConflictError,
    InactiveUserError,
    NotFoundError,
    UnavailableError,
)
from .inventory import decremented, incremented, rebalanced
from .models import Book, Loan, LoanStatus, ReturnCondition, User
from .notifications import derive_notifications
from .status import compute_penalty, get_loan_status
from .stores import CatalogStore, DirectoryStore, LoanLedger

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _join_notes(existing: Optional[str], new: Optional[str]) -> Optional[str]:
    if not new or not new.strip():
        return existing
    new = new.strip()
    return f"{existing} | {new}" if existing else new


class ImportFailure:
    def __init__(self, index: int, record: Any, reason: str) -> None:
        self.index = index
        self.record = record
        self.reason = reason

    def to_dict(self) -> dict:
        return {"index": self.index, "record": self.record, "reason": self.reason}


class ImportReport:
    """Outcome of a bulk loan import: loans issued and records rejected."""

    def __init__(self) -> None:
        self.issued: List[Loan] = []
        self.failures: List[ImportFailure] = []

    def to_dict(self) -> dict:
        return {
            "issued": [loan.to_dict() for loan in self.issued],
            "failures": [f.to_dict() for f in self.failures],
        }


class CirculationEngine:
    """Issues and returns loans while keeping copy counts consistent.

    The read-check-write on a title's ``remaining_copies`` runs under a
    per-book lock and is committed with a compare-and-swap on the catalog
    store, so concurrent callers in this process serialise on the lock and
    writers in other processes are caught by the swap. A swap that keeps
    losing is retried ``max_retries`` times and then reported as
    ``ConflictError``.
    """

    def __init__(self, catalog: CatalogStore, directory: DirectoryStore, ledger: LoanLedger, *,
                 penalty_rate_per_day: Optional[int] = None, max_retries: Optional[int] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.catalog = catalog
        self.directory = directory
        self.ledger = ledger
        self.penalty_rate_per_day = (
            settings.penalty_rate_per_day if penalty_rate_per_day is None else penalty_rate_per_day
        )
        self.max_retries = settings.max_update_retries if max_retries is None else max_retries
        self.clock = clock or _utcnow
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key``; the entry is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    # ------------------------- Copy counts ------------------------- #
    def _take_copy(self, book_id: str) -> Book:
        """Decrement remaining copies; returns the book as seen before the decrement."""
        for attempt in range(self.max_retries):
            book = self.catalog.get(book_id)
            if book is None:
                raise NotFoundError("Book", book_id)
            new = decremented(book.remaining_copies)
            if self.catalog.compare_and_set_remaining(book_id, book.remaining_copies, new):
                return book
            logger.debug("Copy count of %s changed underneath us (attempt %d)", book_id, attempt + 1)
        raise ConflictError(f"Could not update copies of book {book_id} after {self.max_retries} attempts.")

    def _restore_copy(self, book_id: str) -> None:
        for attempt in range(self.max_retries):
            book = self.catalog.get(book_id)
            if book is None:
                raise NotFoundError("Book", book_id)
            new = incremented(book.remaining_copies, book.total_copies)
            if new == book.remaining_copies:
                logger.warning("Book %s already has all %d copies on the shelf", book_id, book.total_copies)
            if self.catalog.compare_and_set_remaining(book_id, book.remaining_copies, new):
                return
            logger.debug("Copy count of %s changed underneath us (attempt %d)", book_id, attempt + 1)
        raise ConflictError(f"Could not update copies of book {book_id} after {self.max_retries} attempts.")

    # ------------------------- Core operations ------------------------- #
    def issue_loan(self, book_id: str, user_id: str, duration_days: int, notes: Optional[str] = None) -> Loan:
        """Lend one copy of ``book_id`` to ``user_id`` for ``duration_days`` days."""
        if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
            raise ValueError(f"Loan duration must be a positive number of days (got {duration_days!r}).")

        if self.catalog.get(book_id) is None:
            raise NotFoundError("Book", book_id)
        user = self.directory.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        if not user.can_borrow():
            logger.warning("Refused loan of %s to %s user %s", book_id, user.status.value, user_id)
            raise InactiveUserError(f"User {user_id} is {user.status.value} and cannot borrow.")

        with self._locked(f"book:{book_id}"):
            try:
                book = self._take_copy(book_id)
            except UnavailableError:
                logger.warning("No copies of %s left to lend to %s", book_id, user_id)
                raise

            now = self.now()
            loan = Loan(
                id=_new_id("loan"),
                book_id=book.id,
                book_title=book.title,
                user_id=user.id,
                student_name=user.name,
                issue_date=now,
                due_date=now + timedelta(days=duration_days),
                status=LoanStatus.ACTIVE,
                original_location=book.location.copy(),
                notes=notes.strip() if notes and notes.strip() else None,
            )
            try:
                self.ledger.insert(loan)
            except Exception:
                logger.error("Recording loan for %s failed, putting the copy back", book_id)
                self._restore_copy(book_id)
                raise

        logger.info("Issued %s (%s) to %s until %s", book.id, loan.id, user.id, loan.due_date.isoformat())
        return loan

    def return_loan(self, loan_id: str, condition: ReturnCondition | str, notes: str = "") -> Loan:
        """Close an open loan, charging the overdue penalty.

        A ``lost`` copy closes the loan as lost and is not put back into
        circulation; ``total_copies`` is left as it is.
        """
        condition = ReturnCondition(condition)
        if self.ledger.get(loan_id) is None:
            raise NotFoundError("Loan", loan_id)
        with self._locked(f"loan:{loan_id}"):
            for attempt in range(self.max_retries):
                loan = self.ledger.get(loan_id)
                if loan is None:
                    raise NotFoundError("Loan", loan_id)
                if not loan.is_open:
                    raise AlreadyClosedError(f"Loan {loan_id} is already {loan.status.value}.")

                # penalty is fixed before the status changes
                now = self.now()
                penalty = compute_penalty(loan, now, self.penalty_rate_per_day)
                status = LoanStatus.LOST if condition == ReturnCondition.LOST else LoanStatus.RETURNED
                closed = self.ledger.close(
                    loan_id,
                    loan.status,
                    status=status,
                    return_date=now,
                    condition_on_return=condition,
                    penalty_amount=penalty,
                    notes=_join_notes(loan.notes, notes),
                )
                if closed is not None:
                    break
                logger.debug("Loan %s changed while returning (attempt %d)", loan_id, attempt + 1)
            else:
                raise ConflictError(f"Could not close loan {loan_id} after {self.max_retries} attempts.")

            if status == LoanStatus.RETURNED:
                with self._locked(f"book:{loan.book_id}"):
                    try:
                        self._restore_copy(loan.book_id)
                    except Exception:
                        logger.error("Could not restock %s, reopening loan %s", loan.book_id, loan_id)
                        self.ledger.update(
                            loan_id,
                            status=loan.status,
                            return_date=None,
                            condition_on_return=None,
                            penalty_amount=loan.penalty_amount,
                            notes=loan.notes,
                        )
                        raise

        logger.info("Loan %s closed as %s with penalty %d", loan_id, status.value, penalty)
        return closed

    def append_note(self, loan_id: str, note: str) -> Loan:
        """Add a note to any loan, open or closed."""
        if not note or not note.strip():
            raise ValueError("Note cannot be empty.")
        if self.ledger.get(loan_id) is None:
            raise NotFoundError("Loan", loan_id)
        with self._locked(f"loan:{loan_id}"):
            loan = self.ledger.get(loan_id)
            if loan is None:
                raise NotFoundError("Loan", loan_id)
            return self.ledger.update(loan_id, notes=_join_notes(loan.notes, note))

    # ------------------------- Reads ------------------------- #
    def _with_effective_status(self, loan: Loan, now: datetime) -> Loan:
        loan.status = get_loan_status(loan, now)
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.ledger.get(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        return self._with_effective_status(loan, self.now())

    def list_loans(self, status: Optional[str] = None, user_id: Optional[str] = None,
                   query: Optional[str] = None) -> List[Loan]:
        """Loans with their status recomputed for the current time.

        ``status="active"`` covers overdue loans too, since they are still out.
        ``query`` matches book title, borrower name, book id or user id.
        """
        now = self.now()
        loans = [self._with_effective_status(loan, now) for loan in self.ledger.list()]

        if status and status != "all":
            wanted = LoanStatus(status)
            if wanted == LoanStatus.ACTIVE:
                loans = [l for l in loans if l.is_open]
            else:
                loans = [l for l in loans if l.status == wanted]
        if user_id:
            loans = [l for l in loans if l.user_id == user_id]
        if query:
            term = query.lower().strip()
            loans = [
                l for l in loans
                if term in l.book_title.lower()
                or term in l.student_name.lower()
                or term in l.book_id.lower()
                or term in l.user_id.lower()
            ]
        return loans

    def visible_loans(self, current_user: User, **filters) -> List[Loan]:
        """Admins see every loan, other users only their own."""
        if current_user.is_admin:
            return self.list_loans(**filters)
        filters["user_id"] = current_user.id
        return self.list_loans(**filters)

    def refresh_statuses(self) -> int:
        """Write recomputed statuses of open loans back to the ledger cache."""
        now = self.now()
        changed = 0
        for loan in self.ledger.list():
            if not loan.is_open:
                continue
            effective = get_loan_status(loan, now)
            if effective != loan.status and self.ledger.close(loan.id, loan.status, status=effective):
                changed += 1
        if changed:
            logger.info("Refreshed status of %d loans", changed)
        return changed

    def statistics(self) -> Dict[str, int]:
        now = self.now()
        loans = [self._with_effective_status(loan, now) for loan in self.ledger.list()]
        books = self.catalog.list()
        total = sum(b.total_copies for b in books)
        available = sum(b.remaining_copies for b in books)
        return {
            "active": sum(1 for l in loans if l.is_open),
            "overdue": sum(1 for l in loans if l.status == LoanStatus.OVERDUE),
            "returned": sum(1 for l in loans if l.status == LoanStatus.RETURNED),
            "lost": sum(1 for l in loans if l.status == LoanStatus.LOST),
            "new_today": sum(1 for l in loans if l.issue_date.date() == now.date()),
            "books": len(books),
            "total_copies": total,
            "available_copies": available,
            "borrowed": total - available,
        }

    def notifications_for(self, user_id: str) -> List[str]:
        user = self.directory.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return derive_notifications(self.ledger.list(), user, self.now())

    # ------------------------- Bulk import ------------------------- #
    def import_loans(self, records: Iterable[Dict[str, Any]]) -> ImportReport:
        """Issue one loan per record through ``issue_loan``.

        Each record needs ``book_id`` and ``user_id`` and may carry
        ``duration_days`` and ``notes``. Bad records are reported, not fatal.
        """
        report = ImportReport()
        for index, record in enumerate(records):
            if not isinstance(record, Mapping):
                report.failures.append(ImportFailure(index, record, "Record must be an object with book_id and user_id."))
                continue
            try:
                duration = record.get("duration_days", settings.default_loan_days)
                # only int-valued strings are converted; issue_loan validates the rest
                if isinstance(duration, str) and duration.strip().isdigit():
                    duration = int(duration)
                loan = self.issue_loan(record["book_id"], record["user_id"], duration, record.get("notes"))
            except KeyError as e:
                report.failures.append(ImportFailure(index, record, f"Missing field {e}"))
            except (CirculationError, ValueError, TypeError) as e:
                report.failures.append(ImportFailure(index, record, str(e)))
            else:
                report.issued.append(loan)
        logger.info("Imported %d loans, %d records rejected", len(report.issued), len(report.failures))
        return report

    # ------------------------- Catalog & directory ------------------------- #
    def add_book(self, book: Book) -> Book:
        self.catalog.add(book)
        return book

    def get_book(self, book_id: str) -> Book:
        book = self.catalog.get(book_id)
        if book is None:
            raise NotFoundError("Book", book_id)
        return book

    def list_books(self) -> List[Book]:
        return self.catalog.list()

    def update_book(self, book_id: str, **fields) -> Book:
        """Direct catalog edit.

        Changing ``total_copies`` alone keeps the copies currently on loan
        out, shifting ``remaining_copies`` by the same amount.
        """
        if not fields:
            raise ValueError("Nothing to update.")
        self.get_book(book_id)
        with self._locked(f"book:{book_id}"):
            book = self.get_book(book_id)
            if "total_copies" in fields and "remaining_copies" not in fields:
                fields["remaining_copies"] = rebalanced(book, fields["total_copies"])
            return self.catalog.update(book_id, **fields)

    def add_user(self, user: User) -> User:
        self.directory.add(user)
        return user

    def update_user(self, user_id: str, **fields) -> User:
        """Edit a directory entry, e.g. suspend or reactivate a borrower.

        Open loans are untouched; a suspended user can still return them.
        """
        if not fields:
            raise ValueError("Nothing to update.")
        if "id" in fields:
            raise ValueError("User id cannot be changed.")
        user = self.directory.update(user_id, **fields)
        logger.info("Updated user %s (%s)", user_id, ", ".join(sorted(fields)))
        return user

    def get_user(self, user_id: str) -> User:
        user = self.directory.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def list_users(self) -> List[User]:
        return self.directory.list()
