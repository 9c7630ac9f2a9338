"""Store interfaces the engine consumes, plus thread-safe in-memory versions.

Stores hand out copies: mutating a returned object never changes stored
state. All writes go through ``update``/``compare_and_set_remaining``/``close``.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from .errors import NotFoundError
from .inventory import check_copy_counts
from .models import Book, Loan, LoanStatus, User


class CatalogStore:
    def add(self, book: Book) -> None:
        raise NotImplementedError

    def get(self, book_id: str) -> Optional[Book]:
        raise NotImplementedError

    def list(self) -> List[Book]:
        raise NotImplementedError

    def update(self, book_id: str, **fields) -> Book:
        raise NotImplementedError

    def compare_and_set_remaining(self, book_id: str, expected: int, new: int) -> bool:
        """Set ``remaining_copies`` to ``new`` only if it still equals ``expected``."""
        raise NotImplementedError


class DirectoryStore:
    def add(self, user: User) -> None:
        raise NotImplementedError

    def get(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    def list(self) -> List[User]:
        raise NotImplementedError

    def update(self, user_id: str, **fields) -> User:
        raise NotImplementedError


class LoanLedger:
    def insert(self, loan: Loan) -> None:
        raise NotImplementedError

    def get(self, loan_id: str) -> Optional[Loan]:
        raise NotImplementedError

    def list(self) -> List[Loan]:
        raise NotImplementedError

    def update(self, loan_id: str, **fields) -> Loan:
        raise NotImplementedError

    def close(self, loan_id: str, expected_status: LoanStatus, **fields) -> Optional[Loan]:
        """Apply ``fields`` only if the stored status is still ``expected_status``.

        Returns the updated loan, or None when another writer got there first.
        """
        raise NotImplementedError


def user_with_fields(user: User, fields: dict) -> User:
    data = user.to_dict()
    for name, value in fields.items():
        if name not in data:
            raise ValueError(f"Unknown user field: {name}")
        data[name] = value
    return User.from_dict(data)


def _copy_book(book: Book) -> Book:
    return Book.from_dict(book.to_dict())


class MemoryCatalogStore(CatalogStore):
    def __init__(self) -> None:
        self._books: Dict[str, Book] = {}
        self._lock = threading.RLock()

    def add(self, book: Book) -> None:
        with self._lock:
            if book.id in self._books:
                raise ValueError(f"Book with id {book.id} already exists.")
            self._books[book.id] = _copy_book(book)

    def get(self, book_id: str) -> Optional[Book]:
        with self._lock:
            book = self._books.get(book_id)
            return _copy_book(book) if book else None

    def list(self) -> List[Book]:
        with self._lock:
            return [_copy_book(b) for b in self._books.values()]

    def update(self, book_id: str, **fields) -> Book:
        with self._lock:
            book = self._books.get(book_id)
            if book is None:
                raise NotFoundError("Book", book_id)
            updated = _copy_book(book)
            for name, value in fields.items():
                if not hasattr(updated, name):
                    raise ValueError(f"Unknown book field: {name}")
                setattr(updated, name, value)
            check_copy_counts(updated.total_copies, updated.remaining_copies)
            self._books[book_id] = updated
            return _copy_book(updated)

    def compare_and_set_remaining(self, book_id: str, expected: int, new: int) -> bool:
        with self._lock:
            book = self._books.get(book_id)
            if book is None:
                raise NotFoundError("Book", book_id)
            if book.remaining_copies != expected:
                return False
            check_copy_counts(book.total_copies, new)
            book.remaining_copies = new
            return True


class MemoryDirectoryStore(DirectoryStore):
    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._lock = threading.RLock()

    def add(self, user: User) -> None:
        with self._lock:
            if user.id in self._users:
                raise ValueError(f"User with id {user.id} already exists.")
            self._users[user.id] = User.from_dict(user.to_dict())

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return User.from_dict(user.to_dict()) if user else None

    def list(self) -> List[User]:
        with self._lock:
            return [User.from_dict(u.to_dict()) for u in self._users.values()]

    def update(self, user_id: str, **fields) -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            updated = user_with_fields(user, fields)
            self._users[user_id] = updated
            return User.from_dict(updated.to_dict())


class MemoryLoanLedger(LoanLedger):
    def __init__(self) -> None:
        self._loans: Dict[str, Loan] = {}
        self._lock = threading.RLock()

    def insert(self, loan: Loan) -> None:
        with self._lock:
            if loan.id in self._loans:
                raise ValueError(f"Loan with id {loan.id} already exists.")
            self._loans[loan.id] = loan.copy()

    def get(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            loan = self._loans.get(loan_id)
            return loan.copy() if loan else None

    def list(self) -> List[Loan]:
        with self._lock:
            return [loan.copy() for loan in self._loans.values()]

    def update(self, loan_id: str, **fields) -> Loan:
        with self._lock:
            loan = self._loans.get(loan_id)
            if loan is None:
                raise NotFoundError("Loan", loan_id)
            updated = _apply(loan, fields)
            self._loans[loan_id] = updated
            return updated.copy()

    def close(self, loan_id: str, expected_status: LoanStatus, **fields) -> Optional[Loan]:
        with self._lock:
            loan = self._loans.get(loan_id)
            if loan is None:
                raise NotFoundError("Loan", loan_id)
            if loan.status != expected_status:
                return None
            updated = _apply(loan, fields)
            self._loans[loan_id] = updated
            return updated.copy()


def _apply(loan: Loan, fields: dict) -> Loan:
    data = loan.to_dict()
    for name, value in fields.items():
        if name not in data:
            raise ValueError(f"Unknown loan field: {name}")
        data[name] = value
    # from_dict re-validates enums and re-parses dates
    return Loan.from_dict(data)
