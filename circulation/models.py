from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum

from .inventory import check_copy_counts


class UserRole(str, Enum):
    STUDENT = "student"
    PROFESSOR = "professor"
    STAFF = "staff"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.RETURNED, LoanStatus.LOST)


class ReturnCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    DAMAGED = "damaged"
    LOST = "lost"


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Read an ISO-8601 string (or datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return parse_datetime(value).isoformat()


class ShelfLocation:
    """Where a copy lives on the shelves: cabinet, shelf number and order."""

    def __init__(self, cabinet: str = "", book_shelf_number: str = "", shelf_order: str = "") -> None:
        self.cabinet = cabinet
        self.book_shelf_number = book_shelf_number
        self.shelf_order = shelf_order

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ShelfLocation):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"ShelfLocation({self.cabinet!r}, {self.book_shelf_number!r}, {self.shelf_order!r})"

    def copy(self) -> "ShelfLocation":
        return ShelfLocation(self.cabinet, self.book_shelf_number, self.shelf_order)

    def to_dict(self) -> dict:
        return {
            "cabinet": self.cabinet,
            "book_shelf_number": self.book_shelf_number,
            "shelf_order": self.shelf_order,
        }

    @staticmethod
    def from_dict(data: dict | str | None) -> "ShelfLocation":
        if isinstance(data, ShelfLocation):
            return data.copy()
        # SQLite keeps the snapshot as a JSON string
        if isinstance(data, str):
            data = json.loads(data) if data else {}
        data = data or {}
        return ShelfLocation(
            cabinet=data.get("cabinet") or "",
            book_shelf_number=data.get("book_shelf_number") or "",
            shelf_order=data.get("shelf_order") or "",
        )


class Book:
    """A catalog title with its multi-copy inventory."""

    def __init__(self, id: str, title: str, author: str = "", total_copies: int = 1,
                 remaining_copies: int | None = None, code: str = "", specialization: str = "",
                 department: str = "", location: ShelfLocation | None = None,
                 price: float = 0.0) -> None:
        if remaining_copies is None:
            remaining_copies = total_copies
        check_copy_counts(total_copies, remaining_copies)
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.code = code
        self.specialization = specialization
        self.department = department
        self.location = location or ShelfLocation()
        self.total_copies = total_copies
        self.remaining_copies = remaining_copies
        self.price = price

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.remaining_copies}/{self.total_copies} available)"

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.remaining_copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "code": self.code,
            "specialization": self.specialization,
            "department": self.department,
            "location": self.location.to_dict(),
            "total_copies": self.total_copies,
            "remaining_copies": self.remaining_copies,
            "price": self.price,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        location = data.get("location")
        if location is None and "cabinet" in data:
            # flat SQLite row
            location = {
                "cabinet": data.get("cabinet"),
                "book_shelf_number": data.get("book_shelf_number"),
                "shelf_order": data.get("shelf_order"),
            }
        return Book(
            id=data["id"],
            title=data["title"],
            author=data.get("author") or "",
            total_copies=int(data.get("total_copies", 1)),
            remaining_copies=data.get("remaining_copies"),
            code=data.get("code") or "",
            specialization=data.get("specialization") or "",
            department=data.get("department") or "",
            location=ShelfLocation.from_dict(location),
            price=float(data.get("price") or 0.0),
        )


class User:
    """A library patron or staff member."""

    def __init__(self, id: str, name: str, email: str = "", role: UserRole | str = UserRole.STUDENT,
                 status: UserStatus | str = UserStatus.ACTIVE, department: str | None = None,
                 phone: str | None = None, join_date: str | None = None, visits: int = 0) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email
        self.role = UserRole(role)
        self.status = UserStatus(status)
        self.department = department
        self.phone = phone
        self.join_date = join_date
        self.visits = visits

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def can_borrow(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "status": self.status.value,
            "department": self.department,
            "phone": self.phone,
            "join_date": self.join_date,
            "visits": self.visits,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data["id"],
            name=data["name"],
            email=data.get("email") or "",
            role=data.get("role") or UserRole.STUDENT,
            status=data.get("status") or UserStatus.ACTIVE,
            department=data.get("department"),
            phone=data.get("phone"),
            join_date=data.get("join_date"),
            visits=int(data.get("visits") or 0),
        )


class Loan:
    """One copy of a book lent to one user.

    ``book_title`` and ``student_name`` are display snapshots taken at issue
    time; ``book_id`` and ``user_id`` are the authoritative references. The
    stored ``status`` is only a cache for open loans, see ``status.get_loan_status``.
    """

    def __init__(self, id: str, book_id: str, user_id: str, issue_date: datetime, due_date: datetime,
                 status: LoanStatus | str = LoanStatus.ACTIVE, book_title: str = "", student_name: str = "",
                 original_location: ShelfLocation | None = None, return_date: datetime | None = None,
                 condition_on_return: ReturnCondition | str | None = None,
                 penalty_amount: int | None = None, notes: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.book_title = book_title
        self.student_name = student_name
        self.issue_date = parse_datetime(issue_date)
        self.due_date = parse_datetime(due_date)
        self.status = LoanStatus(status)
        self.original_location = original_location or ShelfLocation()
        self.return_date = parse_datetime(return_date)
        self.condition_on_return = ReturnCondition(condition_on_return) if condition_on_return else None
        self.penalty_amount = penalty_amount
        self.notes = notes

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"Loan({self.id!r}, book={self.book_id!r}, user={self.user_id!r}, status={self.status.value})"

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def copy(self) -> "Loan":
        return Loan.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "user_id": self.user_id,
            "student_name": self.student_name,
            "issue_date": format_datetime(self.issue_date),
            "due_date": format_datetime(self.due_date),
            "return_date": format_datetime(self.return_date),
            "status": self.status.value,
            "original_location": self.original_location.to_dict(),
            "condition_on_return": self.condition_on_return.value if self.condition_on_return else None,
            "penalty_amount": self.penalty_amount,
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data["id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            book_title=data.get("book_title") or "",
            student_name=data.get("student_name") or "",
            issue_date=data["issue_date"],
            due_date=data["due_date"],
            return_date=data.get("return_date"),
            status=data.get("status") or LoanStatus.ACTIVE,
            original_location=ShelfLocation.from_dict(data.get("original_location")),
            condition_on_return=data.get("condition_on_return"),
            penalty_amount=data.get("penalty_amount"),
            notes=data.get("notes"),
        )
