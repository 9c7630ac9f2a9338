import json
import logging
import os
import sqlite3
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from .config import settings
from .errors import NotFoundError
from .inventory import check_copy_counts
from .models import Book, Loan, LoanStatus, User, format_datetime
from .stores import CatalogStore, DirectoryStore, LoanLedger, user_with_fields

# Make sure .env is loaded before LIBRARY_DB_FILE is read below.
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file

BOOK_COLUMNS = (
    "id", "title", "author", "code", "specialization", "department",
    "cabinet", "book_shelf_number", "shelf_order",
    "total_copies", "remaining_copies", "price",
)
USER_COLUMNS = (
    "id", "name", "email", "role", "status", "department", "phone", "join_date", "visits",
)
LOAN_COLUMNS = (
    "id", "book_id", "book_title", "user_id", "student_name",
    "issue_date", "due_date", "return_date", "status",
    "original_location", "condition_on_return", "penalty_amount", "notes",
)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the catalog, directory and loan tables if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT '',
                code TEXT NOT NULL DEFAULT '',
                specialization TEXT NOT NULL DEFAULT '',
                department TEXT NOT NULL DEFAULT '',
                cabinet TEXT NOT NULL DEFAULT '',
                book_shelf_number TEXT NOT NULL DEFAULT '',
                shelf_order TEXT NOT NULL DEFAULT '',
                total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
                remaining_copies INTEGER NOT NULL
                    CHECK(remaining_copies >= 0 AND remaining_copies <= total_copies),
                price REAL NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL CHECK(role IN ('student', 'professor', 'staff', 'admin')),
                status TEXT NOT NULL CHECK(status IN ('active', 'inactive', 'suspended')),
                department TEXT,
                phone TEXT,
                join_date TEXT,
                visits INTEGER NOT NULL DEFAULT 0
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                book_title TEXT NOT NULL DEFAULT '',
                user_id TEXT NOT NULL,
                student_name TEXT NOT NULL DEFAULT '',
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL CHECK(status IN ('active', 'overdue', 'returned', 'lost')),
                original_location TEXT,
                condition_on_return TEXT,
                penalty_amount INTEGER,
                notes TEXT,
                FOREIGN KEY (book_id) REFERENCES books(id),
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status ON loans(status)")
        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables when needed."""
    create_tables(db_file)


# ------------------------- Row conversion ------------------------- #
def _book_row(book: Book) -> Tuple:
    return (
        book.id, book.title, book.author, book.code, book.specialization, book.department,
        book.location.cabinet, book.location.book_shelf_number, book.location.shelf_order,
        book.total_copies, book.remaining_copies, book.price,
    )


def _loan_value(name: str, value):
    if name == "original_location":
        return json.dumps(value.to_dict() if hasattr(value, "to_dict") else value, ensure_ascii=False)
    if name in ("issue_date", "due_date", "return_date"):
        return format_datetime(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _loan_row(loan: Loan) -> Tuple:
    data = loan.to_dict()
    return tuple(_loan_value(name, data[name]) for name in LOAN_COLUMNS)


def _placeholders(columns: Tuple[str, ...]) -> str:
    return ", ".join("?" for _ in columns)


# ------------------------- Stores ------------------------- #
class SQLiteCatalogStore(CatalogStore):
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE

    def add(self, book: Book) -> None:
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                f"INSERT INTO books ({', '.join(BOOK_COLUMNS)}) VALUES ({_placeholders(BOOK_COLUMNS)})",
                _book_row(book),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with id {book.id} already exists.") from e
        finally:
            conn.close()

    def get(self, book_id: str) -> Optional[Book]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                f"SELECT {', '.join(BOOK_COLUMNS)} FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list(self) -> List[Book]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"SELECT {', '.join(BOOK_COLUMNS)} FROM books ORDER BY title").fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update(self, book_id: str, **fields) -> Book:
        book = self.get(book_id)
        if book is None:
            raise NotFoundError("Book", book_id)
        for name, value in fields.items():
            if not hasattr(book, name):
                raise ValueError(f"Unknown book field: {name}")
            setattr(book, name, value)
        check_copy_counts(book.total_copies, book.remaining_copies)

        row = _book_row(book)
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                f"UPDATE books SET {', '.join(f'{c} = ?' for c in BOOK_COLUMNS[1:])} WHERE id = ?",
                row[1:] + (book_id,),
            )
            conn.commit()
            return book
        finally:
            conn.close()

    def compare_and_set_remaining(self, book_id: str, expected: int, new: int) -> bool:
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "UPDATE books SET remaining_copies = ? "
                "WHERE id = ? AND remaining_copies = ? AND ? BETWEEN 0 AND total_copies",
                (new, book_id, expected, new),
            )
            conn.commit()
            if cursor.rowcount == 1:
                return True
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFoundError("Book", book_id)
            return False
        finally:
            conn.close()


class SQLiteDirectoryStore(DirectoryStore):
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE

    def add(self, user: User) -> None:
        data = user.to_dict()
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                f"INSERT INTO users ({', '.join(USER_COLUMNS)}) VALUES ({_placeholders(USER_COLUMNS)})",
                tuple(data[c] for c in USER_COLUMNS),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User with id {user.id} already exists.") from e
        finally:
            conn.close()

    def get(self, user_id: str) -> Optional[User]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                f"SELECT {', '.join(USER_COLUMNS)} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            return User.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list(self) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"SELECT {', '.join(USER_COLUMNS)} FROM users ORDER BY name").fetchall()
            return [User.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def update(self, user_id: str, **fields) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        data = user_with_fields(user, fields).to_dict()
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                f"UPDATE users SET {', '.join(f'{c} = ?' for c in USER_COLUMNS[1:])} WHERE id = ?",
                tuple(data[c] for c in USER_COLUMNS[1:]) + (user_id,),
            )
            conn.commit()
            return User.from_dict(data)
        finally:
            conn.close()


class SQLiteLoanLedger(LoanLedger):
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE

    def insert(self, loan: Loan) -> None:
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                f"INSERT INTO loans ({', '.join(LOAN_COLUMNS)}) VALUES ({_placeholders(LOAN_COLUMNS)})",
                _loan_row(loan),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Loan {loan.id} could not be stored: {e}") from e
        finally:
            conn.close()

    def get(self, loan_id: str) -> Optional[Loan]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                f"SELECT {', '.join(LOAN_COLUMNS)} FROM loans WHERE id = ?", (loan_id,)
            ).fetchone()
            return Loan.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list(self) -> List[Loan]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"SELECT {', '.join(LOAN_COLUMNS)} FROM loans ORDER BY issue_date").fetchall()
            return [Loan.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def _write(self, loan_id: str, fields: dict, expected_status: Optional[LoanStatus]) -> int:
        for name in fields:
            if name not in LOAN_COLUMNS or name == "id":
                raise ValueError(f"Unknown loan field: {name}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_loan_value(name, value) for name, value in fields.items()] + [loan_id]
        sql = f"UPDATE loans SET {assignments} WHERE id = ?"
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(LoanStatus(expected_status).value)

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def update(self, loan_id: str, **fields) -> Loan:
        if self.get(loan_id) is None:
            raise NotFoundError("Loan", loan_id)
        if fields:
            self._write(loan_id, fields, None)
        return self.get(loan_id)

    def close(self, loan_id: str, expected_status: LoanStatus, **fields) -> Optional[Loan]:
        if self.get(loan_id) is None:
            raise NotFoundError("Loan", loan_id)
        if self._write(loan_id, fields, expected_status) != 1:
            logger.debug("Conditional update of loan %s lost the race", loan_id)
            return None
        return self.get(loan_id)


def open_stores(db_file: Optional[str] = None) -> Tuple[SQLiteCatalogStore, SQLiteDirectoryStore, SQLiteLoanLedger]:
    """Initialise ``db_file`` and return catalog, directory and ledger stores over it."""
    db_file = db_file or os.environ.get("LIBRARY_DB_FILE") or DATABASE_FILE
    initialize_database(db_file)
    logger.info("Using circulation database %s", db_file)
    return SQLiteCatalogStore(db_file), SQLiteDirectoryStore(db_file), SQLiteLoanLedger(db_file)
