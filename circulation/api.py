import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config import settings
from .database import get_db_connection, open_stores
from .engine import CirculationEngine
from .errors import (
    AlreadyClosedError,
    CirculationError,
    ConflictError,
    InactiveUserError,
    NotFoundError,
    UnavailableError,
)
from .models import Book, ReturnCondition, ShelfLocation, User, UserRole, UserStatus

logger = logging.getLogger(__name__)

catalog, directory, ledger = open_stores()
engine = CirculationEngine(catalog, directory, ledger)

app = FastAPI(title=settings.app_name, version=settings.app_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    else:
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


_STATUS_CODES = (
    (NotFoundError, 404),
    (InactiveUserError, 403),
    (UnavailableError, 409),
    (AlreadyClosedError, 409),
    (ConflictError, 409),
)


def _http_error(exc: Exception) -> HTTPException:
    for kind, code in _STATUS_CODES:
        if isinstance(exc, kind):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# --- Models ---
class LocationModel(BaseModel):
    cabinet: str = ""
    book_shelf_number: str = ""
    shelf_order: str = ""


class BookModel(BaseModel):
    id: str
    title: str
    author: str
    code: str
    specialization: str
    department: str
    location: LocationModel
    total_copies: int
    remaining_copies: int
    price: float


class BookCreateModel(BaseModel):
    id: str
    title: str
    author: str = ""
    code: str = ""
    specialization: str = ""
    department: str = ""
    location: LocationModel = Field(default_factory=LocationModel)
    total_copies: int = Field(1, ge=0)
    remaining_copies: Optional[int] = Field(None, ge=0)
    price: float = 0.0


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    specialization: Optional[str] = None
    department: Optional[str] = None
    location: Optional[LocationModel] = None
    total_copies: Optional[int] = Field(None, ge=0)
    remaining_copies: Optional[int] = Field(None, ge=0)
    price: Optional[float] = None


class UserModel(BaseModel):
    id: str
    name: str
    email: str = ""
    role: UserRole = UserRole.STUDENT
    status: UserStatus = UserStatus.ACTIVE
    department: Optional[str] = None
    phone: Optional[str] = None
    join_date: Optional[str] = None
    visits: int = 0


class UpdateUserModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None
    department: Optional[str] = None
    phone: Optional[str] = None


class LoanModel(BaseModel):
    id: str
    book_id: str
    book_title: str
    user_id: str
    student_name: str
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: str
    original_location: LocationModel
    condition_on_return: Optional[str] = None
    penalty_amount: Optional[int] = None
    notes: Optional[str] = None


class IssueLoanModel(BaseModel):
    book_id: str
    user_id: str
    duration_days: int = Field(default_factory=lambda: settings.default_loan_days, gt=0)
    notes: Optional[str] = None


class ReturnLoanModel(BaseModel):
    condition: ReturnCondition
    notes: str = ""


class NoteModel(BaseModel):
    note: str = Field(..., min_length=1)


class ImportRecordModel(BaseModel):
    book_id: str
    user_id: str
    duration_days: int = Field(default_factory=lambda: settings.default_loan_days)
    notes: Optional[str] = None


class ImportFailureModel(BaseModel):
    index: int
    record: Dict
    reason: str


class ImportResultModel(BaseModel):
    issued: List[LoanModel]
    failures: List[ImportFailureModel]


class StatsModel(BaseModel):
    active: int
    overdue: int
    returned: int
    lost: int
    new_today: int
    books: int
    total_copies: int
    available_copies: int
    borrowed: int


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint with a quick database check."""
    db_ok = True
    try:
        conn = get_db_connection(ledger.db_file)
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": engine.now().isoformat(),
        "db": db_ok,
        "penalty_rate_per_day": engine.penalty_rate_per_day,
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books():
    return [b.to_dict() for b in engine.list_books()]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    try:
        return engine.get_book(book_id).to_dict()
    except NotFoundError as e:
        raise _http_error(e)


@app.post("/books", response_model=BookModel, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    try:
        book = Book(
            id=payload.id,
            title=payload.title,
            author=payload.author,
            code=payload.code,
            specialization=payload.specialization,
            department=payload.department,
            location=ShelfLocation(**payload.location.model_dump()),
            total_copies=payload.total_copies,
            remaining_copies=payload.remaining_copies,
            price=payload.price,
        )
        return engine.add_book(book).to_dict()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: str, update: UpdateBookModel):
    fields = update.model_dump(exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    if "location" in fields:
        fields["location"] = ShelfLocation(**fields["location"])
    try:
        return engine.update_book(book_id, **fields).to_dict()
    except (CirculationError, ValueError) as e:
        raise _http_error(e)


# --- Users ---
@app.get("/users", response_model=List[UserModel])
def get_users():
    return [u.to_dict() for u in engine.list_users()]


@app.post("/users", response_model=UserModel, dependencies=[Depends(get_api_key)])
def add_user(payload: UserModel):
    try:
        return engine.add_user(User.from_dict(payload.model_dump())).to_dict()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/users/{user_id}", response_model=UserModel, dependencies=[Depends(get_api_key)])
def update_user(user_id: str, update: UpdateUserModel):
    fields = update.model_dump(exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    try:
        return engine.update_user(user_id, **fields).to_dict()
    except (CirculationError, ValueError) as e:
        raise _http_error(e)


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def get_loans(
    status: Optional[str] = Query(None, description="active | overdue | returned | lost | all"),
    user_id: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="Matches book title, borrower name or ids"),
):
    try:
        return [l.to_dict() for l in engine.list_loans(status=status, user_id=user_id, query=q)]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: str):
    try:
        return engine.get_loan(loan_id).to_dict()
    except NotFoundError as e:
        raise _http_error(e)


@app.post("/loans", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def issue_loan(payload: IssueLoanModel):
    try:
        loan = engine.issue_loan(payload.book_id, payload.user_id, payload.duration_days, payload.notes)
    except (CirculationError, ValueError) as e:
        raise _http_error(e)
    return loan.to_dict()


@app.post("/loans/import", response_model=ImportResultModel, dependencies=[Depends(get_api_key)])
def import_loans(records: List[ImportRecordModel]):
    report = engine.import_loans([r.model_dump() for r in records])
    return report.to_dict()


@app.post("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def return_loan(loan_id: str, payload: ReturnLoanModel):
    try:
        loan = engine.return_loan(loan_id, payload.condition, payload.notes)
    except (CirculationError, ValueError) as e:
        raise _http_error(e)
    return loan.to_dict()


@app.post("/loans/{loan_id}/notes", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def add_loan_note(loan_id: str, payload: NoteModel):
    try:
        return engine.append_note(loan_id, payload.note).to_dict()
    except (CirculationError, ValueError) as e:
        raise _http_error(e)


# --- Notifications & stats ---
@app.get("/notifications/{user_id}", response_model=List[str])
def get_notifications(user_id: str):
    try:
        return engine.notifications_for(user_id)
    except NotFoundError as e:
        raise _http_error(e)


@app.get("/stats", response_model=StatsModel)
def get_stats():
    return engine.statistics()


@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version}
