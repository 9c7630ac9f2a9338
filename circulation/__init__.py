"""Library circulation manager.

Core package of the circulation service:
- Circulation engine: issuing and returning loans (engine.py)
- Overdue status and penalty rules (status.py)
- Copy-count invariant helpers (inventory.py)
- Notification deriver (notifications.py)
- Store interfaces and SQLite persistence (stores.py, database.py)
- HTTP API (api.py) and CLI (main.py)
"""

from .config import Settings, settings
from .engine import CirculationEngine, ImportFailure, ImportReport
from .errors import (
    AlreadyClosedError,
    CirculationError,
    ConflictError,
    InactiveUserError,
    NotFoundError,
    UnavailableError,
)
from .models import (
    Book,
    Loan,
    LoanStatus,
    ReturnCondition,
    ShelfLocation,
    User,
    UserRole,
    UserStatus,
)
from .notifications import derive_notifications
from .status import compute_penalty, days_overdue, days_remaining, get_loan_status, is_overdue
from .stores import (
    CatalogStore,
    DirectoryStore,
    LoanLedger,
    MemoryCatalogStore,
    MemoryDirectoryStore,
    MemoryLoanLedger,
)

__all__ = [
    "Settings",
    "settings",
    "CirculationEngine",
    "ImportFailure",
    "ImportReport",
    "AlreadyClosedError",
    "CirculationError",
    "ConflictError",
    "InactiveUserError",
    "NotFoundError",
    "UnavailableError",
    "Book",
    "Loan",
    "LoanStatus",
    "ReturnCondition",
    "ShelfLocation",
    "User",
    "UserRole",
    "UserStatus",
    "derive_notifications",
    "compute_penalty",
    "days_overdue",
    "days_remaining",
    "get_loan_status",
    "is_overdue",
    "CatalogStore",
    "DirectoryStore",
    "LoanLedger",
    "MemoryCatalogStore",
    "MemoryDirectoryStore",
    "MemoryLoanLedger",
]
