from datetime import datetime, timedelta, timezone

import pytest

from circulation import (
    Book,
    CirculationEngine,
    MemoryCatalogStore,
    MemoryDirectoryStore,
    MemoryLoanLedger,
    ShelfLocation,
    User,
    UserRole,
    UserStatus,
)
from circulation.database import open_stores


class FakeClock:
    """Controllable clock handed to the engine in tests."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


def seed(engine: CirculationEngine) -> None:
    engine.add_book(Book(
        id="bk-1",
        title="Introduction to Algorithms",
        author="Cormen",
        total_copies=2,
        location=ShelfLocation("A", "12", "3"),
    ))
    engine.add_book(Book(id="bk-2", title="Clean Code", author="Martin", total_copies=1))
    engine.add_user(User(id="u-admin", name="Admin", role=UserRole.ADMIN))
    engine.add_user(User(id="u-a", name="Alice", role=UserRole.STUDENT))
    engine.add_user(User(id="u-b", name="Bob", role=UserRole.PROFESSOR))
    engine.add_user(User(id="u-c", name="Carol", role=UserRole.STAFF))
    engine.add_user(User(id="u-s", name="Sam", status=UserStatus.SUSPENDED))
    engine.add_user(User(id="u-i", name="Ivy", status=UserStatus.INACTIVE))


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine(clock):
    eng = CirculationEngine(
        MemoryCatalogStore(),
        MemoryDirectoryStore(),
        MemoryLoanLedger(),
        penalty_rate_per_day=2,
        max_retries=5,
        clock=clock,
    )
    seed(eng)
    return eng


@pytest.fixture
def sqlite_engine(tmp_path, clock):
    # Each test gets its own database file
    db_file = str(tmp_path / "circulation.db")
    eng = CirculationEngine(*open_stores(db_file), penalty_rate_per_day=2, clock=clock)
    seed(eng)
    return eng
