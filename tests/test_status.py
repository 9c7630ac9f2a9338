from datetime import datetime, timedelta, timezone

import pytest

from circulation import Loan, LoanStatus, compute_penalty, days_overdue, days_remaining, get_loan_status, is_overdue

DUE = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_loan(status=LoanStatus.ACTIVE, due=DUE):
    return Loan(
        id="loan-1",
        book_id="bk-1",
        user_id="u-a",
        issue_date=due - timedelta(days=14),
        due_date=due,
        status=status,
    )


def test_due_exactly_now_is_not_overdue():
    loan = make_loan()
    assert not is_overdue(loan, DUE)
    assert get_loan_status(loan, DUE) == LoanStatus.ACTIVE
    assert days_overdue(DUE, DUE) == 0
    assert compute_penalty(loan, DUE, 2) == 0


def test_one_second_past_due_is_one_day_overdue():
    loan = make_loan()
    now = DUE + timedelta(seconds=1)
    assert get_loan_status(loan, now) == LoanStatus.OVERDUE
    assert days_overdue(DUE, now) == 1
    assert compute_penalty(loan, now, 2) == 2


@pytest.mark.parametrize("delta, expected", [
    (timedelta(days=1), 1),
    (timedelta(days=1, seconds=1), 2),
    (timedelta(days=4), 4),
    (timedelta(days=-3), 0),
])
def test_days_overdue_rounds_up(delta, expected):
    assert days_overdue(DUE, DUE + delta) == expected


def test_stored_overdue_is_only_a_cache():
    loan = make_loan(status=LoanStatus.OVERDUE)
    assert get_loan_status(loan, DUE - timedelta(hours=1)) == LoanStatus.ACTIVE


@pytest.mark.parametrize("status", [LoanStatus.RETURNED, LoanStatus.LOST])
def test_terminal_status_is_never_recomputed(status):
    loan = make_loan(status=status)
    assert get_loan_status(loan, DUE + timedelta(days=30)) == status
    assert days_remaining(loan, DUE - timedelta(days=3)) == 0


def test_naive_datetimes_are_read_as_utc():
    loan = make_loan()
    assert get_loan_status(loan, datetime(2024, 1, 2)) == LoanStatus.OVERDUE


def test_penalty_uses_configured_rate_by_default(monkeypatch):
    from circulation import status

    monkeypatch.setattr(status.settings, "penalty_rate_per_day", 5)
    assert compute_penalty(make_loan(), DUE + timedelta(days=3)) == 15


def test_days_remaining():
    loan = make_loan()
    assert days_remaining(loan, DUE - timedelta(days=2, hours=1)) == 3
    assert days_remaining(loan, DUE + timedelta(days=1)) == 0
