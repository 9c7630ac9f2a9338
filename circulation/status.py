"""Time-derived loan status and penalty arithmetic.

Everything here is a pure function of a loan and a point in time. An open
loan becomes overdue strictly after its due date; a loan due exactly ``now``
is still active.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from .config import settings
from .models import Loan, LoanStatus, parse_datetime

ONE_DAY = timedelta(days=1)


def _ceil_days(delta: timedelta) -> int:
    days, rest = divmod(delta, ONE_DAY)
    return days + (1 if rest else 0)


def is_overdue(loan: Loan, now: datetime) -> bool:
    return loan.is_open and parse_datetime(now) > loan.due_date


def get_loan_status(loan: Loan, now: datetime) -> LoanStatus:
    """Effective status of ``loan`` at ``now``.

    Terminal states are returned as stored. For open loans the stored value
    is ignored and recomputed from the due date.
    """
    if loan.status.is_terminal:
        return loan.status
    return LoanStatus.OVERDUE if is_overdue(loan, now) else LoanStatus.ACTIVE


def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days late, rounded up; 0 when not past due."""
    delta = parse_datetime(now) - parse_datetime(due_date)
    if delta <= timedelta(0):
        return 0
    return _ceil_days(delta)


def days_remaining(loan: Loan, now: datetime) -> int:
    if not loan.is_open:
        return 0
    delta = loan.due_date - parse_datetime(now)
    if delta <= timedelta(0):
        return 0
    return _ceil_days(delta)


def compute_penalty(loan: Loan, now: datetime, rate: Optional[int] = None) -> int:
    if rate is None:
        rate = settings.penalty_rate_per_day
    return days_overdue(loan.due_date, now) * rate
