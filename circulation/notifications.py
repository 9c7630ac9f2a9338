from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

from .models import Loan, LoanStatus, User
from .status import get_loan_status


def derive_notifications(loans: Iterable[Loan], current_user: User, now: datetime) -> List[str]:
    """Overdue reminders for ``current_user``.

    Admins get the system-wide overdue count, everyone else only their own.
    Nothing is produced when the count is zero.
    """
    overdue = [loan for loan in loans if get_loan_status(loan, now) == LoanStatus.OVERDUE]
    notes: List[str] = []
    if current_user.is_admin:
        if len(overdue) == 1:
            notes.append("There is 1 overdue book past its return date.")
        elif overdue:
            notes.append(f"There are {len(overdue)} overdue books past their return date.")
    else:
        mine = sum(1 for loan in overdue if loan.user_id == current_user.id)
        if mine == 1:
            notes.append("You have 1 overdue book. Please return it.")
        elif mine:
            notes.append(f"You have {mine} overdue books. Please return them.")
    return notes
