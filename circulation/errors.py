"""Error taxonomy raised by the circulation engine.

Every failure is reported synchronously; when one of these is raised the
operation has left the stores exactly as it found them.
"""


class CirculationError(Exception):
    """Base class for circulation failures."""


class NotFoundError(CirculationError):
    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} {key} not found.")
        self.kind = kind
        self.key = key


class UnavailableError(CirculationError):
    """No remaining copies of the requested book."""


class InactiveUserError(CirculationError):
    """Borrower is suspended or inactive."""


class AlreadyClosedError(CirculationError):
    """Loan is already returned or lost."""


class ConflictError(CirculationError):
    """A concurrent write kept winning the copy-count race."""
