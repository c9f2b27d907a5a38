from __future__ import annotations

from typing import Optional


class WorktimerError(RuntimeError):
    """Base class for session and reservation failures."""


class TransactionConflictError(WorktimerError):
    """A read-modify-write lost against a concurrent writer too many times."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class StoreUnavailableError(WorktimerError):
    """The document store could not be reached or refused the operation."""


class InvalidTransitionError(WorktimerError):
    """The requested transition does not apply to the current session state."""

    def __init__(self, message: str, *, current_task: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_task = current_task


class ReservationNotFoundError(WorktimerError):
    """No reservation exists under the requested id."""
