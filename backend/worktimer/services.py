from __future__ import annotations

import datetime as dt
from contextlib import contextmanager
from typing import Generator, List, Optional

from fastapi import HTTPException, status

from .errors import (
    InvalidTransitionError,
    ReservationNotFoundError,
    StoreUnavailableError,
    TransactionConflictError,
)
from .models import Reservation, WorkLog
from .store import ReservationStore, WorkLogLedger
from .utils import next_occurrence, parse_hhmm


@contextmanager
def translate_errors() -> Generator[None, None, None]:
    """Map store and state-machine failures onto HTTP responses."""
    try:
        yield
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ReservationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransactionConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="The session was changed concurrently, please retry",
        ) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Session store unavailable"
        ) from exc


def _validated_time(value: str) -> str:
    try:
        hours, minutes = parse_hhmm(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return f"{hours:02d}:{minutes:02d}"


def list_reservations(store: ReservationStore, user_id: str) -> List[Reservation]:
    return store.list_for_user(user_id)


def save_break_reservation(
    store: ReservationStore,
    user_id: str,
    user_name: Optional[str],
    time_value: str,
    now: dt.datetime,
    replace_id: Optional[str] = None,
) -> Reservation:
    """Create a break reservation, or move an existing one to a new time."""
    hhmm = _validated_time(time_value)
    reservation_id = store.break_id(user_id, hhmm)
    if replace_id and replace_id != reservation_id:
        with translate_errors():
            existing = store.get(replace_id)
            if existing.user_id != user_id or existing.action != "break":
                raise ReservationNotFoundError(f"Reservation {replace_id} not found")
            store.delete(replace_id, user_id)
    with translate_errors():
        return store.save(reservation_id, user_id, user_name, "break", next_occurrence(hhmm, now))


def set_stop_reservation(
    store: ReservationStore,
    user_id: str,
    user_name: Optional[str],
    time_value: str,
    now: dt.datetime,
) -> Reservation:
    hhmm = _validated_time(time_value)
    with translate_errors():
        return store.save(store.stop_id(user_id), user_id, user_name, "stop", next_occurrence(hhmm, now))


def cancel_stop_reservation(store: ReservationStore, user_id: str) -> None:
    with translate_errors():
        store.delete(store.stop_id(user_id), user_id)


def delete_reservation(store: ReservationStore, user_id: str, reservation_id: str) -> None:
    with translate_errors():
        store.delete(reservation_id, user_id)


def list_work_logs(ledger: WorkLogLedger, user_id: str, day: Optional[dt.date]) -> List[WorkLog]:
    return ledger.list_for_user(user_id, day)
