from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from threading import RLock
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import db_session, run_transaction
from .errors import ReservationNotFoundError
from .models import (
    RESERVATION_ACTIONS,
    RESERVATION_EXECUTED,
    RESERVATION_RESERVED,
    Reservation,
    SessionSnapshot,
    WorkLog,
    WorkStatus,
)
from .utils import ensure_utc, from_db_datetime

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionCallback = Callable[[SessionSnapshot], None]


class SessionStore:
    """Durable per-user session records with transactional updates and change observers."""

    def __init__(self, session_factory: Callable[[], Session], *, retries: Optional[int] = None) -> None:
        self._factory = session_factory
        self._retries = retries
        self._lock = RLock()
        self._subscribers: Dict[str, List[SessionCallback]] = defaultdict(list)

    @staticmethod
    def load(db: Session, user_id: str, user_name: Optional[str] = None) -> WorkStatus:
        """Fetch the record for update, creating the not-working default on first access."""
        record = db.get(WorkStatus, user_id)
        if record is None:
            record = WorkStatus(
                user_id=user_id,
                user_name=user_name,
                is_working=False,
                needs_checkout_correction=False,
            )
            db.add(record)
            db.flush()
        elif user_name and record.user_name != user_name:
            record.user_name = user_name
        return record

    def get(self, user_id: str, user_name: Optional[str] = None) -> SessionSnapshot:
        return run_transaction(
            self._factory,
            lambda db: self.load(db, user_id, user_name).to_snapshot(),
            retries=self._retries,
            label=f"session read for {user_id}",
        )

    def transactional_update(
        self,
        user_id: str,
        fn: Callable[[Session, WorkStatus], T],
        *,
        user_name: Optional[str] = None,
    ) -> tuple[T, SessionSnapshot]:
        """Apply ``fn`` to the user's record as one atomic read-modify-write.

        Returns ``fn``'s result together with the committed snapshot; observers
        are notified after the commit succeeded.
        """

        def _apply(db: Session) -> tuple[T, SessionSnapshot]:
            record = self.load(db, user_id, user_name)
            result = fn(db, record)
            db.flush()
            return result, record.to_snapshot()

        result, snapshot = run_transaction(
            self._factory, _apply, retries=self._retries, label=f"session update for {user_id}"
        )
        self.notify(snapshot)
        return result, snapshot

    def list_all(self) -> List[SessionSnapshot]:
        with db_session(self._factory) as db:
            records = db.execute(select(WorkStatus).order_by(WorkStatus.user_id)).scalars().all()
            return [record.to_snapshot() for record in records]

    def list_working(self) -> List[SessionSnapshot]:
        with db_session(self._factory) as db:
            records = (
                db.execute(select(WorkStatus).where(WorkStatus.is_working.is_(True))).scalars().all()
            )
            return [record.to_snapshot() for record in records]

    def subscribe(self, user_id: str, callback: SessionCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers[user_id].append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(user_id)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                if callbacks == []:
                    self._subscribers.pop(user_id, None)

        return _unsubscribe

    def notify(self, snapshot: SessionSnapshot) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(snapshot.user_id, ()))
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Session observer failed for %s", snapshot.user_id)


class WorkLogLedger:
    """Append-only access to closed task intervals."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._factory = session_factory

    @staticmethod
    def append(db: Session, entry: Optional[WorkLog]) -> Optional[WorkLog]:
        if entry is None:
            return None
        if entry.duration is None or entry.duration <= 0:
            return None
        db.add(entry)
        logger.info(
            "Logged %ss of %r for %s on %s", entry.duration, entry.task, entry.user_id, entry.date
        )
        return entry

    def list_for_user(self, user_id: str, day: Optional[dt.date] = None) -> List[WorkLog]:
        with db_session(self._factory) as db:
            query = select(WorkLog).where(WorkLog.user_id == user_id)
            if day is not None:
                query = query.where(WorkLog.date == day.isoformat())
            query = query.order_by(WorkLog.start_time, WorkLog.id)
            return list(db.execute(query).scalars().all())


class ReservationStore:
    """Per-user scheduled break/stop actions and their idempotency markers."""

    def __init__(self, session_factory: Callable[[], Session], *, retries: Optional[int] = None) -> None:
        self._factory = session_factory
        self._retries = retries

    @staticmethod
    def stop_id(user_id: str) -> str:
        return f"{user_id}_stop"

    @staticmethod
    def break_id(user_id: str, hhmm: str) -> str:
        return f"{user_id}_break_{hhmm.replace(':', '')}"

    def get(self, reservation_id: str) -> Reservation:
        with db_session(self._factory) as db:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
            return reservation

    def list_for_user(self, user_id: str) -> List[Reservation]:
        with db_session(self._factory) as db:
            query = (
                select(Reservation)
                .where(Reservation.user_id == user_id)
                .order_by(Reservation.scheduled_time)
            )
            return list(db.execute(query).scalars().all())

    def list_due(self, before: dt.datetime) -> List[Reservation]:
        with db_session(self._factory) as db:
            query = (
                select(Reservation)
                .where(Reservation.status == RESERVATION_RESERVED)
                .where(Reservation.scheduled_time <= ensure_utc(before))
                .order_by(Reservation.scheduled_time, Reservation.id)
            )
            return list(db.execute(query).scalars().all())

    def next_scheduled_time(self) -> Optional[dt.datetime]:
        with db_session(self._factory) as db:
            query = (
                select(Reservation.scheduled_time)
                .where(Reservation.status == RESERVATION_RESERVED)
                .order_by(Reservation.scheduled_time)
                .limit(1)
            )
            value = db.execute(query).scalar_one_or_none()
        return from_db_datetime(value)

    def save(
        self,
        reservation_id: str,
        user_id: str,
        user_name: Optional[str],
        action: str,
        scheduled_time: dt.datetime,
    ) -> Reservation:
        """Insert or replace a reservation; saving always re-arms it."""
        if action not in RESERVATION_ACTIONS:
            raise ValueError(f"Unknown reservation action {action!r}")

        def _save(db: Session) -> Reservation:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None:
                reservation = Reservation(id=reservation_id, user_id=user_id)
                db.add(reservation)
            reservation.user_name = user_name
            reservation.action = action
            reservation.scheduled_time = ensure_utc(scheduled_time)
            reservation.status = RESERVATION_RESERVED
            reservation.last_executed_date = None
            reservation.last_outcome = None
            db.flush()
            return reservation

        return run_transaction(self._factory, _save, retries=self._retries, label=f"save {reservation_id}")

    def delete(self, reservation_id: str, user_id: Optional[str] = None) -> None:
        def _delete(db: Session) -> None:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None or (user_id is not None and reservation.user_id != user_id):
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
            db.delete(reservation)

        run_transaction(self._factory, _delete, retries=self._retries, label=f"delete {reservation_id}")

    def transactional_consume(
        self,
        reservation_id: str,
        fn: Callable[[Session, Reservation], T],
    ) -> Optional[T]:
        """Re-read the reservation and run ``fn`` only while it is still reserved.

        Returns None when another run already consumed it. ``fn`` is expected
        to mark the reservation inside the same transaction.
        """

        def _consume(db: Session) -> Optional[T]:
            reservation = db.get(Reservation, reservation_id)
            if reservation is None or not reservation.is_reserved:
                return None
            result = fn(db, reservation)
            db.flush()
            return result

        return run_transaction(
            self._factory, _consume, retries=self._retries, label=f"consume {reservation_id}"
        )

    @staticmethod
    def reset_markers_in(db: Session, user_id: str, today: str) -> int:
        """Re-arm every reservation of the user consumed today inside the caller's transaction.

        Nothing is deleted or rescheduled.
        """
        query = (
            select(Reservation)
            .where(Reservation.user_id == user_id)
            .where(Reservation.last_executed_date == today)
        )
        reservations = db.execute(query).scalars().all()
        for reservation in reservations:
            reservation.reset_marker()
        return len(reservations)

    def reset_markers(self, user_id: str, today: str) -> int:
        count = run_transaction(
            self._factory,
            lambda db: self.reset_markers_in(db, user_id, today),
            retries=self._retries,
            label=f"reset {user_id}",
        )
        if count:
            logger.info("Re-armed %s reservation(s) of %s for %s", count, user_id, today)
        return count

    def rearm_elapsed(self, today: str) -> int:
        """Return executed reservations from earlier days to the reserved pool."""

        def _rearm(db: Session) -> int:
            query = (
                select(Reservation)
                .where(Reservation.status == RESERVATION_EXECUTED)
                .where(Reservation.last_executed_date < today)
            )
            reservations = db.execute(query).scalars().all()
            for reservation in reservations:
                reservation.reset_marker()
            return len(reservations)

        return run_transaction(self._factory, _rearm, retries=self._retries, label="daily re-arm")
