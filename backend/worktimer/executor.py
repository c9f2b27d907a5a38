"""Cron-driven execution of break/stop reservations.

Runs independently of any connected client. Every invocation finds the
reservations that are due, waits out a few seconds of clock skew, and applies
each one in its own transaction together with its idempotency marker.
Duplicate or overlapping invocations are safe: a reservation that is no longer
``reserved`` when its transaction re-reads it is left alone.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from .config import settings
from .errors import WorktimerError
from .models import Reservation, SessionSnapshot, WorkStatus
from .store import ReservationStore, SessionStore
from .transitions import apply_break, apply_forced_stop, apply_stop, is_on_break, is_stale
from .utils import from_db_datetime, local_date, local_date_string, utcnow

logger = logging.getLogger(__name__)

EXECUTED = "executed"
SKIPPED = "skipped"
ALREADY_CONSUMED = "already_consumed"
NOT_DUE = "not_due"
DEFERRED = "deferred"
FAILED = "failed"


@dataclass(slots=True)
class ExecutionOutcome:
    reservation_id: str
    user_id: Optional[str]
    action: Optional[str]
    outcome: str
    detail: Optional[str] = None


@dataclass(slots=True)
class ExecutionReport:
    started_at: dt.datetime
    candidates: int = 0
    waited_seconds: float = 0.0
    rearmed: int = 0
    swept_users: List[str] = field(default_factory=list)
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    next_due: Optional[dt.datetime] = None

    def count(self, outcome: str) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)


class ReservationExecutor:
    def __init__(
        self,
        session_store: SessionStore,
        reservation_store: ReservationStore,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        lookahead_seconds: Optional[int] = None,
        max_skew_wait_seconds: Optional[int] = None,
        max_workers: Optional[int] = None,
        midnight_sweep: Optional[bool] = None,
    ) -> None:
        self.session_store = session_store
        self.reservation_store = reservation_store
        self.clock = clock
        self.sleep = sleep
        self.lookahead = dt.timedelta(
            seconds=settings.executor_lookahead_seconds if lookahead_seconds is None else lookahead_seconds
        )
        self.max_skew_wait = dt.timedelta(
            seconds=settings.executor_max_skew_wait_seconds
            if max_skew_wait_seconds is None
            else max_skew_wait_seconds
        )
        self.max_workers = max(1, settings.executor_max_workers if max_workers is None else max_workers)
        self.midnight_sweep = settings.midnight_sweep if midnight_sweep is None else midnight_sweep

    # ------------------------------------------------------------------
    # Scheduled entry point
    # ------------------------------------------------------------------
    def run_once(self, now: Optional[dt.datetime] = None) -> ExecutionReport:
        now = now or self.clock()
        report = ExecutionReport(started_at=now)
        report.rearmed = self.reservation_store.rearm_elapsed(local_date_string(now))
        if self.midnight_sweep:
            report.swept_users = self.sweep_stale_sessions(now)

        due = self.reservation_store.list_due(now + self.lookahead)
        report.candidates = len(due)
        if not due:
            logger.debug("No reservations due at %s", now.isoformat())
            report.next_due = self.reservation_store.next_scheduled_time()
            return report

        ready: List[Reservation] = []
        max_wait = dt.timedelta(0)
        for reservation in due:
            wait = from_db_datetime(reservation.scheduled_time) - now
            if wait > self.max_skew_wait:
                report.outcomes.append(
                    ExecutionOutcome(reservation.id, reservation.user_id, reservation.action, DEFERRED)
                )
                continue
            ready.append(reservation)
            max_wait = max(max_wait, wait)

        if max_wait > dt.timedelta(0):
            report.waited_seconds = max_wait.total_seconds()
            logger.info("Waiting %.1fs for reservations scheduled slightly ahead", report.waited_seconds)
            self.sleep(report.waited_seconds)
        effective_now = now + max_wait

        report.outcomes.extend(self._execute_grouped(ready, effective_now))
        report.next_due = self.reservation_store.next_scheduled_time()
        logger.info(
            "Reservation run: %s executed, %s skipped, %s failed, %s deferred; next check at %s",
            report.count(EXECUTED),
            report.count(SKIPPED),
            report.count(FAILED),
            report.count(DEFERRED),
            report.next_due.isoformat() if report.next_due else "-",
        )
        return report

    def _execute_grouped(self, reservations: List[Reservation], now: dt.datetime) -> List[ExecutionOutcome]:
        by_user: Dict[str, List[str]] = OrderedDict()
        for reservation in reservations:
            by_user.setdefault(reservation.user_id, []).append(reservation.id)

        def _run_user(ids: List[str]) -> List[ExecutionOutcome]:
            return [self._execute_isolated(reservation_id, now) for reservation_id in ids]

        if self.max_workers == 1 or len(by_user) == 1:
            outcomes: List[ExecutionOutcome] = []
            for ids in by_user.values():
                outcomes.extend(_run_user(ids))
            return outcomes
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            results = list(pool.map(_run_user, by_user.values()))
        return [outcome for group in results for outcome in group]

    def _execute_isolated(self, reservation_id: str, now: dt.datetime) -> ExecutionOutcome:
        try:
            return self.execute_reservation(reservation_id, now)
        except WorktimerError as exc:
            logger.error("Reservation %s failed, retrying next run: %s", reservation_id, exc)
            return ExecutionOutcome(reservation_id, None, None, FAILED, str(exc))
        except Exception as exc:
            logger.exception("Reservation %s failed unexpectedly", reservation_id)
            return ExecutionOutcome(reservation_id, None, None, FAILED, str(exc))

    # ------------------------------------------------------------------
    # Single reservation
    # ------------------------------------------------------------------
    def execute_reservation(self, reservation_id: str, now: Optional[dt.datetime] = None) -> ExecutionOutcome:
        now = now or self.clock()
        today = local_date_string(now)

        def _consume(db: Session, reservation: Reservation) -> tuple[ExecutionOutcome, Optional[SessionSnapshot]]:
            scheduled = from_db_datetime(reservation.scheduled_time)
            if scheduled - now > self.max_skew_wait:
                return ExecutionOutcome(reservation.id, reservation.user_id, reservation.action, NOT_DUE), None
            record = SessionStore.load(db, reservation.user_id, reservation.user_name)
            outcome, detail = self._apply(db, reservation, record, scheduled, now)
            reservation.mark_consumed(today, outcome, now)
            db.flush()
            snapshot = record.to_snapshot() if outcome == EXECUTED else None
            return ExecutionOutcome(reservation.id, reservation.user_id, reservation.action, outcome, detail), snapshot

        result = self.reservation_store.transactional_consume(reservation_id, _consume)
        if result is None:
            logger.info("Reservation %s was already consumed", reservation_id)
            return ExecutionOutcome(reservation_id, None, None, ALREADY_CONSUMED)
        outcome, snapshot = result
        if snapshot is not None:
            self.session_store.notify(snapshot)
        logger.info(
            "Reservation %s (%s for %s): %s%s",
            outcome.reservation_id,
            outcome.action,
            outcome.user_id,
            outcome.outcome,
            f" ({outcome.detail})" if outcome.detail else "",
        )
        return outcome

    @staticmethod
    def _apply(
        db: Session,
        reservation: Reservation,
        record: WorkStatus,
        scheduled: dt.datetime,
        now: dt.datetime,
    ) -> tuple[str, Optional[str]]:
        if not record.is_working:
            return SKIPPED, "user not working"
        if local_date(scheduled) < local_date(now):
            return SKIPPED, "occurrence missed on an earlier day"
        start = from_db_datetime(record.start_time)
        if start is not None and start > scheduled:
            return SKIPPED, "session started after the scheduled time"
        if is_stale(record, scheduled):
            apply_forced_stop(db, record)
            return EXECUTED, "forced stop at the end of the start day"
        if reservation.action == "break":
            if is_on_break(record):
                return SKIPPED, "already on break"
            apply_break(db, record, scheduled)
            return EXECUTED, None
        if reservation.action == "stop":
            apply_stop(db, record, scheduled)
            return EXECUTED, None
        return SKIPPED, f"unknown action {reservation.action!r}"

    # ------------------------------------------------------------------
    # Day boundary
    # ------------------------------------------------------------------
    def sweep_stale_sessions(self, now: dt.datetime) -> List[str]:
        """Force-stop sessions still running from an earlier day, even with no client connected."""
        swept: List[str] = []
        for snapshot in self.session_store.list_working():
            if snapshot.start_time is None or local_date(snapshot.start_time) >= local_date(now):
                continue

            def _sweep(db: Session, record: WorkStatus) -> bool:
                if not is_stale(record, now):
                    return False
                apply_forced_stop(db, record)
                return True

            try:
                closed, _ = self.session_store.transactional_update(snapshot.user_id, _sweep)
            except WorktimerError as exc:
                logger.error("Midnight sweep failed for %s: %s", snapshot.user_id, exc)
                continue
            if closed:
                logger.info("Midnight sweep closed the session of %s", snapshot.user_id)
                swept.append(snapshot.user_id)
        return swept


def build_scheduler(executor: ReservationExecutor, scheduler=None):
    scheduler = scheduler or BlockingScheduler(timezone=settings.timezone)
    scheduler.add_job(
        executor.run_once,
        IntervalTrigger(seconds=settings.executor_interval_seconds),
        id="reservation-executor",
        max_instances=1,
        coalesce=True,
        next_run_time=utcnow(),
        replace_existing=True,
    )
    return scheduler


def main() -> None:
    from . import models
    from .database import SessionLocal, engine

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    models.Base.metadata.create_all(bind=engine)
    executor = ReservationExecutor(SessionStore(SessionLocal), ReservationStore(SessionLocal))
    scheduler = build_scheduler(executor)
    logger.info("Reservation executor running every %ss", settings.executor_interval_seconds)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Reservation executor stopped")


if __name__ == "__main__":
    main()
