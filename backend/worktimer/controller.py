from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from sqlalchemy.orm import Session

from .config import settings
from .errors import InvalidTransitionError
from .models import SessionSnapshot, WorkStatus
from .store import ReservationStore, SessionStore
from .transitions import (
    TransitionResult,
    apply_break,
    apply_forced_stop,
    apply_resume,
    apply_start,
    apply_stop,
    is_stale,
)
from .utils import compose_task_name, end_of_local_day, local_date, local_date_string, utcnow

logger = logging.getLogger(__name__)

TransitionFn = Callable[[Session, WorkStatus, dt.datetime], TransitionResult]


@dataclass(slots=True)
class AutoClosureNotice:
    """Raised to the UI when a session was closed without the user's confirmation."""

    user_id: str
    task: Optional[str]
    started_at: Optional[dt.datetime]
    ended_at: Optional[dt.datetime]
    reason: str


@dataclass(slots=True)
class RestoreResult:
    session: SessionSnapshot
    auto_closed: bool
    notice: Optional[AutoClosureNotice] = None


class SessionController:
    """Interactive state machine for one user: Idle, Working(task, goal) and OnBreak(saved task).

    Every transition is a single read-modify-write against the session store;
    the local copy, the display tick and the midnight deadline only change
    after the store committed.
    """

    def __init__(
        self,
        user_id: str,
        user_name: Optional[str],
        session_store: SessionStore,
        reservation_store: ReservationStore,
        scheduler: Any,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        reservation_runner: Optional[Callable[[str], Any]] = None,
        on_tick: Optional[Callable[[int], None]] = None,
        on_auto_closure: Optional[Callable[[AutoClosureNotice], None]] = None,
        on_task_changed: Optional[Callable[[Optional[str]], None]] = None,
    ) -> None:
        self.user_id = user_id
        self.user_name = user_name
        self.session_store = session_store
        self.reservation_store = reservation_store
        self.scheduler = scheduler
        self.clock = clock
        self.reservation_runner = reservation_runner
        self.on_tick = on_tick
        self.on_auto_closure = on_auto_closure
        self.on_task_changed = on_task_changed

        self._lock = RLock()
        self.current_task: Optional[str] = None
        self.current_goal_id: Optional[str] = None
        self.current_goal_title: Optional[str] = None
        self.start_time: Optional[dt.datetime] = None
        self.pre_break_task: Optional[Dict[str, Any]] = None
        self.needs_checkout_correction = False
        self._version = 0

        self._tick_job: Any = None
        self._midnight_job: Any = None
        self._reservation_jobs: List[Any] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def is_working(self) -> bool:
        return self.current_task is not None and self.start_time is not None

    @property
    def is_on_break(self) -> bool:
        return self.is_working and self.current_task == settings.break_task

    def elapsed_seconds(self) -> int:
        with self._lock:
            start = self.start_time
        if start is None:
            return 0
        return max(int((self.clock() - start).total_seconds()), 0)

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                user_id=self.user_id,
                user_name=self.user_name,
                is_working=self.is_working,
                current_task=self.current_task,
                current_goal_id=self.current_goal_id,
                current_goal_title=self.current_goal_title,
                start_time=self.start_time,
                pre_break_task=dict(self.pre_break_task) if self.pre_break_task else None,
                needs_checkout_correction=self.needs_checkout_correction,
                version=self._version,
            )

    # ------------------------------------------------------------------
    # Interactive transitions
    # ------------------------------------------------------------------
    def start_task(
        self,
        task: str,
        goal_id: Optional[str] = None,
        goal_title: Optional[str] = None,
        *,
        memo: str = "",
        other_detail: Optional[str] = None,
    ) -> SessionSnapshot:
        name = compose_task_name(task, other_detail)
        if not name:
            raise InvalidTransitionError("A task is required to start working")
        if goal_title and not goal_id:
            raise InvalidTransitionError("A goal title was given without its goal id")

        def _start(db: Session, record: WorkStatus, now: dt.datetime) -> TransitionResult:
            return apply_start(db, record, name, goal_id, goal_title, now, memo)

        return self._transition("start", _start, after_forced=True)

    def start_break(self, *, memo: str = "") -> SessionSnapshot:
        def _break(db: Session, record: WorkStatus, now: dt.datetime) -> TransitionResult:
            return apply_break(db, record, now, memo)

        return self._transition("break", _break)

    def resume_from_break(self, *, memo: str = "") -> SessionSnapshot:
        def _resume(db: Session, record: WorkStatus, now: dt.datetime) -> TransitionResult:
            result = apply_resume(db, record, now, memo)
            if result.action == "stop":
                logger.warning("No task saved before the break of %s; stopping instead", self.user_id)
            return result

        return self._transition("resume", _resume)

    def stop_work(self, *, memo: str = "") -> SessionSnapshot:
        def _stop(db: Session, record: WorkStatus, now: dt.datetime) -> TransitionResult:
            return apply_stop(db, record, now, memo)

        return self._transition("stop", _stop)

    def _transition(self, label: str, fn: TransitionFn, *, after_forced: bool = False) -> SessionSnapshot:
        """Apply ``fn`` and re-arm today's reservation markers in one commit.

        Local fields, timers and reservation jobs are only touched once the
        commit succeeded; a rejected or failed transition leaves them as they were.
        """
        now = self.clock()
        today = local_date_string(now)

        def _apply(db: Session, record: WorkStatus) -> tuple[Optional[AutoClosureNotice], TransitionResult]:
            ReservationStore.reset_markers_in(db, self.user_id, today)
            notice = None
            if is_stale(record, now):
                notice = self._notice_for(record, "stale")
                forced = apply_forced_stop(db, record)
                if not after_forced:
                    return notice, forced
            return notice, fn(db, record, now)

        (notice, result), snapshot = self.session_store.transactional_update(
            self.user_id, _apply, user_name=self.user_name
        )
        logger.info("%s: %s -> %s (%s)", self.user_id, label, snapshot.current_task, result.action)
        self._apply_snapshot(snapshot)
        if notice is not None:
            self._emit_auto_closure(notice)
        self.rearm_reservation_timers()
        return self.snapshot()

    def acknowledge_checkout_correction(self) -> SessionSnapshot:
        def _ack(db: Session, record: WorkStatus) -> None:
            record.needs_checkout_correction = False

        _, snapshot = self.session_store.transactional_update(self.user_id, _ack, user_name=self.user_name)
        self._apply_snapshot(snapshot)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Reload reconciliation
    # ------------------------------------------------------------------
    def restore_on_load(self) -> RestoreResult:
        stored = self.session_store.get(self.user_id, self.user_name)
        now = self.clock()
        notice: Optional[AutoClosureNotice] = None
        if stored.is_working and stored.start_time is not None and local_date(stored.start_time) < local_date(now):
            notice = self._force_stop("stale")
        else:
            self._apply_snapshot(stored, force=True)
        self._subscribe()
        self.rearm_reservation_timers()
        return RestoreResult(session=self.snapshot(), auto_closed=notice is not None, notice=notice)

    def teardown(self) -> None:
        with self._lock:
            self._cancel_tick()
            self._cancel_midnight()
            self._cancel_reservation_jobs()
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
        if self.on_task_changed:
            self.on_task_changed(None)

    # ------------------------------------------------------------------
    # Reservations (local timers are advisory, the executor is authoritative)
    # ------------------------------------------------------------------
    def cancel_reservations(self) -> int:
        count = self.reservation_store.reset_markers(self.user_id, local_date_string(self.clock()))
        with self._lock:
            self._cancel_reservation_jobs()
        return count

    def rearm_reservation_timers(self) -> None:
        with self._lock:
            self._cancel_reservation_jobs()
            if self.reservation_runner is None:
                return
            now = self.clock()
            deadline = end_of_local_day(now)
            for reservation in self.reservation_store.list_for_user(self.user_id):
                scheduled = reservation.scheduled_time
                if scheduled.tzinfo is None:
                    scheduled = scheduled.replace(tzinfo=dt.timezone.utc)
                if not reservation.is_reserved or not (now < scheduled <= deadline):
                    continue
                job = self.scheduler.add_job(
                    self._fire_reservation,
                    "date",
                    run_date=scheduled,
                    args=[reservation.id],
                    id=f"{self.user_id}:reservation:{reservation.id}",
                    replace_existing=True,
                )
                self._reservation_jobs.append(job)

    def _fire_reservation(self, reservation_id: str) -> None:
        try:
            self.reservation_runner(reservation_id)
        except Exception:
            logger.exception("Local reservation timer %s failed; the executor will retry", reservation_id)
        self.resync()

    def resync(self) -> SessionSnapshot:
        self._apply_snapshot(self.session_store.get(self.user_id, self.user_name))
        return self.snapshot()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _tick(self) -> None:
        with self._lock:
            start = self.start_time if self.is_working else None
        if start is None:
            return
        now = self.clock()
        if local_date(start) < local_date(now):
            self._on_midnight()
            return
        if self.on_tick:
            self.on_tick(max(int((now - start).total_seconds()), 0))

    def _on_midnight(self) -> None:
        if not self.is_working:
            return
        logger.info("Midnight auto-stop for %s", self.user_id)
        self._force_stop("midnight")

    def _force_stop(self, reason: str) -> Optional[AutoClosureNotice]:
        def _forced(db: Session, record: WorkStatus) -> Optional[AutoClosureNotice]:
            if not record.is_working:
                return None
            notice = self._notice_for(record, reason)
            apply_forced_stop(db, record)
            return notice

        notice, snapshot = self.session_store.transactional_update(
            self.user_id, _forced, user_name=self.user_name
        )
        self._apply_snapshot(snapshot, force=True)
        if notice is not None:
            self._emit_auto_closure(notice)
        return notice

    def _notice_for(self, record: WorkStatus, reason: str) -> AutoClosureNotice:
        start = record.start_time
        if start is not None and start.tzinfo is None:
            start = start.replace(tzinfo=dt.timezone.utc)
        return AutoClosureNotice(
            user_id=self.user_id,
            task=record.current_task,
            started_at=start,
            ended_at=end_of_local_day(start) if start is not None else None,
            reason=reason,
        )

    def _emit_auto_closure(self, notice: AutoClosureNotice) -> None:
        logger.info("Session of %s closed automatically (%s)", self.user_id, notice.reason)
        if self.on_auto_closure:
            self.on_auto_closure(notice)

    def _start_tick(self) -> None:
        self._cancel_tick()
        self._tick_job = self.scheduler.add_job(
            self._tick, "interval", seconds=1, id=f"{self.user_id}:tick", replace_existing=True
        )

    def _arm_midnight(self) -> None:
        self._cancel_midnight()
        now = self.clock()
        deadline = end_of_local_day(now)
        if deadline <= now:
            return
        self._midnight_job = self.scheduler.add_job(
            self._on_midnight,
            "date",
            run_date=deadline,
            id=f"{self.user_id}:midnight",
            replace_existing=True,
        )

    def _cancel_tick(self) -> None:
        self._remove_job(self._tick_job)
        self._tick_job = None

    def _cancel_midnight(self) -> None:
        self._remove_job(self._midnight_job)
        self._midnight_job = None

    def _cancel_reservation_jobs(self) -> None:
        for job in self._reservation_jobs:
            self._remove_job(job)
        self._reservation_jobs = []

    @staticmethod
    def _remove_job(job: Any) -> None:
        if job is None:
            return
        try:
            job.remove()
        except JobLookupError:
            # already fired
            pass

    # ------------------------------------------------------------------
    # Store synchronisation
    # ------------------------------------------------------------------
    def _subscribe(self) -> None:
        with self._lock:
            if self._unsubscribe is None:
                self._unsubscribe = self.session_store.subscribe(self.user_id, self._on_store_change)

    def _on_store_change(self, snapshot: SessionSnapshot) -> None:
        self._apply_snapshot(snapshot)

    def _apply_snapshot(self, snapshot: SessionSnapshot, *, force: bool = False) -> None:
        with self._lock:
            if not force and snapshot.version and snapshot.version <= self._version:
                return
            previous_task = self.current_task
            previous_start = self.start_time
            self._version = snapshot.version
            self.needs_checkout_correction = snapshot.needs_checkout_correction
            self.pre_break_task = dict(snapshot.pre_break_task) if snapshot.pre_break_task else None
            if snapshot.is_working and snapshot.current_task and snapshot.start_time is not None:
                self.current_task = snapshot.current_task
                self.current_goal_id = snapshot.current_goal_id
                self.current_goal_title = snapshot.current_goal_title
                self.start_time = snapshot.start_time
                if force or previous_start != self.start_time or self._tick_job is None:
                    self._start_tick()
                    self._arm_midnight()
            else:
                self.current_task = None
                self.current_goal_id = None
                self.current_goal_title = None
                self.start_time = None
                self._cancel_tick()
                self._cancel_midnight()
            changed = previous_task != self.current_task
        if changed and self.on_task_changed:
            self.on_task_changed(self.current_task)
