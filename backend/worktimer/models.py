from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON
from sqlalchemy.orm import declarative_base

from .utils import UTC, advance_daily, from_db_datetime, local_date_string, whole_seconds

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


RESERVATION_ACTIONS = ("break", "stop")
RESERVATION_RESERVED = "reserved"
RESERVATION_EXECUTED = "executed"


@dataclass(slots=True)
class SessionSnapshot:
    """Detached copy of a user's session state, safe to hand to observers."""

    user_id: str
    user_name: Optional[str]
    is_working: bool
    current_task: Optional[str]
    current_goal_id: Optional[str]
    current_goal_title: Optional[str]
    start_time: Optional[dt.datetime]
    pre_break_task: Optional[Dict[str, Any]]
    needs_checkout_correction: bool
    version: int = 0


class WorkStatus(Base):
    """The single authoritative session record of a user."""

    __tablename__ = "work_status"

    user_id = Column(String(128), primary_key=True)
    user_name = Column(String(200), nullable=True)
    is_working = Column(Boolean, nullable=False, default=False, index=True)
    current_task = Column(String(200), nullable=True)
    current_goal_id = Column(String(128), nullable=True)
    current_goal_title = Column(String(200), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    pre_break_task = Column(SQLiteJSON, nullable=True)
    needs_checkout_correction = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(is_working = 1 AND current_task IS NOT NULL AND start_time IS NOT NULL)"
            " OR (is_working = 0 AND current_task IS NULL AND start_time IS NULL)",
            name="ck_work_status_working_fields",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    def begin(
        self,
        task: str,
        goal_id: Optional[str],
        goal_title: Optional[str],
        at: dt.datetime,
    ) -> None:
        self.current_task = task
        self.current_goal_id = goal_id or None
        self.current_goal_title = goal_title or None
        self.start_time = _as_utc(at)
        self.is_working = True

    def clear(self) -> None:
        self.is_working = False
        self.current_task = None
        self.current_goal_id = None
        self.current_goal_title = None
        self.start_time = None
        self.pre_break_task = None

    def task_snapshot(self) -> Optional[Dict[str, Any]]:
        if not self.current_task:
            return None
        return {
            "task": self.current_task,
            "goalId": self.current_goal_id,
            "goalTitle": self.current_goal_title,
        }

    def close_interval(self, end_time: dt.datetime, memo: str = "") -> Optional["WorkLog"]:
        """Build the ledger entry for the running interval, or None when nothing is loggable.

        A missing start time or a non-positive duration yields no entry; the
        caller still applies its state transition.
        """
        start = from_db_datetime(self.start_time)
        if not self.current_task or start is None:
            return None
        end = _as_utc(end_time)
        duration = max(whole_seconds(start, end), 0)
        if duration <= 0:
            return None
        return WorkLog(
            user_id=self.user_id,
            user_name=self.user_name,
            task=self.current_task,
            goal_id=self.current_goal_id,
            goal_title=self.current_goal_title,
            date=local_date_string(start),
            start_time=start,
            end_time=end,
            duration=duration,
            memo=memo or "",
        )

    def to_snapshot(self) -> SessionSnapshot:
        pre_break = dict(self.pre_break_task) if isinstance(self.pre_break_task, dict) else None
        return SessionSnapshot(
            user_id=self.user_id,
            user_name=self.user_name,
            is_working=bool(self.is_working),
            current_task=self.current_task,
            current_goal_id=self.current_goal_id,
            current_goal_title=self.current_goal_title,
            start_time=from_db_datetime(self.start_time),
            pre_break_task=pre_break,
            needs_checkout_correction=bool(self.needs_checkout_correction),
            version=self.version or 0,
        )


class WorkLog(Base):
    """Append-only record of one closed task interval."""

    __tablename__ = "work_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    user_name = Column(String(200), nullable=True)
    task = Column(String(200), nullable=False)
    goal_id = Column(String(128), nullable=True)
    goal_title = Column(String(200), nullable=True)
    date = Column(String(10), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False)
    memo = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Reservation(Base):
    """A daily recurring break or stop the executor applies on the user's behalf."""

    __tablename__ = "reservations"

    id = Column(String(200), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    user_name = Column(String(200), nullable=True)
    action = Column(String(10), nullable=False)
    scheduled_time = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=RESERVATION_RESERVED, index=True)
    last_executed_date = Column(String(10), nullable=True)
    last_outcome = Column(String(20), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_reserved(self) -> bool:
        return self.status == RESERVATION_RESERVED

    def mark_consumed(self, today: str, outcome: str, now: dt.datetime) -> None:
        self.status = RESERVATION_EXECUTED
        self.last_executed_date = today
        self.last_outcome = outcome
        self.scheduled_time = advance_daily(from_db_datetime(self.scheduled_time), now)

    def reset_marker(self) -> None:
        self.status = RESERVATION_RESERVED
        self.last_executed_date = None
