"""Session transitions shared by the interactive controller and the reservation executor.

Each function mutates a ``WorkStatus`` loaded inside the caller's transaction
and appends the closed interval to the ledger in that same transaction, so a
state change and its log entry commit together or not at all.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .config import settings
from .errors import InvalidTransitionError
from .models import WorkLog, WorkStatus
from .store import WorkLogLedger
from .utils import end_of_local_day, from_db_datetime, local_date


@dataclass(slots=True)
class TransitionResult:
    action: str
    log: Optional[WorkLog] = None
    changed: bool = True


def is_on_break(record: WorkStatus) -> bool:
    return bool(record.is_working) and record.current_task == settings.break_task


def is_same_target(record: WorkStatus, task: str, goal_id: Optional[str]) -> bool:
    return (
        bool(record.is_working)
        and record.current_task == task
        and (record.current_goal_id or None) == (goal_id or None)
    )


def is_stale(record: WorkStatus, now: dt.datetime) -> bool:
    """True when a running session began on an earlier local day than ``now``."""
    start = from_db_datetime(record.start_time)
    if not record.is_working or start is None:
        return False
    return local_date(start) < local_date(now)


def _close(db: Session, record: WorkStatus, end_time: dt.datetime, memo: str) -> Optional[WorkLog]:
    if not record.is_working:
        return None
    return WorkLogLedger.append(db, record.close_interval(end_time, memo))


def apply_start(
    db: Session,
    record: WorkStatus,
    task: str,
    goal_id: Optional[str],
    goal_title: Optional[str],
    at: dt.datetime,
    memo: str = "",
) -> TransitionResult:
    if not task:
        raise InvalidTransitionError("A task is required to start working")
    if is_same_target(record, task, goal_id):
        return TransitionResult("noop", changed=False)
    previous = record.task_snapshot() if record.is_working else None
    entry = _close(db, record, at, memo)
    if task == settings.break_task:
        if previous and previous["task"] != settings.break_task:
            record.pre_break_task = previous
    else:
        record.pre_break_task = None
    record.begin(task, goal_id, goal_title, at)
    return TransitionResult("start", entry)


def apply_break(db: Session, record: WorkStatus, at: dt.datetime, memo: str = "") -> TransitionResult:
    if not record.is_working:
        raise InvalidTransitionError("Cannot start a break while not working")
    if is_on_break(record):
        return TransitionResult("noop", changed=False)
    result = apply_start(db, record, settings.break_task, None, None, at, memo)
    result.action = "break"
    return result


def apply_resume(db: Session, record: WorkStatus, at: dt.datetime, memo: str = "") -> TransitionResult:
    if not is_on_break(record):
        raise InvalidTransitionError(
            "Resume is only possible during a break", current_task=record.current_task
        )
    saved = record.pre_break_task if isinstance(record.pre_break_task, dict) else None
    if not saved or not saved.get("task"):
        result = apply_stop(db, record, at, memo)
        result.action = "stop"
        return result
    result = apply_start(db, record, saved["task"], saved.get("goalId"), saved.get("goalTitle"), at, memo)
    record.pre_break_task = None
    result.action = "resume"
    return result


def apply_stop(db: Session, record: WorkStatus, at: dt.datetime, memo: str = "") -> TransitionResult:
    was_working = bool(record.is_working)
    entry = _close(db, record, at, memo)
    record.clear()
    return TransitionResult("stop", entry, changed=was_working)


def apply_forced_stop(db: Session, record: WorkStatus, memo: Optional[str] = None) -> TransitionResult:
    """Close the session at the last instant of the day it started and flag it for correction."""
    start = from_db_datetime(record.start_time)
    if not record.is_working:
        return TransitionResult("noop", changed=False)
    entry = None
    if start is not None:
        entry = _close(db, record, end_of_local_day(start), memo or settings.auto_closure_memo)
    record.clear()
    record.needs_checkout_correction = True
    return TransitionResult("forced_stop", entry)
