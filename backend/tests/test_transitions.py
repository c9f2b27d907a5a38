from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select

from worktimer import models
from worktimer.config import settings
from worktimer.errors import InvalidTransitionError
from worktimer.store import SessionStore
from worktimer.transitions import (
    apply_break,
    apply_forced_stop,
    apply_resume,
    apply_start,
    apply_stop,
    is_stale,
)


def _logs(db):
    db.flush()
    return db.execute(select(models.WorkLog).order_by(models.WorkLog.id)).scalars().all()


def test_start_from_idle_writes_no_log(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice", "Alice")
        result = apply_start(db, record, "dev", "g1", "Goal 1", at(10))
        assert result.action == "start"
        assert result.log is None
        assert record.is_working
        assert record.current_task == "dev"
        assert record.current_goal_title == "Goal 1"
        assert _logs(db) == []


def test_switching_task_closes_previous_interval(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice", "Alice")
        apply_start(db, record, "dev", None, None, at(10), "")
        result = apply_start(db, record, "review", None, None, at(10, 25, 30), "handover")
        logs = _logs(db)
        assert result.log is logs[0]
        assert logs[0].task == "dev"
        assert logs[0].duration == 25 * 60 + 30
        assert logs[0].date == "2024-01-15"
        assert logs[0].memo == "handover"
        assert record.current_task == "review"


def test_restarting_same_task_and_goal_is_noop(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", "g1", None, at(10))
        result = apply_start(db, record, "dev", "g1", None, at(11))
        assert result.action == "noop"
        assert not result.changed
        assert record.start_time == at(10)
        assert _logs(db) == []


def test_same_task_with_other_goal_is_a_switch(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", "g1", None, at(10))
        apply_start(db, record, "dev", "g2", None, at(11))
        logs = _logs(db)
        assert [(log.goal_id, log.duration) for log in logs] == [("g1", 3600)]
        assert record.current_goal_id == "g2"


def test_break_and_resume_restore_previous_task(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", "g1", "Goal 1", at(10))
        apply_break(db, record, at(10, 30))
        assert record.current_task == settings.break_task
        assert record.pre_break_task == {"task": "dev", "goalId": "g1", "goalTitle": "Goal 1"}

        again = apply_break(db, record, at(10, 40))
        assert again.action == "noop"

        result = apply_resume(db, record, at(10, 45))
        assert result.action == "resume"
        assert record.current_task == "dev"
        assert record.current_goal_id == "g1"
        assert record.current_goal_title == "Goal 1"
        assert record.start_time == at(10, 45)
        assert record.pre_break_task is None
        assert [(log.task, log.duration) for log in _logs(db)] == [("dev", 1800), ("break", 900)]


def test_break_while_idle_is_rejected(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        with pytest.raises(InvalidTransitionError):
            apply_break(db, record, at(10))


def test_resume_outside_break_is_rejected(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", None, None, at(10))
        with pytest.raises(InvalidTransitionError) as excinfo:
            apply_resume(db, record, at(11))
        assert excinfo.value.current_task == "dev"


def test_resume_without_saved_task_falls_back_to_stop(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, settings.break_task, None, None, at(12))
        assert record.pre_break_task is None
        result = apply_resume(db, record, at(12, 10))
        assert result.action == "stop"
        assert not record.is_working
        assert [(log.task, log.duration) for log in _logs(db)] == [("break", 600)]


def test_stop_clears_state_and_logs(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", "g1", "Goal 1", at(9))
        result = apply_stop(db, record, at(17), "done")
        assert result.log.duration == 8 * 3600
        assert not record.is_working
        assert record.current_task is None
        assert record.current_goal_id is None
        assert record.start_time is None


def test_stop_with_zero_duration_writes_nothing(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", None, None, at(9))
        result = apply_stop(db, record, at(9))
        assert result.log is None
        assert not record.is_working
        assert _logs(db) == []


def test_missing_start_time_still_transitions(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        record.is_working = True
        record.current_task = "dev"
        record.start_time = None
        result = apply_stop(db, record, at(10))
        assert result.log is None
        assert not record.is_working
        assert _logs(db) == []


def test_forced_stop_closes_at_end_of_start_day(session_factory, at):
    with session_factory() as db:
        record = SessionStore.load(db, "alice")
        apply_start(db, record, "dev", None, None, at(23, 50))
        assert is_stale(record, at(0, 5, day=16))
        assert not is_stale(record, at(23, 59))

        result = apply_forced_stop(db, record)
        log = result.log
        assert log.date == "2024-01-15"
        assert log.end_time == at(23, 59, 59) + dt.timedelta(milliseconds=999)
        assert log.duration == 599
        assert log.memo == settings.auto_closure_memo
        assert record.needs_checkout_correction
        assert not record.is_working
