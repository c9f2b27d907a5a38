from __future__ import annotations

import datetime as dt

from worktimer import executor as executor_module
from worktimer.config import settings
from worktimer.executor import (
    ALREADY_CONSUMED,
    DEFERRED,
    EXECUTED,
    FAILED,
    NOT_DUE,
    SKIPPED,
    ReservationExecutor,
    build_scheduler,
)
from worktimer.models import RESERVATION_EXECUTED, RESERVATION_RESERVED
from worktimer.utils import from_db_datetime


def _start(session_store, user_id, task, at_time, goal_id=None):
    session_store.transactional_update(user_id, lambda db, record: record.begin(task, goal_id, None, at_time))


def test_break_reservation_scenario(executor, session_store, reservation_store, ledger, make_controller, clock, at):
    clock.set(at(10))
    controller = make_controller()
    controller.start_task("A")
    reservation_store.save("alice_break_1030", "alice", "Alice", "break", at(10, 30))

    clock.set(at(10, 30))
    report = executor.run_once()
    assert report.count(EXECUTED) == 1

    entries = ledger.list_for_user("alice")
    assert [(e.task, e.duration) for e in entries] == [("A", 1800)]
    assert from_db_datetime(entries[0].end_time) == at(10, 30)
    state = session_store.get("alice")
    assert state.current_task == settings.break_task
    assert state.pre_break_task["task"] == "A"

    clock.set(at(10, 45))
    controller.resync()
    snapshot = controller.resume_from_break()
    assert snapshot.current_task == "A"
    assert snapshot.start_time == at(10, 45)
    assert [(e.task, e.duration) for e in ledger.list_for_user("alice")] == [("A", 1800), ("break", 900)]


def test_running_twice_executes_once(executor, session_store, reservation_store, ledger, clock, at):
    _start(session_store, "alice", "dev", at(9))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17))
    clock.set(at(17))

    first = executor.run_once()
    second = executor.run_once()

    assert [o.outcome for o in first.outcomes] == [EXECUTED]
    assert second.outcomes == []
    assert second.candidates == 0
    assert len(ledger.list_for_user("alice")) == 1
    assert executor.execute_reservation("alice_stop").outcome == ALREADY_CONSUMED
    assert len(ledger.list_for_user("alice")) == 1


def test_execution_marks_and_advances_reservation(executor, session_store, reservation_store, clock, at):
    _start(session_store, "alice", "dev", at(9))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17))
    clock.set(at(17))
    report = executor.run_once()

    stored = reservation_store.get("alice_stop")
    assert stored.status == RESERVATION_EXECUTED
    assert stored.last_executed_date == "2024-01-15"
    assert stored.last_outcome == EXECUTED
    assert from_db_datetime(stored.scheduled_time) == at(17, day=16)
    assert report.next_due is None


def test_reservation_for_idle_user_is_consumed_as_skipped(executor, session_store, reservation_store, ledger, clock, at):
    session_store.get("alice")
    reservation_store.save("alice_break_1200", "alice", "Alice", "break", at(12))
    clock.set(at(12))

    report = executor.run_once()

    assert [(o.outcome, o.detail) for o in report.outcomes] == [(SKIPPED, "user not working")]
    stored = reservation_store.get("alice_break_1200")
    assert stored.status == RESERVATION_EXECUTED
    assert stored.last_outcome == SKIPPED
    assert ledger.list_for_user("alice") == []
    assert executor.run_once().outcomes == []


def test_break_reservation_during_break_is_skipped(executor, session_store, reservation_store, clock, at):
    _start(session_store, "alice", settings.break_task, at(11, 50))
    reservation_store.save("alice_break_1200", "alice", "Alice", "break", at(12))
    clock.set(at(12))

    outcome = executor.run_once().outcomes[0]
    assert outcome.outcome == SKIPPED
    assert session_store.get("alice").start_time == at(11, 50)


def test_session_started_after_schedule_is_not_interrupted(executor, session_store, reservation_store, clock, at):
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(12))
    _start(session_store, "alice", "dev", at(12, 0, 20))
    clock.set(at(12, 0, 30))

    outcome = executor.run_once().outcomes[0]
    assert outcome.outcome == SKIPPED
    assert session_store.get("alice").is_working


def test_near_future_reservation_waits_out_skew(executor, session_store, reservation_store, ledger, sleeps, clock, at):
    _start(session_store, "alice", "dev", at(9))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17))
    clock.set(at(16, 59, 50))

    report = executor.run_once()

    assert sleeps == [10.0]
    assert report.waited_seconds == 10.0
    assert report.count(EXECUTED) == 1
    entry = ledger.list_for_user("alice")[0]
    assert from_db_datetime(entry.end_time) == at(17)


def test_far_reservation_is_deferred(executor, session_store, reservation_store, sleeps, clock, at):
    _start(session_store, "alice", "dev", at(9))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17))
    clock.set(at(16, 59, 20))

    report = executor.run_once()

    assert [o.outcome for o in report.outcomes] == [DEFERRED]
    assert sleeps == []
    assert reservation_store.get("alice_stop").status == RESERVATION_RESERVED
    assert session_store.get("alice").is_working
    assert report.next_due == at(17)


def test_direct_execution_before_due_is_not_applied(executor, session_store, reservation_store, clock, at):
    _start(session_store, "alice", "dev", at(9))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17))
    clock.set(at(16))

    assert executor.execute_reservation("alice_stop").outcome == NOT_DUE
    assert reservation_store.get("alice_stop").is_reserved


def test_failure_is_isolated_per_reservation(executor, session_store, reservation_store, ledger, clock, at, monkeypatch):
    _start(session_store, "alice", "dev", at(9))
    _start(session_store, "bob", "dev", at(9))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17))
    reservation_store.save("bob_stop", "bob", "Bob", "stop", at(17))
    clock.set(at(17))

    original = executor_module.apply_stop

    def _flaky_stop(db, record, at_time, memo=""):
        if record.user_id == "alice":
            raise RuntimeError("store hiccup")
        return original(db, record, at_time, memo)

    monkeypatch.setattr(executor_module, "apply_stop", _flaky_stop)
    report = executor.run_once()

    outcomes = {o.reservation_id: o.outcome for o in report.outcomes}
    assert outcomes == {"alice_stop": FAILED, "bob_stop": EXECUTED}
    assert reservation_store.get("alice_stop").is_reserved
    assert session_store.get("alice").is_working
    assert not session_store.get("bob").is_working

    monkeypatch.setattr(executor_module, "apply_stop", original)
    retry = executor.run_once()
    assert [(o.reservation_id, o.outcome) for o in retry.outcomes] == [("alice_stop", EXECUTED)]


def test_users_run_on_worker_pool(session_store, reservation_store, ledger, clock, at):
    pooled = ReservationExecutor(
        session_store, reservation_store, clock=clock, sleep=lambda _: None, max_workers=4
    )
    for user_id in ("alice", "bob", "carol"):
        _start(session_store, user_id, "dev", at(9))
        reservation_store.save(f"{user_id}_stop", user_id, user_id.title(), "stop", at(17))
    clock.set(at(17))

    report = pooled.run_once()

    assert report.count(EXECUTED) == 3
    assert session_store.list_working() == []


def test_reservations_of_one_user_run_in_order(executor, session_store, reservation_store, ledger, clock, at):
    _start(session_store, "alice", "dev", at(9))
    reservation_store.save("alice_break_1200", "alice", "Alice", "break", at(12))
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(12, 0, 5))
    clock.set(at(12, 0, 10))

    report = executor.run_once()

    assert [(o.reservation_id, o.outcome) for o in report.outcomes] == [
        ("alice_break_1200", EXECUTED),
        ("alice_stop", EXECUTED),
    ]
    assert [(e.task, e.duration) for e in ledger.list_for_user("alice")] == [
        ("dev", 3 * 3600),
        (settings.break_task, 5),
    ]


def test_midnight_sweep_closes_stale_sessions(executor, session_store, ledger, clock, at):
    _start(session_store, "alice", "dev", at(22, day=14))
    _start(session_store, "bob", "dev", at(8))
    clock.set(at(9))

    report = executor.run_once()

    assert report.swept_users == ["alice"]
    alice = session_store.get("alice")
    assert not alice.is_working
    assert alice.needs_checkout_correction
    entry = ledger.list_for_user("alice")[0]
    assert entry.date == "2024-01-14"
    assert from_db_datetime(entry.end_time) == at(23, 59, 59, day=14) + dt.timedelta(milliseconds=999)
    assert session_store.get("bob").is_working


def test_reservation_against_session_from_previous_day_forces_stop(
    session_store, reservation_store, ledger, clock, at
):
    no_sweep = ReservationExecutor(
        session_store, reservation_store, clock=clock, sleep=lambda _: None, midnight_sweep=False
    )
    _start(session_store, "alice", "dev", at(22, day=14))
    reservation_store.save("alice_break_1000", "alice", "Alice", "break", at(10))
    clock.set(at(10))

    outcome = no_sweep.run_once().outcomes[0]

    assert outcome.outcome == EXECUTED
    assert session_store.get("alice").needs_checkout_correction
    assert [(e.date, e.memo) for e in ledger.list_for_user("alice")] == [("2024-01-14", settings.auto_closure_memo)]


def test_previous_day_markers_are_rearmed(executor, session_store, reservation_store, clock, at):
    reservation_store.save("alice_stop", "alice", "Alice", "stop", at(17, day=14))
    reservation_store.transactional_consume(
        "alice_stop", lambda db, r: r.mark_consumed("2024-01-14", EXECUTED, at(17, day=14))
    )
    clock.set(at(9))

    report = executor.run_once()

    assert report.rearmed == 1
    assert reservation_store.get("alice_stop").is_reserved
    assert report.next_due == at(17)


def test_build_scheduler_registers_interval_job(executor, scheduler):
    built = build_scheduler(executor, scheduler)
    job = built.jobs["reservation-executor"]
    assert job.func == executor.run_once
    assert job.kwargs["max_instances"] == 1
    assert job.kwargs["coalesce"] is True
    assert job.trigger.interval == dt.timedelta(seconds=settings.executor_interval_seconds)
