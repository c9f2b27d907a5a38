from __future__ import annotations

import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

_TMP_DIR = tempfile.mkdtemp(prefix="worktimer-tests-")
os.environ.setdefault("WT_SQLITE_PATH", str(Path(_TMP_DIR) / "app.db"))
os.environ.setdefault("WT_TIMEZONE", "Asia/Tokyo")

import pytest
from apscheduler.jobstores.base import JobLookupError
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from worktimer import models
from worktimer.config import settings
from worktimer.controller import SessionController
from worktimer.executor import ReservationExecutor
from worktimer.main import app
from worktimer.state import RuntimeState
from worktimer.store import ReservationStore, SessionStore, WorkLogLedger
from worktimer.utils import LOCAL_TZ, UTC


class FakeClock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def set(self, value: dt.datetime) -> None:
        self.now = value

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


class FakeJob:
    def __init__(self, scheduler: "FakeScheduler", job_id: str, func: Callable, trigger: Any, args, kwargs) -> None:
        self.scheduler = scheduler
        self.id = job_id
        self.func = func
        self.trigger = trigger
        self.args = list(args or [])
        self.kwargs = kwargs
        self.removed = False

    @property
    def run_date(self) -> Optional[dt.datetime]:
        return self.kwargs.get("run_date")

    def remove(self) -> None:
        if self.removed:
            raise JobLookupError(self.id)
        self.removed = True
        if self.scheduler.jobs.get(self.id) is self:
            del self.scheduler.jobs[self.id]


class FakeScheduler:
    """Records jobs the way APScheduler would and lets tests fire them by hand."""

    def __init__(self) -> None:
        self.running = False
        self.jobs: Dict[str, FakeJob] = {}
        self._counter = 0

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False

    def add_job(self, func, trigger=None, args=None, id=None, replace_existing=False, **kwargs) -> FakeJob:
        if id is None:
            self._counter += 1
            id = f"job-{self._counter}"
        existing = self.jobs.get(id)
        if existing is not None:
            if not replace_existing:
                raise ValueError(f"Job {id} already exists")
            existing.removed = True
        job = FakeJob(self, id, func, trigger, args, kwargs)
        self.jobs[id] = job
        return job

    def get(self, job_id: str) -> Optional[FakeJob]:
        return self.jobs.get(job_id)

    def fire(self, job_id: str) -> None:
        job = self.jobs[job_id]
        if job.trigger == "date":
            job.removed = True
            del self.jobs[job_id]
        job.func(*job.args)


def local_time(hour: int, minute: int = 0, second: int = 0, *, day: int = 15) -> dt.datetime:
    """UTC instant of a January 2024 wall-clock time in the configured zone."""
    return dt.datetime(2024, 1, day, hour, minute, second, tzinfo=LOCAL_TZ).astimezone(UTC)


@pytest.fixture()
def at() -> Callable[..., dt.datetime]:
    return local_time


@pytest.fixture()
def engine(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'worktimer.db'}"
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(local_time(9, 0))


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def session_store(session_factory) -> SessionStore:
    return SessionStore(session_factory, retries=3)


@pytest.fixture()
def reservation_store(session_factory) -> ReservationStore:
    return ReservationStore(session_factory, retries=3)


@pytest.fixture()
def ledger(session_factory) -> WorkLogLedger:
    return WorkLogLedger(session_factory)


@pytest.fixture()
def sleeps() -> List[float]:
    return []


@pytest.fixture()
def executor(session_store, reservation_store, clock, sleeps) -> ReservationExecutor:
    return ReservationExecutor(
        session_store,
        reservation_store,
        clock=clock,
        sleep=sleeps.append,
        lookahead_seconds=60,
        max_skew_wait_seconds=15,
        max_workers=1,
        midnight_sweep=True,
    )


@pytest.fixture()
def make_controller(session_store, reservation_store, scheduler, clock, executor):
    created: List[SessionController] = []

    def _make(user_id: str = "alice", user_name: Optional[str] = "Alice", **hooks) -> SessionController:
        controller = SessionController(
            user_id,
            user_name,
            session_store,
            reservation_store,
            scheduler,
            clock=clock,
            reservation_runner=executor.execute_reservation,
            **hooks,
        )
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        controller.teardown()


@pytest.fixture()
def runtime_state(session_factory, scheduler, clock, executor) -> RuntimeState:
    return RuntimeState(settings, session_factory, scheduler=scheduler, clock=clock, executor=executor)


@pytest.fixture()
def client(runtime_state: RuntimeState) -> Generator[TestClient, None, None]:
    original = app.state.runtime_state
    app.state.runtime_state = runtime_state
    try:
        with TestClient(app) as c:
            c.headers.update({settings.user_id_header: "alice", settings.user_name_header: "Alice"})
            yield c
    finally:
        app.state.runtime_state = original
