from __future__ import annotations

import datetime as dt
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware

from . import models
from .config import settings
from .database import SessionLocal, engine
from .middleware import IdentityMiddleware
from .schemas import (
    AutoClosureNoticeResponse,
    CancelReservationsResponse,
    ExecutionReportResponse,
    MemoRequest,
    ReservationResponse,
    ReservationTimeRequest,
    RestoreResponse,
    SessionStateResponse,
    StartTaskRequest,
    WorkLogResponse,
)
from .services import (
    cancel_stop_reservation,
    delete_reservation,
    list_reservations,
    list_work_logs,
    save_break_reservation,
    set_stop_reservation,
    translate_errors,
)
from .state import RuntimeState

models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    state: RuntimeState = app.state.runtime_state
    state.start()
    try:
        yield
    finally:
        state.shutdown()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.runtime_state = RuntimeState(settings, SessionLocal)
app.add_middleware(IdentityMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _runtime(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


def _controller(request: Request):
    return _runtime(request).controller_for(request.state.user_id, request.state.user_name)


def _session_response(snapshot) -> SessionStateResponse:
    return SessionStateResponse.model_validate(snapshot, from_attributes=True)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/work/restore", response_model=RestoreResponse)
def work_restore(request: Request) -> RestoreResponse:
    controller = _controller(request)
    with translate_errors():
        result = controller.restore_on_load()
    notices = _runtime(request).pop_notices(controller.user_id)
    return RestoreResponse(
        session=_session_response(result.session),
        auto_closed=result.auto_closed,
        notices=[AutoClosureNoticeResponse.model_validate(notice, from_attributes=True) for notice in notices],
    )


@app.get("/work/status", response_model=SessionStateResponse)
def work_status(request: Request) -> SessionStateResponse:
    with translate_errors():
        snapshot = _runtime(request).session_store.get(request.state.user_id, request.state.user_name)
    return _session_response(snapshot)


@app.post("/work/start", response_model=SessionStateResponse)
def work_start(payload: StartTaskRequest, request: Request) -> SessionStateResponse:
    controller = _controller(request)
    with translate_errors():
        snapshot = controller.start_task(
            payload.task,
            payload.goal_id,
            payload.goal_title,
            memo=payload.memo,
            other_detail=payload.other_detail,
        )
    return _session_response(snapshot)


@app.post("/work/break", response_model=SessionStateResponse)
def work_break(request: Request, payload: Optional[MemoRequest] = None) -> SessionStateResponse:
    controller = _controller(request)
    with translate_errors():
        snapshot = controller.start_break(memo=payload.memo if payload else "")
    return _session_response(snapshot)


@app.post("/work/resume", response_model=SessionStateResponse)
def work_resume(request: Request, payload: Optional[MemoRequest] = None) -> SessionStateResponse:
    controller = _controller(request)
    with translate_errors():
        snapshot = controller.resume_from_break(memo=payload.memo if payload else "")
    return _session_response(snapshot)


@app.post("/work/stop", response_model=SessionStateResponse)
def work_stop(request: Request, payload: Optional[MemoRequest] = None) -> SessionStateResponse:
    controller = _controller(request)
    with translate_errors():
        snapshot = controller.stop_work(memo=payload.memo if payload else "")
    return _session_response(snapshot)


@app.post("/work/checkout-correction/ack", response_model=SessionStateResponse)
def work_ack_checkout_correction(request: Request) -> SessionStateResponse:
    controller = _controller(request)
    with translate_errors():
        snapshot = controller.acknowledge_checkout_correction()
    return _session_response(snapshot)


@app.get("/work/logs", response_model=list[WorkLogResponse])
def work_logs(request: Request, day: Optional[dt.date] = None) -> list[WorkLogResponse]:
    return list_work_logs(_runtime(request).ledger, request.state.user_id, day)


@app.get("/status", response_model=list[SessionStateResponse])
def status_overview(request: Request) -> list[SessionStateResponse]:
    return [_session_response(snapshot) for snapshot in _runtime(request).session_store.list_all()]


@app.get("/reservations", response_model=list[ReservationResponse])
def reservations_list(request: Request) -> list[ReservationResponse]:
    return list_reservations(_runtime(request).reservation_store, request.state.user_id)


@app.post("/reservations/break", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
def reservations_save_break(payload: ReservationTimeRequest, request: Request) -> ReservationResponse:
    runtime = _runtime(request)
    reservation = save_break_reservation(
        runtime.reservation_store,
        request.state.user_id,
        request.state.user_name,
        payload.time,
        runtime.clock(),
        replace_id=payload.id,
    )
    _refresh_local_timers(request)
    return reservation


@app.put("/reservations/stop", response_model=ReservationResponse)
def reservations_set_stop(payload: ReservationTimeRequest, request: Request) -> ReservationResponse:
    runtime = _runtime(request)
    reservation = set_stop_reservation(
        runtime.reservation_store,
        request.state.user_id,
        request.state.user_name,
        payload.time,
        runtime.clock(),
    )
    _refresh_local_timers(request)
    return reservation


@app.delete("/reservations/stop", status_code=status.HTTP_204_NO_CONTENT)
def reservations_cancel_stop(request: Request) -> Response:
    cancel_stop_reservation(_runtime(request).reservation_store, request.state.user_id)
    _refresh_local_timers(request)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/reservations/cancel-all", response_model=CancelReservationsResponse)
def reservations_cancel_all(request: Request) -> CancelReservationsResponse:
    with translate_errors():
        reset = _controller(request).cancel_reservations()
    _refresh_local_timers(request)
    return CancelReservationsResponse(reset=reset)


@app.post("/reservations/run", response_model=ExecutionReportResponse)
def reservations_run(request: Request) -> ExecutionReportResponse:
    report = _runtime(request).executor.run_once()
    return ExecutionReportResponse.model_validate(report, from_attributes=True)


@app.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
def reservations_delete(reservation_id: str, request: Request) -> Response:
    delete_reservation(_runtime(request).reservation_store, request.state.user_id, reservation_id)
    _refresh_local_timers(request)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _refresh_local_timers(request: Request) -> None:
    with translate_errors():
        _controller(request).rearm_reservation_timers()
