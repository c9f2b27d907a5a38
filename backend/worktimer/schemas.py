from __future__ import annotations

import datetime as dt
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

from .utils import display_task_name, format_hhmm, from_db_datetime


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


def _optional_datetime(value: Optional[dt.datetime]) -> Optional[str]:
    return _serialize_datetime(value) if value else None


class PreBreakTask(BaseModel):
    task: str
    goalId: Optional[str] = None
    goalTitle: Optional[str] = None


class SessionStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    user_name: Optional[str]
    is_working: bool
    current_task: Optional[str]
    current_goal_id: Optional[str]
    current_goal_title: Optional[str]
    start_time: Optional[dt.datetime]
    pre_break_task: Optional[PreBreakTask]
    needs_checkout_correction: bool

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "is_working": self.is_working,
            "current_task": self.current_task,
            "display_task": display_task_name(self.current_task),
            "current_goal_id": self.current_goal_id,
            "current_goal_title": self.current_goal_title,
            "start_time": _optional_datetime(self.start_time),
            "pre_break_task": self.pre_break_task.model_dump() if self.pre_break_task else None,
            "needs_checkout_correction": self.needs_checkout_correction,
        }


class WorkLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: str
    user_name: Optional[str]
    task: str
    goal_id: Optional[str]
    goal_title: Optional[str]
    date: str
    start_time: dt.datetime
    end_time: dt.datetime
    duration: int
    memo: str

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "task": self.task,
            "goal_id": self.goal_id,
            "goal_title": self.goal_title,
            "date": self.date,
            "start_time": _serialize_datetime(self.start_time),
            "end_time": _serialize_datetime(self.end_time),
            "duration": self.duration,
            "memo": self.memo,
        }


class ReservationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    action: str
    scheduled_time: dt.datetime
    status: str
    last_executed_date: Optional[str]
    last_outcome: Optional[str]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "time": format_hhmm(from_db_datetime(self.scheduled_time)),
            "scheduled_time": _serialize_datetime(self.scheduled_time),
            "status": self.status,
            "last_executed_date": self.last_executed_date,
            "last_outcome": self.last_outcome,
        }


class AutoClosureNoticeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    task: Optional[str]
    started_at: Optional[dt.datetime]
    ended_at: Optional[dt.datetime]
    reason: str


class RestoreResponse(BaseModel):
    session: SessionStateResponse
    auto_closed: bool
    notices: List[AutoClosureNoticeResponse] = Field(default_factory=list)


class StartTaskRequest(BaseModel):
    task: str
    goal_id: Optional[str] = None
    goal_title: Optional[str] = None
    other_detail: Optional[str] = None
    memo: str = ""

    @field_validator("task")
    @classmethod
    def _strip_task(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("task must not be empty")
        return value

    @field_validator("goal_id", "goal_title", "other_detail", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class MemoRequest(BaseModel):
    memo: str = ""


class ReservationTimeRequest(BaseModel):
    time: str
    id: Optional[str] = None


class CancelReservationsResponse(BaseModel):
    reset: int


class ExecutionOutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    reservation_id: str
    user_id: Optional[str]
    action: Optional[str]
    outcome: str
    detail: Optional[str]


class ExecutionReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    started_at: dt.datetime
    candidates: int
    waited_seconds: float
    rearmed: int
    swept_users: List[str]
    outcomes: List[ExecutionOutcomeResponse]
    next_due: Optional[dt.datetime]
