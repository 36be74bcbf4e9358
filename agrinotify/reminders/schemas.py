"""
Request and result schemas for the reminder engine's operational surface
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator

from .recurrence import parse_pattern, parse_time_of_day

# Reminder titles carry the name; FCM caps the whole message at 4 KB
TASK_NAME_MAX_LENGTH = 120


def _validate_time(value: str) -> str:
    parse_time_of_day(value)
    return value.strip().upper()


def _validate_days(value: str) -> str:
    return parse_pattern(value).to_string()


class TaskData(BaseModel):
    """Task fields as submitted by the app"""
    name: str = Field(..., min_length=1, max_length=TASK_NAME_MAX_LENGTH)
    time: str
    days: str
    status: Literal["Active", "Complete"] = "Active"

    @field_validator("time")
    @classmethod
    def check_time(cls, v: str) -> str:
        return _validate_time(v)

    @field_validator("days")
    @classmethod
    def check_days(cls, v: str) -> str:
        return _validate_days(v)


class TaskDataUpdate(BaseModel):
    """Partial task update"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=TASK_NAME_MAX_LENGTH)
    time: Optional[str] = None
    days: Optional[str] = None
    status: Optional[Literal["Active", "Complete"]] = None

    @field_validator("time")
    @classmethod
    def check_time(cls, v: Optional[str]) -> Optional[str]:
        return _validate_time(v) if v is not None else None

    @field_validator("days")
    @classmethod
    def check_days(cls, v: Optional[str]) -> Optional[str]:
        return _validate_days(v) if v is not None else None


# --- Tagged request types ---

class CreateTaskRequest(BaseModel):
    action: Literal["create"] = "create"
    user_id: str = Field(..., min_length=1)
    task: TaskData


class UpdateTaskRequest(BaseModel):
    action: Literal["update"] = "update"
    user_id: str = Field(..., min_length=1)
    task_id: str = Field(..., min_length=1)
    task: TaskDataUpdate


class DeleteTaskRequest(BaseModel):
    action: Literal["delete"] = "delete"
    user_id: str = Field(..., min_length=1)
    task_id: str = Field(..., min_length=1)


class CompleteTaskRequest(BaseModel):
    action: Literal["complete"] = "complete"
    user_id: str = Field(..., min_length=1)
    task_id: str = Field(..., min_length=1)


class ClearTasksRequest(BaseModel):
    action: Literal["delete_all"] = "delete_all"
    user_id: str = Field(..., min_length=1)


class ScanRequest(BaseModel):
    action: Literal["scan"] = "scan"
    force: bool = False


class BroadcastRequest(BaseModel):
    action: Literal["broadcast"] = "broadcast"
    alert_class: Literal["weather", "pest"] = "weather"
    force: bool = False


class RegisterEndpointRequest(BaseModel):
    action: Literal["register_endpoint"] = "register_endpoint"
    user_id: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    platform: str = Field(default="android", pattern="^(ios|android|web)$")


class LogoutRequest(BaseModel):
    action: Literal["logout"] = "logout"
    user_id: str = Field(..., min_length=1)


class SendTestReminderRequest(BaseModel):
    """Push one task's reminder to its owner right now"""
    action: Literal["test_reminder"] = "test_reminder"
    user_id: str = Field(..., min_length=1)
    task_id: str = Field(..., min_length=1)


class SendTestAlertRequest(BaseModel):
    """Weather alert for one user and city; push=False only fetches the weather"""
    action: Literal["test_alert"] = "test_alert"
    user_id: Optional[str] = None
    city: str = Field(default="Manila", min_length=1)
    alert_class: Literal["weather", "pest"] = "weather"
    push: bool = True


EngineRequestUnion = Union[
    CreateTaskRequest,
    UpdateTaskRequest,
    DeleteTaskRequest,
    CompleteTaskRequest,
    ClearTasksRequest,
    ScanRequest,
    BroadcastRequest,
    RegisterEndpointRequest,
    LogoutRequest,
    SendTestReminderRequest,
    SendTestAlertRequest,
]

EngineRequest = Annotated[EngineRequestUnion, Field(discriminator="action")]


# --- Results ---

class TaskRead(BaseModel):
    id: str
    user_id: str
    name: str
    time: str
    days: str
    status: str
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ScheduledReminderRead(BaseModel):
    id: str
    task_id: str
    trigger_at: datetime
    event_at: datetime
    status: str

    model_config = {"from_attributes": True}


class OperationResult(BaseModel):
    success: bool
    message: str = ""
    task: Optional[TaskRead] = None
    scheduled: Optional[ScheduledReminderRead] = None
    cancelled: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)


class ScanSummary(BaseModel):
    success: bool = True
    scanned: bool = False
    sent: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0
    message: str = ""


class BroadcastSummary(BaseModel):
    success: bool = True
    ran: bool = False
    alert_class: str
    eligible: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    locations: int = 0
    resolver_failures: List[str] = Field(default_factory=list)
    message: str = ""
