from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    UPLOADED = "uploaded"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.UPLOADED: frozenset({JobStatus.PENDING}),
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.ERROR}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERROR: frozenset(),
}


class EventType(str, Enum):
    STATUS = "status"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    job_id: str
    type: EventType
    status: JobStatus
    progress: int
    message: str
    timestamp: datetime
    download_url: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)


class JobView(BaseModel):
    id: str
    status: JobStatus
    progress: int
    message: str
    file_name: str
    file_size: int
    download_url: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    uploaded_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class UploadResponse(BaseModel):
    job_id: str
    file_name: str
    file_size: int
    message: str = "File uploaded successfully"


class ConvertRequest(BaseModel):
    job_id: str = Field(min_length=1)
    enhanced: bool = False


class ConvertAccepted(BaseModel):
    job_id: str
    status: JobStatus
    message: str


class AccountView(BaseModel):
    plan: str
    conversions_left: int


class UserCreateRequest(BaseModel):
    email: str = Field(min_length=3)
    plan: str = "free"
    conversions_left: Optional[int] = Field(default=None, ge=0)


class PlanUpdateRequest(BaseModel):
    plan: str


class UserSummary(BaseModel):
    id: str
    email: str
    prefix: str
    plan: str
    conversions_left: int
    is_active: bool
    created_at: str


class UserCreated(BaseModel):
    api_key: str
    record: UserSummary
