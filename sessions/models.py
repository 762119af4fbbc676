from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from common.clock import as_utc
from common.models import Session, SessionStatus, Transaction


class RefundTier(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class ScheduleSessionRequest(BaseModel):
    teacher_id: str
    student_id: str
    skill_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    credits_amount: int

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "teacher_id": "teacher-1",
            "student_id": "student-1",
            "skill_id": "skill-python",
            "scheduled_start": "2030-01-01T10:00:00Z",
            "scheduled_end": "2030-01-01T11:00:00Z",
            "credits_amount": 10,
        }
    })

    @field_validator("scheduled_start", "scheduled_end")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return as_utc(value)


class BookSessionRequest(ScheduleSessionRequest):
    match_id: str


class EndSessionRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class CancelSessionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class BookingResponse(BaseModel):
    session: Session
    escrow: Transaction
    warnings: list[str] = Field(default_factory=list)
    message: str


class StartSessionResponse(BaseModel):
    room_id: str
    token: str


class CancellationResponse(BaseModel):
    session: Session
    refund_tier: RefundTier
    refund_amount: int
    refund: Optional[Transaction] = None
    message: str


__all__ = [
    "Session",
    "SessionStatus",
    "RefundTier",
    "ScheduleSessionRequest",
    "BookSessionRequest",
    "EndSessionRequest",
    "CancelSessionRequest",
    "BookingResponse",
    "StartSessionResponse",
    "CancellationResponse",
]
