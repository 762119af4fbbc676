from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


class TransactionType(str, Enum):
    EARNED = "earned"
    SPENT = "spent"
    PURCHASED = "purchased"
    REFUNDED = "refunded"


class Session(BaseModel):
    id: str
    match_id: str
    teacher_id: str
    student_id: str
    skill_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    status: SessionStatus
    credits_amount: int
    video_room_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.scheduled_start < end and start < self.scheduled_end


class Transaction(BaseModel):
    id: str
    user_id: str
    amount: int
    type: TransactionType
    balance_after: int
    description: Optional[str] = None
    related_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)
