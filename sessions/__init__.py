"""
Session Scheduling

Books sessions between matched users, keeps each participant's calendar free
of overlaps, escrows the learner's credits at booking time and settles or
refunds them when the session completes or is cancelled.
"""

from .models import (
    Session,
    SessionStatus,
    RefundTier,
    ScheduleSessionRequest,
    BookingResponse,
    StartSessionResponse,
    CancellationResponse,
)
from .service import SessionScheduler

__all__ = [
    "Session",
    "SessionStatus",
    "RefundTier",
    "ScheduleSessionRequest",
    "BookingResponse",
    "StartSessionResponse",
    "CancellationResponse",
    "SessionScheduler",
]
