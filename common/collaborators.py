"""
External collaborator contracts and their in-memory implementations.

The engine consumes these, it does not own them:
- MatchRegistry: read-only match lookup
- UserDirectory: user profile fields, including the cached credit balance
- VideoRoomProvider: room and access token allocation
- ReminderDispatcher: fire-and-forget session reminders
- PaymentGateway: charging a payment method for credit purchases
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class MatchStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


class Match(BaseModel):
    id: str
    status: MatchStatus
    user1_id: Optional[str] = None
    user2_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserAccount(BaseModel):
    id: str
    balance: int = 0
    skill_points: int = 0
    sessions_taught: int = 0
    sessions_completed: int = 0

    model_config = ConfigDict(from_attributes=True)


class Reminder(BaseModel):
    session_id: str
    user_id: str
    role: str
    remind_at: datetime


class MatchRegistry(Protocol):
    def get_match(self, match_id: str) -> Optional[Match]: ...


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def update_user(self, user_id: str, fields: dict[str, Any]) -> UserAccount: ...


class VideoRoomProvider(Protocol):
    def create_room(self, session_id: str) -> str: ...

    def generate_token(self, room_id: str, session_id: str) -> str: ...


class ReminderDispatcher(Protocol):
    def schedule_session_reminder(self, session: Any) -> None: ...


class PaymentGateway(Protocol):
    def charge(self, user_id: str, amount: int, payment_method_id: str) -> bool: ...


class InMemoryMatchRegistry:
    def __init__(self):
        self.matches: dict[str, Match] = {}

    def add_match(self, match: Match) -> Match:
        self.matches[match.id] = match
        return match

    def get_match(self, match_id: str) -> Optional[Match]:
        return self.matches.get(match_id)


class InMemoryUserDirectory:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self._lock = threading.Lock()

    def add_user(self, user_id: str, **fields) -> UserAccount:
        with self._lock:
            self.users[user_id] = UserAccount(id=user_id, **fields).model_dump()
            return UserAccount(**self.users[user_id])

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._lock:
            data = self.users.get(user_id)
            return UserAccount(**data) if data else None

    def update_user(self, user_id: str, fields: dict[str, Any]) -> UserAccount:
        unknown = set(fields) - (set(UserAccount.model_fields) - {"id"})
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        with self._lock:
            if user_id not in self.users:
                raise KeyError(user_id)
            self.users[user_id] = {**self.users[user_id], **fields}
            return UserAccount(**self.users[user_id])


class MockVideoRoomProvider:
    """Stands in for a hosted video API. Room ids are unique per call."""

    def create_room(self, session_id: str) -> str:
        return f"session_{session_id}_{uuid4().hex[:12]}"

    def generate_token(self, room_id: str, session_id: str) -> str:
        return f"mock_token_{room_id}_{uuid4().hex}"


class InMemoryReminderDispatcher:
    """Records a reminder for both participants 15 minutes before the start."""

    def __init__(self, lead_time: timedelta = timedelta(minutes=15)):
        self.lead_time = lead_time
        self.reminders: list[Reminder] = []

    def schedule_session_reminder(self, session: Any) -> None:
        remind_at = session.scheduled_start - self.lead_time
        for user_id, role in ((session.teacher_id, "teacher"), (session.student_id, "student")):
            self.reminders.append(Reminder(
                session_id=session.id, user_id=user_id, role=role, remind_at=remind_at,
            ))
        logger.info("Scheduled reminders for session %s at %s", session.id, remind_at.isoformat())


class SimulatedPaymentGateway:
    """Accepts every payment method except the literal ``"fail"``."""

    def __init__(self):
        self.charges: list[dict] = []

    def charge(self, user_id: str, amount: int, payment_method_id: str) -> bool:
        if payment_method_id == "fail":
            return False
        self.charges.append({"user_id": user_id, "amount": amount, "payment_method_id": payment_method_id})
        return True
