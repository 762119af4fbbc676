from enum import Enum
from typing import Optional


class ValidationReason(str, Enum):
    SAME_PARTICIPANT = "same_participant"
    START_IN_PAST = "start_in_past"
    END_BEFORE_START = "end_before_start"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    NON_POSITIVE_CREDITS = "non_positive_credits"


class Party(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


class EscrowServiceError(Exception):
    pass


class MatchNotFoundError(EscrowServiceError):
    pass


class MatchNotAcceptedError(EscrowServiceError):
    pass


class SessionNotFoundError(EscrowServiceError):
    pass


class SessionNotCompletedError(EscrowServiceError):
    pass


class UserNotFoundError(EscrowServiceError):
    pass


class InvalidAmountError(EscrowServiceError):
    pass


class StartWindowViolationError(EscrowServiceError):
    pass


class VideoRoomError(EscrowServiceError):
    pass


class PaymentFailedError(EscrowServiceError):
    pass


class SessionValidationError(EscrowServiceError):
    def __init__(self, reason: ValidationReason, message: str):
        super().__init__(message)
        self.reason = reason


class SchedulingConflictError(EscrowServiceError):
    def __init__(self, party: Party):
        super().__init__(f"{party.value.capitalize()} has a scheduling conflict at the requested time")
        self.party = party


class InsufficientCreditsError(EscrowServiceError):
    def __init__(self, user_id: str, balance: int, requested: int):
        super().__init__(f"User {user_id} has {balance} credits, {requested} required")
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class InvalidStateTransitionError(EscrowServiceError):
    def __init__(self, session_id: str, expected: Optional[str], actual: str, action: str):
        expected_part = f", expected {expected}" if expected else ""
        super().__init__(f"Cannot {action} session {session_id} in {actual} state{expected_part}")
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
