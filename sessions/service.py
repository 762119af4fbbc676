import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional, Union
from uuid import uuid4

from common.clock import Clock, as_utc, utc_now
from common.collaborators import (
    MatchRegistry,
    MatchStatus,
    ReminderDispatcher,
    UserDirectory,
    VideoRoomProvider,
)
from common.config import EscrowSettings, get_settings
from common.errors import (
    InsufficientCreditsError,
    InvalidStateTransitionError,
    MatchNotAcceptedError,
    MatchNotFoundError,
    Party,
    SchedulingConflictError,
    SessionNotFoundError,
    SessionValidationError,
    StartWindowViolationError,
    UserNotFoundError,
    ValidationReason,
    VideoRoomError,
)
from common.models import TransactionType
from common.storage import EscrowStore
from ledger.service import CreditLedger

from .models import (
    BookingResponse,
    CancellationResponse,
    RefundTier,
    ScheduleSessionRequest,
    Session,
    SessionStatus,
    StartSessionResponse,
)

logger = logging.getLogger(__name__)


class SessionScheduler:
    """
    Owns the session state machine and drives escrow through the ledger.

        scheduled --start--> in_progress --end--> completed
        scheduled --cancel--> cancelled

    Every transition holds both participants' locks and re-reads the session
    inside them, so concurrent callers see each transition exactly once.
    """

    def __init__(
        self,
        store: EscrowStore,
        ledger: CreditLedger,
        matches: MatchRegistry,
        users: UserDirectory,
        video_rooms: VideoRoomProvider,
        reminders: ReminderDispatcher,
        settings: Optional[EscrowSettings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.ledger = ledger
        self.matches = matches
        self.users = users
        self.video_rooms = video_rooms
        self.reminders = reminders
        self.settings = settings or get_settings()
        self.clock = clock

    def schedule_session(
        self, match_id: str, request: Union[ScheduleSessionRequest, dict]
    ) -> BookingResponse:
        if not isinstance(request, ScheduleSessionRequest):
            request = ScheduleSessionRequest.model_validate(request)

        match = self.matches.get_match(match_id)
        if match is None:
            raise MatchNotFoundError(f"Match {match_id} not found")
        if match.status != MatchStatus.ACCEPTED:
            raise MatchNotAcceptedError(
                f"Match {match_id} is {match.status.value}; it must be accepted before scheduling a session"
            )

        self.validate_session_request(request)

        # Conflict check, insert and escrow form one unit under both users' locks.
        with self.store.lock_users(request.teacher_id, request.student_id), self.store.atomic():
            for party, user_id in ((Party.TEACHER, request.teacher_id), (Party.STUDENT, request.student_id)):
                if self.check_conflicts(user_id, request.scheduled_start, request.scheduled_end):
                    raise SchedulingConflictError(party)

            if self.users.get_user(request.teacher_id) is None:
                raise UserNotFoundError(f"User {request.teacher_id} not found")
            balance = self.ledger.get_balance(request.student_id)
            if balance < request.credits_amount:
                raise InsufficientCreditsError(request.student_id, balance, request.credits_amount)

            session = Session(
                id=str(uuid4()),
                match_id=match_id,
                teacher_id=request.teacher_id,
                student_id=request.student_id,
                skill_id=request.skill_id,
                scheduled_start=request.scheduled_start,
                scheduled_end=request.scheduled_end,
                status=SessionStatus.SCHEDULED,
                credits_amount=request.credits_amount,
                created_at=self.clock(),
            )
            self.store.insert_session(session.model_dump())

            escrow = self.ledger.deduct_credits(
                request.student_id,
                request.credits_amount,
                TransactionType.SPENT,
                f"Credits reserved for session: {session.id}",
                session.id,
            )

        logger.info(
            "Scheduled session %s (%s teaches %s) %s-%s, %d credits escrowed",
            session.id, session.teacher_id, session.student_id,
            session.scheduled_start.isoformat(), session.scheduled_end.isoformat(), session.credits_amount,
        )
        warnings = self._dispatch_reminder(session)
        return BookingResponse(
            session=session,
            escrow=escrow,
            warnings=warnings,
            message="Session scheduled successfully",
        )

    def validate_session_request(self, request: ScheduleSessionRequest, now: Optional[datetime] = None) -> None:
        now = as_utc(now) if now else self.clock()

        if request.teacher_id == request.student_id:
            raise SessionValidationError(
                ValidationReason.SAME_PARTICIPANT, "Teacher and student cannot be the same person"
            )
        if request.scheduled_start <= now:
            raise SessionValidationError(ValidationReason.START_IN_PAST, "Session cannot be scheduled in the past")
        if request.scheduled_end <= request.scheduled_start:
            raise SessionValidationError(ValidationReason.END_BEFORE_START, "End time must be after start time")

        duration = request.scheduled_end - request.scheduled_start
        if duration < timedelta(minutes=self.settings.min_session_minutes):
            raise SessionValidationError(
                ValidationReason.TOO_SHORT,
                f"Session must be at least {self.settings.min_session_minutes} minutes long",
            )
        if duration > timedelta(minutes=self.settings.max_session_minutes):
            raise SessionValidationError(
                ValidationReason.TOO_LONG,
                f"Session cannot be longer than {self.settings.max_session_minutes} minutes",
            )

        if request.credits_amount <= 0:
            raise SessionValidationError(ValidationReason.NON_POSITIVE_CREDITS, "Credits amount must be positive")

    def start_session(self, session_id: str) -> StartSessionResponse:
        with self._locked_session(session_id) as session:
            if session.status != SessionStatus.SCHEDULED:
                raise InvalidStateTransitionError(session_id, SessionStatus.SCHEDULED.value, session.status.value, "start")

            now = self.clock()
            earliest = session.scheduled_start - timedelta(minutes=self.settings.early_start_minutes)
            latest = session.scheduled_start + timedelta(minutes=self.settings.late_start_minutes)
            if now < earliest or now > latest:
                raise StartWindowViolationError(
                    f"Session {session_id} can only be started between {earliest.isoformat()} and {latest.isoformat()}"
                )

            try:
                room_id = self.video_rooms.create_room(session_id)
                token = self.video_rooms.generate_token(room_id, session_id)
            except Exception as exc:
                logger.error("Video room allocation failed for session %s: %s", session_id, exc)
                raise VideoRoomError(f"Could not allocate a video room for session {session_id}") from exc

            self.store.update_session(session_id, {
                "status": SessionStatus.IN_PROGRESS,
                "actual_start": now,
                "video_room_id": room_id,
            })

        logger.info("Started session %s in room %s", session_id, room_id)
        return StartSessionResponse(room_id=room_id, token=token)

    def end_session(self, session_id: str, notes: Optional[str] = None) -> Session:
        with self._locked_session(session_id) as session:
            if session.status != SessionStatus.IN_PROGRESS:
                raise InvalidStateTransitionError(
                    session_id, SessionStatus.IN_PROGRESS.value, session.status.value, "end"
                )

            changes = {"status": SessionStatus.COMPLETED, "actual_end": self.clock()}
            if notes is not None:
                changes["notes"] = notes
            self.store.update_session(session_id, changes)

            self.ledger.process_session_completion(session_id)

        logger.info("Completed session %s", session_id)
        return self.get_session(session_id)

    def cancel_session(self, session_id: str, reason: str) -> CancellationResponse:
        with self._locked_session(session_id) as session:
            # In-progress sessions are finished through end_session, never cancelled.
            if session.status != SessionStatus.SCHEDULED:
                raise InvalidStateTransitionError(
                    session_id, SessionStatus.SCHEDULED.value, session.status.value, "cancel"
                )

            tier, refund_amount = self.calculate_refund(session)
            note = f"Cancelled: {reason}"
            updated = Session(**self.store.update_session(session_id, {
                "status": SessionStatus.CANCELLED,
                "notes": f"{session.notes}\n{note}" if session.notes else note,
            }))

            refund = None
            if refund_amount > 0:
                refund = self.ledger.add_credits(
                    session.student_id,
                    refund_amount,
                    TransactionType.REFUNDED,
                    f"Refund for cancelled session: {session_id}",
                    session_id,
                )

        logger.info("Cancelled session %s (%s refund of %d credits)", session_id, tier.value, refund_amount)
        return CancellationResponse(
            session=updated,
            refund_tier=tier,
            refund_amount=refund_amount,
            refund=refund,
            message="Session cancelled successfully",
        )

    def calculate_refund(self, session: Session, now: Optional[datetime] = None) -> tuple[RefundTier, int]:
        now = as_utc(now) if now else self.clock()
        hours_until_start = (session.scheduled_start - now).total_seconds() / 3600

        if hours_until_start >= self.settings.full_refund_hours:
            return RefundTier.FULL, session.credits_amount
        if hours_until_start >= self.settings.partial_refund_hours:
            return RefundTier.PARTIAL, session.credits_amount * self.settings.partial_refund_percent // 100
        return RefundTier.NONE, 0

    def check_conflicts(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> bool:
        start, end = as_utc(start), as_utc(end)
        for data in self.store.sessions_for_user(user_id):
            session = Session(**data)
            if exclude_session_id and session.id == exclude_session_id:
                continue
            if session.status.is_terminal:
                continue
            if session.overlaps(start, end):
                return True
        return False

    def get_session(self, session_id: str) -> Session:
        data = self.store.get_session(session_id)
        if not data:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return Session(**data)

    def get_upcoming_sessions(self, user_id: str) -> list[Session]:
        now = self.clock()
        sessions = [
            s for s in self._sessions_for(user_id)
            if s.status in (SessionStatus.SCHEDULED, SessionStatus.IN_PROGRESS) and s.scheduled_start > now
        ]
        sessions.sort(key=lambda s: s.scheduled_start)
        return sessions

    def get_session_history(self, user_id: str, limit: Optional[int] = None) -> list[Session]:
        sessions = [s for s in reversed(self._sessions_for(user_id)) if s.status.is_terminal]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        if limit is not None and limit > 0:
            return sessions[:limit]
        return sessions

    def _sessions_for(self, user_id: str) -> list[Session]:
        return [Session(**data) for data in self.store.sessions_for_user(user_id)]

    @contextmanager
    def _locked_session(self, session_id: str) -> Iterator[Session]:
        session = self.get_session(session_id)
        with self.store.lock_users(session.teacher_id, session.student_id), self.store.atomic():
            yield self.get_session(session_id)

    def _dispatch_reminder(self, session: Session) -> list[str]:
        try:
            self.reminders.schedule_session_reminder(session)
        except Exception as exc:
            logger.warning("Reminder dispatch failed for session %s: %s", session.id, exc)
            return [f"Reminder could not be scheduled: {exc}"]
        return []
