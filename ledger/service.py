import logging
from typing import Optional, Union
from uuid import uuid4

from common.clock import Clock, utc_now
from common.collaborators import PaymentGateway, UserAccount, UserDirectory
from common.config import EscrowSettings, get_settings
from common.errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    PaymentFailedError,
    SessionNotCompletedError,
    SessionNotFoundError,
    UserNotFoundError,
)
from common.models import Session, SessionStatus, Transaction, TransactionType
from common.storage import EscrowStore

from .models import AccountSummary, TransactionHistoryResponse

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Per-user credit balances derived from an append-only transaction log.

    A balance is always the sum of the user's transaction amounts. The
    directory's ``balance`` field is a cached projection written in the same
    unit of work as the log entry it reflects.
    """

    def __init__(
        self,
        store: EscrowStore,
        users: UserDirectory,
        payments: Optional[PaymentGateway] = None,
        settings: Optional[EscrowSettings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.users = users
        self.payments = payments
        self.settings = settings or get_settings()
        self.clock = clock

    def get_balance(self, user_id: str) -> int:
        self._require_user(user_id)
        return self._balance_of(user_id)

    def add_credits(
        self,
        user_id: str,
        amount: int,
        transaction_type: Union[TransactionType, str],
        description: Optional[str] = None,
        related_id: Optional[str] = None,
    ) -> Transaction:
        self._require_positive(amount)
        transaction_type = TransactionType(transaction_type)

        with self.store.lock_users(user_id), self.store.atomic():
            user = self._require_user(user_id)
            balance = self._balance_of(user_id)
            return self._record(user, amount, transaction_type, balance, description, related_id)

    def deduct_credits(
        self,
        user_id: str,
        amount: int,
        transaction_type: Union[TransactionType, str],
        description: Optional[str] = None,
        related_id: Optional[str] = None,
    ) -> Transaction:
        self._require_positive(amount)
        transaction_type = TransactionType(transaction_type)

        with self.store.lock_users(user_id), self.store.atomic():
            user = self._require_user(user_id)
            balance = self._balance_of(user_id)
            if balance < amount:
                raise InsufficientCreditsError(user_id, balance, amount)
            return self._record(user, -amount, transaction_type, balance, description, related_id)

    def get_history(self, user_id: str, limit: Optional[int] = None) -> list[Transaction]:
        self._require_user(user_id)
        # Reverse append order first so equal timestamps still come out newest first.
        entries = [Transaction(**e) for e in reversed(self.store.transactions_for_user(user_id))]
        entries.sort(key=lambda t: t.created_at, reverse=True)
        if limit is not None and limit > 0:
            return entries[:limit]
        return entries

    def get_history_response(self, user_id: str, limit: Optional[int] = None) -> TransactionHistoryResponse:
        history = self.get_history(user_id)
        page = history[:limit] if limit is not None and limit > 0 else history
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=page,
            total_count=len(history),
            current_balance=sum(t.amount for t in history),
        )

    def get_account_summary(self, user_id: str) -> AccountSummary:
        self._require_user(user_id)
        entries = self.store.transactions_for_user(user_id)
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None
        return AccountSummary(
            user_id=user_id,
            current_balance=sum(e["amount"] for e in entries),
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None,
        )

    def purchase_credits(self, user_id: str, amount: int, payment_method_id: str) -> Transaction:
        self._require_positive(amount)
        self._require_user(user_id)
        if self.payments is None:
            raise PaymentFailedError("No payment gateway configured")

        if not self.payments.charge(user_id, amount, payment_method_id):
            logger.warning("Payment declined for user %s (%d credits)", user_id, amount)
            raise PaymentFailedError(f"Payment with method {payment_method_id} was declined")

        return self.add_credits(
            user_id,
            amount,
            TransactionType.PURCHASED,
            f"Purchased {amount} credits",
            payment_method_id,
        )

    def participation_bonus(self, credits_amount: int) -> int:
        percent = self.settings.participation_bonus_percent
        if percent == 0:
            return 0
        return max(1, credits_amount * percent // 100)

    def process_session_completion(self, session_id: str) -> list[Transaction]:
        """
        Pay out a completed session.

        The teacher earns the escrowed amount and the student earns the
        participation bonus. Session counters and skill points move with the
        credits. A session is settled at most once; repeated calls return an
        empty list.
        """
        data = self.store.get_session(session_id)
        if not data:
            raise SessionNotFoundError(f"Session {session_id} not found")
        session = Session(**data)

        with self.store.lock_users(session.teacher_id, session.student_id), self.store.atomic():
            session = Session(**self.store.get_session(session_id))
            if session.status != SessionStatus.COMPLETED:
                raise SessionNotCompletedError(f"Session {session_id} is {session.status.value}, not completed")
            if session.settled_at is not None:
                logger.warning("Session %s already settled at %s, skipping payout", session_id, session.settled_at)
                return []

            payouts = [self.add_credits(
                session.teacher_id,
                session.credits_amount,
                TransactionType.EARNED,
                f"Credits earned from teaching session: {session_id}",
                session_id,
            )]

            bonus = self.participation_bonus(session.credits_amount)
            if bonus > 0:
                payouts.append(self.add_credits(
                    session.student_id,
                    bonus,
                    TransactionType.EARNED,
                    f"Participation credits from session: {session_id}",
                    session_id,
                ))

            teacher = self._require_user(session.teacher_id)
            self._update_user(teacher, {
                "sessions_taught": teacher.sessions_taught + 1,
                "skill_points": teacher.skill_points + session.credits_amount,
            })
            student = self._require_user(session.student_id)
            self._update_user(student, {
                "sessions_completed": student.sessions_completed + 1,
                "skill_points": student.skill_points + bonus,
            })

            self.store.update_session(session_id, {"settled_at": self.clock()})

        logger.info(
            "Settled session %s: teacher %s +%d, student %s +%d",
            session_id, session.teacher_id, session.credits_amount, session.student_id, bonus,
        )
        return payouts

    def _record(
        self,
        user: UserAccount,
        amount: int,
        transaction_type: TransactionType,
        balance: int,
        description: Optional[str],
        related_id: Optional[str],
    ) -> Transaction:
        new_balance = balance + amount
        entry = {
            "id": str(uuid4()),
            "user_id": user.id,
            "amount": amount,
            "type": transaction_type,
            "balance_after": new_balance,
            "description": description,
            "related_id": related_id,
            "created_at": self.clock(),
        }
        self.store.append_transaction(entry)
        self._update_user(user, {"balance": new_balance})

        logger.info(
            "Ledger %s %+d for user %s (balance %d, related %s)",
            transaction_type.value, amount, user.id, new_balance, related_id,
        )
        return Transaction(**entry)

    def _update_user(self, user: UserAccount, fields: dict) -> None:
        previous = {name: getattr(user, name) for name in fields}
        self.users.update_user(user.id, fields)
        self.store.on_rollback(lambda: self.users.update_user(user.id, previous))

    def _balance_of(self, user_id: str) -> int:
        return sum(e["amount"] for e in self.store.transactions_for_user(user_id))

    def _require_user(self, user_id: str) -> UserAccount:
        user = self.users.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    @staticmethod
    def _require_positive(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(f"Credit amount must be a positive integer, got {amount!r}")
