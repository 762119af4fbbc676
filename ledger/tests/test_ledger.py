"""
Unit Tests for the Credit Ledger

Tests cover:
1. Add / deduct flows and amount validation
2. Balance derived from the transaction log
3. History ordering and truncation
4. Session completion payouts and idempotency
5. Credit purchases
6. Concurrent deductions and unit-of-work rollback
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from uuid import uuid4

import pytest

from common.errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    PaymentFailedError,
    SessionNotCompletedError,
    SessionNotFoundError,
    UserNotFoundError,
)
from common.models import Session, SessionStatus, TransactionType


# Test constants
TEACHER_ID = "teacher-1"
STUDENT_ID = "student-1"


@pytest.fixture
def ledger(services):
    services.users.add_user(TEACHER_ID)
    services.users.add_user(STUDENT_ID)
    return services.ledger


def insert_session(services, credits_amount=20, status=SessionStatus.COMPLETED) -> Session:
    now = services.ledger.clock()
    session = Session(
        id=str(uuid4()),
        match_id="match-1",
        teacher_id=TEACHER_ID,
        student_id=STUDENT_ID,
        skill_id="skill-1",
        scheduled_start=now - timedelta(hours=2),
        scheduled_end=now - timedelta(hours=1),
        status=status,
        credits_amount=credits_amount,
        created_at=now - timedelta(days=1),
    )
    services.store.insert_session(session.model_dump())
    return session


class TestAddCredits:
    """Tests for crediting a user."""

    def test_add_credits_success(self, ledger, services):
        """Test that a credit appends a positive entry and moves the balance."""
        transaction = ledger.add_credits(STUDENT_ID, 100, TransactionType.PURCHASED, "Top up")

        assert transaction.amount == 100
        assert transaction.type == TransactionType.PURCHASED
        assert transaction.balance_after == 100
        assert transaction.description == "Top up"
        assert ledger.get_balance(STUDENT_ID) == 100

        # Cached projection follows the log
        assert services.users.get_user(STUDENT_ID).balance == 100

    def test_type_accepts_plain_string(self, ledger):
        transaction = ledger.add_credits(STUDENT_ID, 5, "refunded", related_id="session-x")

        assert transaction.type == TransactionType.REFUNDED
        assert transaction.related_id == "session-x"

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_rejected(self, ledger, amount):
        with pytest.raises(InvalidAmountError):
            ledger.add_credits(STUDENT_ID, amount, TransactionType.EARNED)

        assert ledger.get_history(STUDENT_ID) == []

    def test_unknown_transaction_type_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.add_credits(STUDENT_ID, 5, "gifted")

    def test_unknown_user_rejected(self, ledger):
        with pytest.raises(UserNotFoundError):
            ledger.add_credits("ghost", 10, TransactionType.PURCHASED)

        with pytest.raises(UserNotFoundError):
            ledger.get_balance("ghost")


class TestDeductCredits:
    """Tests for debiting a user."""

    def test_deduct_credits_success(self, ledger):
        ledger.add_credits(STUDENT_ID, 100, TransactionType.PURCHASED)

        transaction = ledger.deduct_credits(STUDENT_ID, 30, TransactionType.SPENT, related_id="session-1")

        assert transaction.amount == -30
        assert transaction.balance_after == 70
        assert ledger.get_balance(STUDENT_ID) == 70

    def test_insufficient_credits_leaves_balance_unchanged(self, ledger, services):
        """Test that an overdraft is rejected without touching the log."""
        ledger.add_credits(STUDENT_ID, 50, TransactionType.PURCHASED)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            ledger.deduct_credits(STUDENT_ID, 51, TransactionType.SPENT)

        assert exc_info.value.balance == 50
        assert exc_info.value.requested == 51
        assert ledger.get_balance(STUDENT_ID) == 50
        assert len(ledger.get_history(STUDENT_ID)) == 1
        assert services.users.get_user(STUDENT_ID).balance == 50

    def test_deduct_entire_balance(self, ledger):
        ledger.add_credits(STUDENT_ID, 40, TransactionType.PURCHASED)
        ledger.deduct_credits(STUDENT_ID, 40, TransactionType.SPENT)

        assert ledger.get_balance(STUDENT_ID) == 0

    def test_non_positive_deduction_rejected(self, ledger):
        ledger.add_credits(STUDENT_ID, 40, TransactionType.PURCHASED)

        with pytest.raises(InvalidAmountError):
            ledger.deduct_credits(STUDENT_ID, 0, TransactionType.SPENT)

        assert ledger.get_balance(STUDENT_ID) == 40


class TestBalanceCalculation:
    """Tests for balance derivation."""

    def test_balance_equals_sum_of_history(self, ledger, services):
        ledger.add_credits(STUDENT_ID, 100, TransactionType.PURCHASED)
        ledger.deduct_credits(STUDENT_ID, 35, TransactionType.SPENT)
        ledger.add_credits(STUDENT_ID, 15, TransactionType.REFUNDED)
        with pytest.raises(InsufficientCreditsError):
            ledger.deduct_credits(STUDENT_ID, 500, TransactionType.SPENT)
        ledger.deduct_credits(STUDENT_ID, 80, TransactionType.SPENT)

        history = ledger.get_history(STUDENT_ID)

        # 100 - 35 + 15 - 80 = 0
        assert ledger.get_balance(STUDENT_ID) == sum(t.amount for t in history) == 0
        assert services.users.get_user(STUDENT_ID).balance == 0

    def test_account_summary(self, ledger, clock):
        ledger.add_credits(STUDENT_ID, 10, TransactionType.PURCHASED)
        clock.advance(minutes=5)
        ledger.add_credits(STUDENT_ID, 20, TransactionType.PURCHASED)

        summary = ledger.get_account_summary(STUDENT_ID)

        assert summary.current_balance == 30
        assert summary.total_entries == 2
        assert summary.last_transaction_at == clock()


class TestHistory:
    """Tests for transaction history retrieval."""

    def test_history_newest_first(self, ledger, clock):
        first = ledger.add_credits(STUDENT_ID, 10, TransactionType.PURCHASED)
        clock.advance(minutes=1)
        second = ledger.add_credits(STUDENT_ID, 20, TransactionType.PURCHASED)
        clock.advance(minutes=1)
        third = ledger.deduct_credits(STUDENT_ID, 5, TransactionType.SPENT)

        history = ledger.get_history(STUDENT_ID)

        assert [t.id for t in history] == [third.id, second.id, first.id]

    def test_history_newest_first_with_equal_timestamps(self, ledger):
        first = ledger.add_credits(STUDENT_ID, 10, TransactionType.PURCHASED)
        second = ledger.add_credits(STUDENT_ID, 20, TransactionType.PURCHASED)

        assert [t.id for t in ledger.get_history(STUDENT_ID)] == [second.id, first.id]

    def test_history_limit(self, ledger):
        for amount in (1, 2, 3, 4):
            ledger.add_credits(STUDENT_ID, amount, TransactionType.PURCHASED)

        assert [t.amount for t in ledger.get_history(STUDENT_ID, limit=2)] == [4, 3]
        assert len(ledger.get_history(STUDENT_ID, limit=0)) == 4

    def test_history_response(self, ledger):
        ledger.add_credits(STUDENT_ID, 10, TransactionType.PURCHASED)
        ledger.add_credits(STUDENT_ID, 15, TransactionType.PURCHASED)

        response = ledger.get_history_response(STUDENT_ID, limit=1)

        assert response.total_count == 2
        assert response.current_balance == 25
        assert len(response.transactions) == 1

    def test_transactions_are_immutable(self, ledger):
        transaction = ledger.add_credits(STUDENT_ID, 10, TransactionType.PURCHASED)

        with pytest.raises(Exception):
            transaction.amount = 1_000


class TestSessionCompletion:
    """Tests for settling completed sessions."""

    def test_completion_pays_teacher_and_student(self, ledger, services):
        session = insert_session(services, credits_amount=20)

        payouts = ledger.process_session_completion(session.id)

        assert [p.amount for p in payouts] == [20, 4]
        assert all(p.type == TransactionType.EARNED for p in payouts)
        assert all(p.related_id == session.id for p in payouts)
        assert ledger.get_balance(TEACHER_ID) == 20
        assert ledger.get_balance(STUDENT_ID) == 4

        teacher = services.users.get_user(TEACHER_ID)
        student = services.users.get_user(STUDENT_ID)
        assert teacher.sessions_taught == 1
        assert teacher.skill_points == 20
        assert student.sessions_completed == 1
        assert student.skill_points == 4

    def test_completion_is_idempotent(self, ledger, services):
        """Test that a retried settlement does not pay twice."""
        session = insert_session(services, credits_amount=20)

        ledger.process_session_completion(session.id)
        second = ledger.process_session_completion(session.id)

        assert second == []
        assert ledger.get_balance(TEACHER_ID) == 20
        assert services.users.get_user(TEACHER_ID).sessions_taught == 1
        assert services.store.get_session(session.id)["settled_at"] is not None

    def test_small_sessions_still_earn_participation_credit(self, ledger, services):
        session = insert_session(services, credits_amount=3)

        ledger.process_session_completion(session.id)

        assert ledger.get_balance(STUDENT_ID) == 1

    def test_bonus_is_floored(self, ledger):
        assert ledger.participation_bonus(20) == 4
        assert ledger.participation_bonus(29) == 5

    def test_session_not_completed(self, ledger, services):
        session = insert_session(services, status=SessionStatus.IN_PROGRESS)

        with pytest.raises(SessionNotCompletedError):
            ledger.process_session_completion(session.id)

        assert ledger.get_history(TEACHER_ID) == []

    def test_session_not_found(self, ledger):
        with pytest.raises(SessionNotFoundError):
            ledger.process_session_completion("missing")


class TestPurchaseCredits:
    """Tests for buying credits through the payment gateway."""

    def test_purchase_success(self, ledger, services):
        transaction = ledger.purchase_credits(STUDENT_ID, 50, "pm_card_visa")

        assert transaction.type == TransactionType.PURCHASED
        assert transaction.related_id == "pm_card_visa"
        assert ledger.get_balance(STUDENT_ID) == 50
        assert services.payments.charges[0]["amount"] == 50

    def test_declined_payment(self, ledger):
        with pytest.raises(PaymentFailedError):
            ledger.purchase_credits(STUDENT_ID, 50, "fail")

        assert ledger.get_balance(STUDENT_ID) == 0

    def test_purchase_requires_positive_amount(self, ledger, services):
        with pytest.raises(InvalidAmountError):
            ledger.purchase_credits(STUDENT_ID, 0, "pm_card_visa")

        assert services.payments.charges == []


class TestAtomicity:
    """Tests for concurrent access and unit-of-work rollback."""

    def test_concurrent_deductions_never_overdraw(self, ledger):
        ledger.add_credits(STUDENT_ID, 50, TransactionType.PURCHASED)
        barrier = threading.Barrier(20)

        def deduct():
            barrier.wait()
            try:
                ledger.deduct_credits(STUDENT_ID, 10, TransactionType.SPENT)
                return True
            except InsufficientCreditsError:
                return False

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(lambda _: deduct(), range(20)))

        assert results.count(True) == 5
        assert ledger.get_balance(STUDENT_ID) == 0
        assert all(t.balance_after >= 0 for t in ledger.get_history(STUDENT_ID))

    def test_concurrent_credits_are_all_recorded(self, ledger, services):
        with ThreadPoolExecutor(max_workers=10) as pool:
            list(pool.map(lambda _: ledger.add_credits(STUDENT_ID, 3, TransactionType.EARNED), range(50)))

        assert ledger.get_balance(STUDENT_ID) == 150
        assert services.users.get_user(STUDENT_ID).balance == 150

    def test_failed_unit_of_work_rolls_back_ledger_writes(self, ledger, services):
        ledger.add_credits(STUDENT_ID, 100, TransactionType.PURCHASED)

        with pytest.raises(RuntimeError):
            with services.store.atomic():
                ledger.deduct_credits(STUDENT_ID, 40, TransactionType.SPENT)
                raise RuntimeError("boom")

        assert ledger.get_balance(STUDENT_ID) == 100
        assert services.users.get_user(STUDENT_ID).balance == 100
        assert len(ledger.get_history(STUDENT_ID)) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
