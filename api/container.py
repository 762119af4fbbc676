"""
Service wiring.

Builds the store, the collaborators, the ledger and the scheduler once and
hands them out by reference. Swap any collaborator by passing it in.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from common.clock import Clock, utc_now
from common.collaborators import (
    InMemoryMatchRegistry,
    InMemoryReminderDispatcher,
    InMemoryUserDirectory,
    Match,
    MatchStatus,
    MockVideoRoomProvider,
    SimulatedPaymentGateway,
)
from common.config import EscrowSettings, get_settings
from common.models import TransactionType
from common.storage import EscrowStore, InMemoryStore
from ledger.service import CreditLedger
from sessions.service import SessionScheduler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: EscrowSettings
    store: EscrowStore
    matches: InMemoryMatchRegistry
    users: InMemoryUserDirectory
    video_rooms: MockVideoRoomProvider
    reminders: InMemoryReminderDispatcher
    payments: SimulatedPaymentGateway
    ledger: CreditLedger
    scheduler: SessionScheduler


def build_services(
    settings: Optional[EscrowSettings] = None,
    store: Optional[EscrowStore] = None,
    clock: Clock = utc_now,
) -> Services:
    settings = settings or get_settings()
    store = store or InMemoryStore()
    matches = InMemoryMatchRegistry()
    users = InMemoryUserDirectory()
    video_rooms = MockVideoRoomProvider()
    reminders = InMemoryReminderDispatcher()
    payments = SimulatedPaymentGateway()

    ledger = CreditLedger(store, users, payments=payments, settings=settings, clock=clock)
    scheduler = SessionScheduler(
        store, ledger, matches, users, video_rooms, reminders, settings=settings, clock=clock,
    )
    services = Services(
        settings=settings,
        store=store,
        matches=matches,
        users=users,
        video_rooms=video_rooms,
        reminders=reminders,
        payments=payments,
        ledger=ledger,
        scheduler=scheduler,
    )
    if settings.seed_demo_data:
        seed_demo_data(services)
    return services


def seed_demo_data(services: Services) -> None:
    for user_id in ("teacher-demo", "student-demo"):
        services.users.add_user(user_id)
    services.ledger.add_credits("student-demo", 100, TransactionType.PURCHASED, "Welcome credits")
    services.matches.add_match(Match(
        id="match-demo", status=MatchStatus.ACCEPTED, user1_id="teacher-demo", user2_id="student-demo",
    ))
    logger.info("Seeded demo users and match")
