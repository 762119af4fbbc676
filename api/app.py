from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from common.errors import (
    EscrowServiceError,
    InsufficientCreditsError,
    MatchNotFoundError,
    PaymentFailedError,
    SchedulingConflictError,
    SessionNotFoundError,
    UserNotFoundError,
    VideoRoomError,
)
from common.logger import configure_logging
from ledger.models import AccountSummary, PurchaseCreditsRequest, PurchaseResponse, TransactionHistoryResponse
from sessions.models import (
    BookSessionRequest,
    BookingResponse,
    CancellationResponse,
    CancelSessionRequest,
    EndSessionRequest,
    Session,
    StartSessionResponse,
)

from .container import Services, build_services


def _http_error(exc: EscrowServiceError) -> HTTPException:
    if isinstance(exc, (SessionNotFoundError, MatchNotFoundError, UserNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, SchedulingConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (InsufficientCreditsError, PaymentFailedError)):
        return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
    if isinstance(exc, VideoRoomError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    configure_logging(services.settings.log_level)
    scheduler = services.scheduler
    ledger = services.ledger

    app = FastAPI(
        title="Session Escrow API",
        description="Session scheduling with credit escrow, settlement and tiered refunds",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "session-escrow"}

    @app.post("/sessions", response_model=BookingResponse, status_code=status.HTTP_201_CREATED, tags=["Sessions"])
    def schedule_session(request: BookSessionRequest) -> BookingResponse:
        try:
            return scheduler.schedule_session(request.match_id, request)
        except EscrowServiceError as e:
            raise _http_error(e)

    @app.get("/sessions/{session_id}", response_model=Session, tags=["Sessions"])
    def get_session(session_id: str) -> Session:
        try:
            return scheduler.get_session(session_id)
        except SessionNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} not found")

    @app.post("/sessions/{session_id}/start", response_model=StartSessionResponse, tags=["Sessions"])
    def start_session(session_id: str) -> StartSessionResponse:
        try:
            return scheduler.start_session(session_id)
        except EscrowServiceError as e:
            raise _http_error(e)

    @app.put("/sessions/{session_id}/complete", response_model=Session, tags=["Sessions"])
    def complete_session(session_id: str, request: EndSessionRequest) -> Session:
        try:
            return scheduler.end_session(session_id, request.notes)
        except EscrowServiceError as e:
            raise _http_error(e)

    @app.put("/sessions/{session_id}/cancel", response_model=CancellationResponse, tags=["Sessions"])
    def cancel_session(session_id: str, request: CancelSessionRequest) -> CancellationResponse:
        try:
            return scheduler.cancel_session(session_id, request.reason)
        except EscrowServiceError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/sessions/upcoming", response_model=list[Session], tags=["Users"])
    def get_upcoming_sessions(user_id: str) -> list[Session]:
        return scheduler.get_upcoming_sessions(user_id)

    @app.get("/users/{user_id}/sessions/history", response_model=list[Session], tags=["Users"])
    def get_session_history(
        user_id: str,
        limit: Optional[int] = Query(default=None, ge=1, le=services.settings.max_history_limit),
    ) -> list[Session]:
        return scheduler.get_session_history(user_id, limit)

    @app.get("/users/{user_id}/conflicts", tags=["Users"])
    def check_conflicts(
        user_id: str, start: datetime, end: datetime, exclude_session_id: Optional[str] = None,
    ) -> dict:
        return {"has_conflict": scheduler.check_conflicts(user_id, start, end, exclude_session_id)}

    @app.get("/users/{user_id}/balance", response_model=AccountSummary, tags=["Credits"])
    def get_user_balance(user_id: str) -> AccountSummary:
        try:
            return ledger.get_account_summary(user_id)
        except UserNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")

    @app.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse, tags=["Credits"])
    def get_user_transactions(
        user_id: str,
        limit: Optional[int] = Query(default=None, ge=1, le=services.settings.max_history_limit),
    ) -> TransactionHistoryResponse:
        try:
            return ledger.get_history_response(user_id, limit)
        except UserNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")

    @app.post(
        "/users/{user_id}/credits/purchase",
        response_model=PurchaseResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Credits"],
    )
    def purchase_credits(user_id: str, request: PurchaseCreditsRequest) -> PurchaseResponse:
        try:
            transaction = ledger.purchase_credits(user_id, request.amount, request.payment_method_id)
        except EscrowServiceError as e:
            raise _http_error(e)
        return PurchaseResponse(
            transaction=transaction,
            current_balance=transaction.balance_after,
            message=f"Purchased {request.amount} credits",
        )

    return app
