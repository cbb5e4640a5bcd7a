"""
API Routes - FastAPI endpoints for chat sessions, chat, feedback and wallets.

All user endpoints act on the caller identified by the bearer token.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from psychic_metering.api.dependencies import (
    get_current_user_id,
    get_reply_generator,
    require_payment_service,
)
from psychic_metering.db.session import get_db
from psychic_metering.exceptions import (
    AdvisorNotFoundError,
    DataIntegrityError,
    FreeTrialActiveError,
    FreeTrialAlreadyUsedError,
    InsufficientCreditsError,
    PaidSessionConflictError,
    SessionNotFoundError,
    UserNotFoundError,
)
from psychic_metering.models.api import (
    AdvisorFeedbackResponse,
    AvailabilityResponse,
    ChatHistoryResponse,
    ChatRequest,
    ChatResponse,
    FeedbackItem,
    FeedbackRequest,
    HealthResponse,
    SessionStatusResponse,
    SessionSummaryResponse,
    TopUpRequest,
    WalletResponse,
)
from psychic_metering.services.broadcaster import SessionBroadcaster, get_broadcaster
from psychic_metering.services.chat import ChatService
from psychic_metering.services.feedback import FeedbackService
from psychic_metering.services.metering import MeteringService
from psychic_metering.services.reply_generator import ReplyGenerator
from psychic_metering.services.wallet import WalletService

router = APIRouter()


def _not_found(exc: Exception) -> HTTPException:
    if isinstance(exc, UserNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Advisor not found")


# ============================================================================
# Sessions
# ============================================================================


@router.get("/v1/sessions/summary", response_model=SessionSummaryResponse)
async def get_session_summary(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> SessionSummaryResponse:
    """Per-advisor totals of the caller's live chat sessions."""
    service = MeteringService(db)
    return await service.get_user_session_summary(user_id)


@router.get("/v1/sessions/{advisor_id}/status", response_model=SessionStatusResponse)
async def get_session_status(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> SessionStatusResponse:
    """
    Current timer state with an advisor.

    Polling fallback for clients that missed real-time events.
    """
    service = MeteringService(db)
    try:
        return await service.get_session_status(user_id, advisor_id)
    except UserNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/v1/sessions/{advisor_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
) -> AvailabilityResponse:
    """
    Run the availability gate without sending a message.

    A paid caller may be charged for the whole minutes since the last charge.
    """
    service = MeteringService(db, broadcaster)
    try:
        result = await service.check_availability(user_id, advisor_id)
    except (UserNotFoundError, AdvisorNotFoundError) as exc:
        raise _not_found(exc) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    remaining_time = result.remaining_paid_seconds
    if result.is_free and result.session is not None:
        remaining_time = result.session.remaining_trial_seconds

    return AvailabilityResponse(
        available=result.available,
        is_free=result.is_free,
        mode=result.mode,
        message=result.message,
        remaining_time=remaining_time,
        credits=result.credits,
        credits_charged=result.credits_charged,
    )


@router.post("/v1/sessions/{advisor_id}/free", response_model=SessionStatusResponse)
async def start_free_session(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
) -> SessionStatusResponse:
    """Start the caller's one-time free minute with an advisor."""
    service = MeteringService(db, broadcaster)
    try:
        return await service.start_free_session(user_id, advisor_id)
    except (UserNotFoundError, AdvisorNotFoundError) as exc:
        raise _not_found(exc) from exc
    except FreeTrialAlreadyUsedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc


@router.post("/v1/sessions/{advisor_id}/paid", response_model=SessionStatusResponse)
async def start_paid_session(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
) -> SessionStatusResponse:
    """Open a paid window with an advisor, funded by the whole wallet balance."""
    service = MeteringService(db, broadcaster)
    try:
        return await service.start_paid_session(user_id, advisor_id)
    except (UserNotFoundError, AdvisorNotFoundError) as exc:
        raise _not_found(exc) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Purchase credits to start a paid session",
        ) from exc
    except (FreeTrialActiveError, PaidSessionConflictError) as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc


@router.post("/v1/sessions/{advisor_id}/stop", response_model=SessionStatusResponse)
async def stop_session(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
) -> SessionStatusResponse:
    """Stop the open paid window with an advisor. The minute in progress is billed."""
    service = MeteringService(db, broadcaster)
    try:
        return await service.stop_session(user_id, advisor_id)
    except SessionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active paid session",
        ) from exc


# ============================================================================
# Chat
# ============================================================================


@router.post(
    "/v1/chat/{advisor_id}",
    response_model=ChatResponse,
    responses={402: {"model": ChatResponse}, 502: {"model": ChatResponse}},
)
async def send_chat_message(
    advisor_id: UUID,
    request: ChatRequest,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
    reply_generator: ReplyGenerator = Depends(get_reply_generator),
) -> ChatResponse | JSONResponse:
    """
    Send a message to an advisor.

    402 with the paywall reply when the caller can't chat; 502 with a
    fallback reply when the advisor reply could not be generated. Both still
    carry the stored conversation.
    """
    service = ChatService(db, reply_generator, broadcaster)
    try:
        response = await service.send_message(user_id, advisor_id, request.message)
    except (UserNotFoundError, AdvisorNotFoundError) as exc:
        raise _not_found(exc) from exc

    if response.success:
        return response

    status_code = status.HTTP_502_BAD_GATEWAY
    if response.credit_required:
        status_code = status.HTTP_402_PAYMENT_REQUIRED
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(mode="json", by_alias=True),
    )


@router.get("/v1/chat/{advisor_id}/history", response_model=ChatHistoryResponse)
async def get_chat_history(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    reply_generator: ReplyGenerator = Depends(get_reply_generator),
) -> ChatHistoryResponse:
    """Conversation between the caller and an advisor, oldest first."""
    service = ChatService(db, reply_generator)
    return ChatHistoryResponse(messages=await service.get_history(user_id, advisor_id))


# ============================================================================
# Feedback
# ============================================================================


@router.post(
    "/v1/feedback/{advisor_id}",
    response_model=FeedbackItem,
    status_code=status.HTTP_201_CREATED,
)
async def submit_feedback(
    advisor_id: UUID,
    request: FeedbackRequest,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
) -> FeedbackItem:
    """Rate an advisor from 1 to 5 stars after a session."""
    service = FeedbackService(db, broadcaster)
    try:
        return await service.submit_feedback(user_id, advisor_id, request.rating)
    except AdvisorNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/v1/feedback/advisors/{advisor_id}", response_model=AdvisorFeedbackResponse)
async def get_advisor_feedback(
    advisor_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> AdvisorFeedbackResponse:
    """All ratings for an advisor with their average, and the caller's own."""
    service = FeedbackService(db)
    try:
        return await service.get_advisor_feedback(advisor_id, user_id)
    except AdvisorNotFoundError as exc:
        raise _not_found(exc) from exc


# ============================================================================
# Wallet
# ============================================================================


@router.get("/v1/wallet", response_model=WalletResponse)
async def get_wallet(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> WalletResponse:
    """Caller's credit balance."""
    wallet = await WalletService(db).get_wallet(user_id)
    return WalletResponse(user_id=wallet.user_id, credits=wallet.credits)


@router.post(
    "/v1/wallet/topups",
    response_model=WalletResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_payment_service)],
)
async def top_up_wallet(
    request: TopUpRequest,
    db: AsyncSession = Depends(get_db),
    broadcaster: SessionBroadcaster = Depends(get_broadcaster),
) -> WalletResponse:
    """
    Credit a wallet after a confirmed payment.

    Requires: X-API-Key of the payment service.
    """
    try:
        wallet = await WalletService(db).credit_wallet(
            request.user_id, request.credits, request.payment_id
        )
    except UserNotFoundError as exc:
        raise _not_found(exc) from exc

    await broadcaster.credits_update(wallet.user_id, wallet.credits)
    return WalletResponse(user_id=wallet.user_id, credits=wallet.credits)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
