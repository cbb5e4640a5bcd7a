"""
Metering Service - free trial and paid per-minute timers for chat sessions.

Every operation runs in one database transaction. Chat session rows are
locked before wallet rows (SELECT ... FOR UPDATE), the same order the
background sweeps use, and the user's trial flag is flipped with a
compare-and-set so the trial is granted at most once.

Events are broadcast only after the transaction commits.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from psychic_metering.config import settings
from psychic_metering.db.models import Advisor, ChatSession, User, Wallet
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
    AdvisorType,
    BillingMode,
    ChatResponse,
    SessionStatus,
    SessionStatusResponse,
    SessionSummaryItem,
    SessionSummaryResponse,
    SessionUpdateEvent,
    TimerMetadata,
)
from psychic_metering.models.domain import AdvisorData, AvailabilityResult, SessionSnapshot
from psychic_metering.observability.logging import get_logger
from psychic_metering.observability.metrics import metrics
from psychic_metering.services.broadcaster import SessionBroadcaster
from psychic_metering.services.timer import (
    advance_checkpoint,
    elapsed_seconds,
    is_trial_active,
    minutes_to_charge,
    paid_remaining_seconds,
    settlement_charge,
    trial_remaining_seconds,
    trial_window_end,
)
from psychic_metering.services.wallet import WalletService

logger = get_logger(__name__)

PAYWALL_MESSAGE = "Purchase credits to continue chatting."


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_timer_metadata(
    response: ChatResponse, availability: AvailabilityResult, now: datetime
) -> ChatResponse:
    """
    Attach timer metadata to an outgoing chat response.

    Computed only from the availability result of the same request; no
    session state is read again.
    """
    snapshot = availability.session
    remaining_free = 0
    if availability.is_free and snapshot is not None:
        remaining_free = trial_remaining_seconds(snapshot.trial_ends_at, now)

    meta = TimerMetadata(
        is_free_period=availability.is_free,
        remaining_free_time=remaining_free,
        credits_deducted=availability.credits_charged,
    )
    return response.model_copy(update={"meta": meta})


def expire_trial(chat_session: ChatSession) -> None:
    """Mark a session's trial window as consumed and archive the session."""
    chat_session.remaining_trial_seconds = 0
    chat_session.trial_consumed = True
    chat_session.archived = True


async def mark_trial_used(session: AsyncSession, user_id: UUID, now: datetime) -> bool:
    """
    Set the user's one-time trial flag if it is not set yet.

    Compare-and-set: returns True only for the caller that flipped it.
    """
    result = await session.execute(
        update(User)
        .where(User.id == user_id, User.free_trial_used.is_(False))
        .values(free_trial_used=True, free_trial_used_at=now)
    )
    flipped = result.rowcount == 1
    if flipped:
        metrics.trials_expired_total.inc()
        logger.info("free_trial_used", user_id=str(user_id))
    return flipped


def close_paid_window(chat_session: ChatSession, wallet: Wallet | None, now: datetime) -> int:
    """
    Close a paid window, archive the session and settle the wallet.

    Every started minute is billed. Returns the credits charged.
    """
    charged = 0
    if wallet is not None and chat_session.paid_started_at is not None:
        seconds = elapsed_seconds(chat_session.paid_started_at, now)
        new_balance = settlement_charge(wallet.credits, chat_session.initial_credits or 0, seconds)
        if new_balance is not None:
            charged = wallet.credits - new_balance
            wallet.credits = new_balance

    chat_session.paid_mode = False
    chat_session.paid_started_at = None
    chat_session.archived = True
    return charged


def session_update_event(
    user_id: UUID, advisor_id: UUID, status: SessionStatusResponse
) -> SessionUpdateEvent:
    """Build the `sessionUpdate` event carrying a status snapshot."""
    return SessionUpdateEvent(
        user_id=user_id,
        advisor_id=advisor_id,
        is_free=status.is_free,
        remaining_free_time=status.remaining_free_time,
        paid_timer=status.paid_timer,
        credits=status.credits,
        status=status.status,
        show_feedback_modal=status.show_feedback_modal,
        free_session_used=status.free_session_used,
    )


class MeteringService:
    """
    Timer/metering engine.

    The availability gate decides, for one chat message, whether the free
    trial covers it, an open paid window covers it, or the wallet is charged
    for the whole minutes since the last charge.
    """

    def __init__(
        self,
        session: AsyncSession,
        broadcaster: SessionBroadcaster | None = None,
        trial_seconds: int | None = None,
    ) -> None:
        """Initialize metering service with database session."""
        self.session = session
        self.broadcaster = broadcaster
        self.wallets = WalletService(session)
        self.trial_seconds = trial_seconds or settings.free_trial_seconds

    # ------------------------------------------------------------------
    # Availability gate
    # ------------------------------------------------------------------

    async def check_availability(
        self, user_id: UUID, advisor_id: UUID, now: datetime | None = None
    ) -> AvailabilityResult:
        """
        Decide whether the user may send a chat message to the advisor now.

        Commits on success, rolls back on any error. Insufficient credits is
        an unavailable result, not an exception.

        Raises:
            UserNotFoundError: unknown user
            AdvisorNotFoundError: unknown advisor
        """
        now = now or _utc_now()
        user = await self._get_user(user_id)
        await self.get_advisor(advisor_id)

        try:
            result = await self._evaluate(user, advisor_id, now)
            await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        metrics.record_availability_check(result.available, result.mode.value)
        if result.credits_charged:
            metrics.record_credits_deducted("availability", result.credits_charged)
            await self._broadcast_credits(user_id, result.credits)

        logger.info(
            "availability_checked",
            user_id=str(user_id),
            advisor_id=str(advisor_id),
            available=result.available,
            mode=result.mode.value,
            credits=result.credits,
            credits_charged=result.credits_charged,
        )
        return result

    async def _evaluate(self, user: User, advisor_id: UUID, now: datetime) -> AvailabilityResult:
        free_trial_used = user.free_trial_used

        if not free_trial_used:
            chat_session = await self._get_or_create_trial_session(user.id, advisor_id, now)
            if is_trial_active(chat_session.trial_ends_at, now):
                chat_session.remaining_trial_seconds = trial_remaining_seconds(
                    chat_session.trial_ends_at, now
                )
                wallet = await self.wallets.get_wallet(user.id)
                return AvailabilityResult(
                    available=True,
                    mode=BillingMode.TRIAL,
                    user_id=user.id,
                    advisor_id=advisor_id,
                    credits=wallet.credits,
                    free_trial_used=False,
                    session=self._session_to_domain(chat_session),
                )

            expire_trial(chat_session)
            await mark_trial_used(self.session, user.id, now)
            free_trial_used = True

        # Session row before wallet row
        chat_session = await self._find_live_session(user.id, advisor_id)
        wallet = await self.wallets.lock_wallet(user.id)

        if wallet is None or wallet.credits <= 0:
            return self._denied(user.id, advisor_id, wallet, chat_session)

        if chat_session is None:
            chat_session = await self._create_paid_evaluation_session(user.id, advisor_id, now)

        if chat_session.paid_mode and chat_session.paid_started_at is not None:
            remaining = paid_remaining_seconds(
                chat_session.initial_credits or 0, chat_session.paid_started_at, now
            )
            if remaining <= 0:
                charged = close_paid_window(chat_session, wallet, now)
                return self._denied(user.id, advisor_id, wallet, chat_session, charged)

            return AvailabilityResult(
                available=True,
                mode=BillingMode.PAID,
                user_id=user.id,
                advisor_id=advisor_id,
                credits=wallet.credits,
                free_trial_used=free_trial_used,
                session=self._session_to_domain(chat_session),
                remaining_paid_seconds=remaining,
            )

        minutes = minutes_to_charge(chat_session.last_charged_at, now)
        charged = 0
        if minutes >= 1:
            if wallet.credits < minutes:
                return self._denied(user.id, advisor_id, wallet, chat_session)
            wallet.credits -= minutes
            chat_session.last_charged_at = advance_checkpoint(chat_session.last_charged_at, minutes)
            charged = minutes

        return AvailabilityResult(
            available=True,
            mode=BillingMode.PAID,
            user_id=user.id,
            advisor_id=advisor_id,
            credits=wallet.credits,
            free_trial_used=free_trial_used,
            session=self._session_to_domain(chat_session),
            credits_charged=charged,
        )

    def _denied(
        self,
        user_id: UUID,
        advisor_id: UUID,
        wallet: Wallet | None,
        chat_session: ChatSession | None,
        credits_charged: int = 0,
    ) -> AvailabilityResult:
        return AvailabilityResult(
            available=False,
            mode=BillingMode.NONE,
            user_id=user_id,
            advisor_id=advisor_id,
            credits=wallet.credits if wallet is not None else 0,
            free_trial_used=True,
            session=self._session_to_domain(chat_session) if chat_session is not None else None,
            credits_charged=credits_charged,
            message=PAYWALL_MESSAGE,
        )

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def get_session_status(
        self, user_id: UUID, advisor_id: UUID, now: datetime | None = None
    ) -> SessionStatusResponse:
        """Read-only timer state for the polling fallback."""
        now = now or _utc_now()
        user = await self._get_user(user_id)
        wallet = await self.wallets.get_wallet(user_id)
        chat_session = await self._find_live_session(user_id, advisor_id, lock=False)
        credits = wallet.credits

        if (
            chat_session is not None
            and not user.free_trial_used
            and not chat_session.trial_consumed
            and is_trial_active(chat_session.trial_ends_at, now)
        ):
            return SessionStatusResponse(
                available=True,
                is_free=True,
                remaining_free_time=trial_remaining_seconds(chat_session.trial_ends_at, now),
                credits=credits,
                status=SessionStatus.FREE,
                free_session_used=False,
            )

        if (
            chat_session is not None
            and chat_session.paid_mode
            and chat_session.paid_started_at is not None
        ):
            remaining = paid_remaining_seconds(
                chat_session.initial_credits or 0, chat_session.paid_started_at, now
            )
            if remaining > 0:
                return SessionStatusResponse(
                    available=True,
                    paid_timer=remaining,
                    credits=credits,
                    status=SessionStatus.PAID,
                    free_session_used=True,
                )
            return SessionStatusResponse(
                available=False,
                credits=credits,
                status=SessionStatus.INSUFFICIENT_CREDITS,
                free_session_used=True,
                show_feedback_modal=True,
            )

        if not user.free_trial_used and chat_session is None:
            window = await self._find_user_trial_window(user_id)
            remaining = self.trial_seconds
            if window is not None:
                remaining = trial_remaining_seconds(window[1], now)
            return SessionStatusResponse(
                available=True,
                remaining_free_time=remaining,
                credits=credits,
                status=SessionStatus.NEW,
                free_session_used=False,
            )

        if credits <= 0:
            return SessionStatusResponse(
                available=False,
                credits=credits,
                status=SessionStatus.INSUFFICIENT_CREDITS,
                free_session_used=True,
            )
        return SessionStatusResponse(
            available=True,
            credits=credits,
            status=SessionStatus.STOPPED,
            free_session_used=True,
        )

    async def start_free_session(
        self, user_id: UUID, advisor_id: UUID, now: datetime | None = None
    ) -> SessionStatusResponse:
        """
        Start (or resume) the user's one-time free trial window with an advisor.

        Raises:
            FreeTrialAlreadyUsedError: the user's trial was already used
        """
        now = now or _utc_now()
        user = await self._get_user(user_id)
        await self.get_advisor(advisor_id)
        if user.free_trial_used:
            raise FreeTrialAlreadyUsedError(user_id)

        try:
            chat_session = await self._get_or_create_trial_session(user_id, advisor_id, now)
            expired = not is_trial_active(chat_session.trial_ends_at, now)
            if expired:
                expire_trial(chat_session)
                await mark_trial_used(self.session, user_id, now)
            else:
                chat_session.remaining_trial_seconds = trial_remaining_seconds(
                    chat_session.trial_ends_at, now
                )
            await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if expired:
            raise FreeTrialAlreadyUsedError(user_id)

        wallet = await self.wallets.get_wallet(user_id)
        status = SessionStatusResponse(
            available=True,
            is_free=True,
            remaining_free_time=chat_session.remaining_trial_seconds,
            credits=wallet.credits,
            status=SessionStatus.FREE,
            free_session_used=False,
        )
        logger.info(
            "free_session_started",
            user_id=str(user_id),
            advisor_id=str(advisor_id),
            remaining_free_time=status.remaining_free_time,
        )
        await self._broadcast_session(user_id, advisor_id, status)
        return status

    async def start_paid_session(
        self, user_id: UUID, advisor_id: UUID, now: datetime | None = None
    ) -> SessionStatusResponse:
        """
        Open a paid window funded with the whole current wallet balance.

        Opening a window that is already open returns its current state.

        Raises:
            FreeTrialActiveError: the free trial is still running
            PaidSessionConflictError: a paid window is open with another advisor
            InsufficientCreditsError: no credits
        """
        now = now or _utc_now()
        user = await self._get_user(user_id)
        await self.get_advisor(advisor_id)

        try:
            chat_session = await self._find_live_session(user_id, advisor_id)

            if not user.free_trial_used:
                if chat_session is not None and not chat_session.trial_consumed:
                    trial_ends_at: datetime | None = chat_session.trial_ends_at
                else:
                    # The trial window may be running with another advisor
                    window = await self._find_user_trial_window(user_id)
                    trial_ends_at = window[1] if window is not None else None
                if trial_ends_at is not None and is_trial_active(trial_ends_at, now):
                    raise FreeTrialActiveError(
                        user_id, trial_remaining_seconds(trial_ends_at, now)
                    )
                # Paying forfeits a trial that is not running
                if chat_session is not None and not chat_session.trial_consumed:
                    expire_trial(chat_session)
                    chat_session = None
                await mark_trial_used(self.session, user_id, now)

            wallet = await self.wallets.lock_wallet(user_id)

            if (
                chat_session is not None
                and chat_session.paid_mode
                and chat_session.paid_started_at is not None
            ):
                remaining = paid_remaining_seconds(
                    chat_session.initial_credits or 0, chat_session.paid_started_at, now
                )
                if remaining > 0:
                    await self.session.commit()
                    return SessionStatusResponse(
                        available=True,
                        paid_timer=remaining,
                        credits=wallet.credits if wallet is not None else 0,
                        status=SessionStatus.PAID,
                        free_session_used=True,
                    )
                charged = close_paid_window(chat_session, wallet, now)
                metrics.record_credits_deducted("window_expired", charged)
                chat_session = None

            other = await self._find_open_paid_window(user_id, exclude_advisor_id=advisor_id)
            if other is not None:
                raise PaidSessionConflictError(other.advisor_id)

            credits = wallet.credits if wallet is not None else 0
            if wallet is None or credits <= 0:
                raise InsufficientCreditsError(credits, 1)

            if chat_session is None:
                chat_session = await self._create_paid_evaluation_session(user_id, advisor_id, now)

            chat_session.paid_mode = True
            chat_session.paid_started_at = now
            chat_session.initial_credits = wallet.credits
            chat_session.last_charged_at = now
            await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        status = SessionStatusResponse(
            available=True,
            paid_timer=paid_remaining_seconds(wallet.credits, now, now),
            credits=wallet.credits,
            status=SessionStatus.PAID,
            free_session_used=True,
        )
        logger.info(
            "paid_session_started",
            user_id=str(user_id),
            advisor_id=str(advisor_id),
            initial_credits=wallet.credits,
        )
        await self._broadcast_session(user_id, advisor_id, status)
        return status

    async def stop_session(
        self, user_id: UUID, advisor_id: UUID, now: datetime | None = None
    ) -> SessionStatusResponse:
        """
        Close the open paid window with an advisor and settle the wallet.

        The minute in progress is billed.

        Raises:
            SessionNotFoundError: no open paid window with this advisor
        """
        now = now or _utc_now()

        try:
            chat_session = await self._find_live_session(user_id, advisor_id)
            if (
                chat_session is None
                or not chat_session.paid_mode
                or chat_session.paid_started_at is None
            ):
                raise SessionNotFoundError(user_id, advisor_id)

            wallet = await self.wallets.lock_wallet(user_id)
            charged = close_paid_window(chat_session, wallet, now)
            await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        credits = wallet.credits if wallet is not None else 0
        metrics.record_credits_deducted("stop", charged)
        logger.info(
            "paid_session_stopped",
            user_id=str(user_id),
            advisor_id=str(advisor_id),
            credits_charged=charged,
            credits=credits,
        )

        status = SessionStatusResponse(
            available=credits > 0,
            credits=credits,
            status=SessionStatus.STOPPED,
            free_session_used=True,
            show_feedback_modal=True,
        )
        await self._broadcast_credits(user_id, credits)
        await self._broadcast_session(user_id, advisor_id, status)
        return status

    async def get_user_session_summary(self, user_id: UUID) -> SessionSummaryResponse:
        """Per-advisor totals of the user's live sessions."""
        stmt = (
            select(
                Advisor.id,
                Advisor.name,
                func.count(ChatSession.id),
                func.coalesce(func.sum(ChatSession.initial_credits), 0),
            )
            .join(Advisor, Advisor.id == ChatSession.advisor_id)
            .where(ChatSession.user_id == user_id, ChatSession.archived.is_(False))
            .group_by(Advisor.id, Advisor.name)
            .order_by(Advisor.name)
        )
        result = await self.session.execute(stmt)
        return SessionSummaryResponse(
            data=[
                SessionSummaryItem(
                    advisor_id=advisor_id,
                    advisor_name=name,
                    total_sessions=int(total_sessions),
                    total_credits_used=int(total_credits),
                )
                for advisor_id, name, total_sessions, total_credits in result.all()
            ]
        )

    async def get_advisor(self, advisor_id: UUID) -> AdvisorData:
        """
        Load an advisor persona.

        Raises:
            AdvisorNotFoundError: unknown advisor
        """
        result = await self.session.execute(select(Advisor).where(Advisor.id == advisor_id))
        advisor = result.scalar_one_or_none()
        if advisor is None:
            raise AdvisorNotFoundError(advisor_id)
        return AdvisorData(
            advisor_id=advisor.id,
            name=advisor.name,
            advisor_type=AdvisorType(advisor.advisor_type),
        )

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    async def _get_user(self, user_id: UUID) -> User:
        result = await self.session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _find_live_session(
        self, user_id: UUID, advisor_id: UUID, lock: bool = True
    ) -> ChatSession | None:
        """Find the non-archived session for a pair, row-locked unless `lock` is False."""
        stmt = select(ChatSession).where(
            ChatSession.user_id == user_id,
            ChatSession.advisor_id == advisor_id,
            ChatSession.archived.is_(False),
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_user_trial_window(self, user_id: UUID) -> tuple[datetime, datetime] | None:
        """Trial window already running for the user with any advisor."""
        stmt = (
            select(ChatSession.trial_started_at, ChatSession.trial_ends_at)
            .where(
                ChatSession.user_id == user_id,
                ChatSession.trial_consumed.is_(False),
                ChatSession.archived.is_(False),
            )
            .order_by(ChatSession.trial_started_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def _find_open_paid_window(
        self, user_id: UUID, exclude_advisor_id: UUID
    ) -> ChatSession | None:
        stmt = (
            select(ChatSession)
            .where(
                ChatSession.user_id == user_id,
                ChatSession.advisor_id != exclude_advisor_id,
                ChatSession.paid_mode.is_(True),
                ChatSession.paid_started_at.is_not(None),
                ChatSession.archived.is_(False),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_trial_session(
        self, user_id: UUID, advisor_id: UUID, now: datetime
    ) -> ChatSession:
        """
        Lock the live session for the pair, opening a trial window if there is none.

        A user has one trial window: a new session joins the window already
        running with another advisor.
        """
        chat_session = await self._find_live_session(user_id, advisor_id)
        if chat_session is not None:
            return chat_session

        window = await self._find_user_trial_window(user_id)
        if window is not None:
            trial_started_at, trial_ends_at = window
        else:
            trial_started_at = now
            trial_ends_at = trial_window_end(now, self.trial_seconds)

        return await self._create_session(
            ChatSession(
                user_id=user_id,
                advisor_id=advisor_id,
                trial_started_at=trial_started_at,
                trial_ends_at=trial_ends_at,
                remaining_trial_seconds=trial_remaining_seconds(trial_ends_at, now),
                trial_consumed=False,
                last_charged_at=now,
                paid_mode=False,
                archived=False,
            )
        )

    async def _create_paid_evaluation_session(
        self, user_id: UUID, advisor_id: UUID, now: datetime
    ) -> ChatSession:
        return await self._create_session(
            ChatSession(
                user_id=user_id,
                advisor_id=advisor_id,
                trial_started_at=now,
                trial_ends_at=now,
                remaining_trial_seconds=0,
                trial_consumed=True,
                last_charged_at=now,
                paid_mode=False,
                archived=False,
            )
        )

    async def _create_session(self, chat_session: ChatSession) -> ChatSession:
        """Insert a live session, or lock the one a concurrent request just created."""
        try:
            async with self.session.begin_nested():
                self.session.add(chat_session)
        except IntegrityError as e:
            # Race condition - live session created by another request
            logger.info(
                "chat_session_creation_race",
                user_id=str(chat_session.user_id),
                advisor_id=str(chat_session.advisor_id),
            )
            existing = await self._find_live_session(chat_session.user_id, chat_session.advisor_id)
            if existing is None:
                raise DataIntegrityError(
                    f"Chat session creation failed for user {chat_session.user_id}"
                ) from e
            return existing

        logger.info(
            "chat_session_created",
            user_id=str(chat_session.user_id),
            advisor_id=str(chat_session.advisor_id),
            trial_consumed=chat_session.trial_consumed,
        )
        return chat_session

    def _session_to_domain(self, chat_session: ChatSession) -> SessionSnapshot:
        """Convert ORM model to domain model."""
        return SessionSnapshot(
            session_id=chat_session.id,
            user_id=chat_session.user_id,
            advisor_id=chat_session.advisor_id,
            trial_started_at=chat_session.trial_started_at,
            trial_ends_at=chat_session.trial_ends_at,
            remaining_trial_seconds=chat_session.remaining_trial_seconds,
            trial_consumed=chat_session.trial_consumed,
            last_charged_at=chat_session.last_charged_at,
            paid_mode=chat_session.paid_mode,
            paid_started_at=chat_session.paid_started_at,
            initial_credits=chat_session.initial_credits,
            archived=chat_session.archived,
        )

    # ------------------------------------------------------------------
    # Broadcasting
    # ------------------------------------------------------------------

    async def _broadcast_session(
        self, user_id: UUID, advisor_id: UUID, status: SessionStatusResponse
    ) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.session_update(session_update_event(user_id, advisor_id, status))

    async def _broadcast_credits(self, user_id: UUID, credits: int) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.credits_update(user_id, credits)
