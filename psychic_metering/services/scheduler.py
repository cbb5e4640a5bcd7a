"""
Session Scheduler - background sweeps over live chat sessions.

Two independent asyncio tasks tick about once per second:

- paid deduction: charges the wallet on the first second of every paid
  minute and closes windows whose funded time has run out
- free trial expiry: counts trial windows down and burns the user's trial
  flag when a window ends

Each chat session is processed in its own short transaction with
SELECT ... FOR UPDATE SKIP LOCKED (session row, then wallet row). A row held
by a request is skipped until the next tick. A failure on one session is
logged and counted, and the sweep moves on.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from psychic_metering.config import settings
from psychic_metering.db.models import ChatSession, User
from psychic_metering.db.session import get_session
from psychic_metering.models.api import CreditsUpdateEvent, SessionStatus, SessionUpdateEvent
from psychic_metering.observability.logging import get_logger, log_context
from psychic_metering.observability.metrics import metrics
from psychic_metering.observability.tracing import add_span_attributes, trace_operation
from psychic_metering.services.broadcaster import SessionBroadcaster
from psychic_metering.services.metering import close_paid_window, expire_trial, mark_trial_used
from psychic_metering.services.timer import (
    boundary_charge,
    elapsed_seconds,
    paid_remaining_seconds,
    trial_remaining_seconds,
)
from psychic_metering.services.wallet import WalletService

logger = get_logger(__name__)

PAID_SWEEP = "paid_deduction"
TRIAL_SWEEP = "free_trial_expiry"

PROCESSED = "processed"
SKIPPED = "skipped"
FAILED = "failed"

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _paid_criteria() -> tuple:
    return (
        ChatSession.paid_mode.is_(True),
        ChatSession.paid_started_at.is_not(None),
        ChatSession.archived.is_(False),
    )


def _trial_criteria() -> tuple:
    return (
        ChatSession.trial_consumed.is_(False),
        ChatSession.archived.is_(False),
    )


class SessionScheduler:
    """Runs the paid deduction and free trial expiry sweeps."""

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        broadcaster: SessionBroadcaster | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.interval_seconds = interval_seconds or settings.sweep_interval_seconds
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start both sweeps as background tasks."""
        if self._tasks:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(
                self._run_loop(PAID_SWEEP, self.paid_deduction_tick), name=PAID_SWEEP
            ),
            asyncio.create_task(
                self._run_loop(TRIAL_SWEEP, self.free_trial_tick), name=TRIAL_SWEEP
            ),
        ]
        logger.info("scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop both sweeps and wait for them to exit."""
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("scheduler_stopped")

    async def _run_loop(self, name: str, tick: Callable[[], Awaitable[int]]) -> None:
        # A tick finishes before the next wait, so a sweep never overlaps itself
        while not self._stop.is_set():
            try:
                await tick()
            except Exception as exc:
                metrics.record_error(type(exc).__name__, name)
                logger.exception("sweep_tick_failed", sweep=name)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def paid_deduction_tick(self, now: datetime | None = None) -> int:
        """Run one paid deduction pass. Returns the number of sessions processed."""
        return await self._tick(PAID_SWEEP, _paid_criteria(), self._process_paid_session, now)

    async def free_trial_tick(self, now: datetime | None = None) -> int:
        """Run one free trial expiry pass. Returns the number of sessions processed."""
        return await self._tick(TRIAL_SWEEP, _trial_criteria(), self._process_trial_session, now)

    async def _tick(
        self,
        sweep: str,
        criteria: tuple,
        process: Callable[[UUID, datetime], Awaitable[str]],
        now: datetime | None,
    ) -> int:
        started = time.perf_counter()
        processed = 0

        with trace_operation(f"sweep.{sweep}") as span:
            candidate_ids = await self._find_candidates(sweep, criteria)
            for session_id in candidate_ids:
                outcome = await self._process_isolated(
                    sweep, session_id, process, now or _utc_now()
                )
                if outcome == PROCESSED:
                    processed += 1
            add_span_attributes(span, candidates=len(candidate_ids), processed=processed)

        metrics.record_sweep_tick(sweep, time.perf_counter() - started)
        return processed

    async def _find_candidates(self, sweep: str, criteria: tuple) -> list[UUID]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(ChatSession.id).where(*criteria))
                return list(result.scalars().all())
        except Exception as exc:
            metrics.record_error(type(exc).__name__, sweep)
            logger.exception("sweep_candidate_query_failed", sweep=sweep)
            return []

    async def _process_isolated(
        self,
        sweep: str,
        session_id: UUID,
        process: Callable[[UUID, datetime], Awaitable[str]],
        now: datetime,
    ) -> str:
        with log_context(sweep=sweep, session_id=str(session_id)):
            try:
                outcome = await process(session_id, now)
            except Exception as exc:
                outcome = FAILED
                metrics.record_error(type(exc).__name__, sweep)
                logger.exception("sweep_session_failed")
        metrics.record_sweep_session(sweep, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Per-session work
    # ------------------------------------------------------------------

    async def _process_paid_session(self, session_id: UUID, now: datetime) -> str:
        """
        Charge the minute boundary and close an exhausted paid window.

        The wallet is corrected down to the credits expected after the whole
        minutes elapsed, so a repeated pass within one second charges once.
        """
        events: list[BaseModel] = []

        async with self.session_factory() as db:
            try:
                chat_session = await self._lock_session(db, session_id, _paid_criteria())
                if chat_session is None or chat_session.paid_started_at is None:
                    await db.rollback()
                    return SKIPPED

                wallet = await WalletService(db).lock_wallet(chat_session.user_id, skip_locked=True)
                if wallet is None:
                    await db.rollback()
                    return SKIPPED

                user_id = chat_session.user_id
                advisor_id = chat_session.advisor_id
                initial_credits = chat_session.initial_credits or 0
                seconds = elapsed_seconds(chat_session.paid_started_at, now)

                credits_before = wallet.credits
                new_balance = boundary_charge(wallet.credits, initial_credits, seconds)
                if new_balance is not None:
                    metrics.record_credits_deducted(PAID_SWEEP, wallet.credits - new_balance)
                    wallet.credits = new_balance
                    chat_session.last_charged_at = now

                remaining = paid_remaining_seconds(
                    initial_credits, chat_session.paid_started_at, now
                )
                if remaining <= 0:
                    charged = close_paid_window(chat_session, wallet, now)
                    metrics.record_credits_deducted(PAID_SWEEP, charged)
                    logger.info(
                        "paid_window_exhausted",
                        user_id=str(user_id),
                        advisor_id=str(advisor_id),
                        initial_credits=initial_credits,
                    )

                if wallet.credits != credits_before:
                    events.append(CreditsUpdateEvent(user_id=user_id, credits=wallet.credits))
                events.append(
                    SessionUpdateEvent(
                        user_id=user_id,
                        advisor_id=advisor_id,
                        is_free=False,
                        remaining_free_time=0,
                        paid_timer=remaining,
                        credits=wallet.credits,
                        status=(
                            SessionStatus.PAID
                            if remaining > 0
                            else SessionStatus.INSUFFICIENT_CREDITS
                        ),
                        show_feedback_modal=remaining <= 0,
                        free_session_used=True,
                    )
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        await self._publish(events)
        return PROCESSED

    async def _process_trial_session(self, session_id: UUID, now: datetime) -> str:
        """Count a trial window down, and end it when time is up."""
        async with self.session_factory() as db:
            try:
                chat_session = await self._lock_session(db, session_id, _trial_criteria())
                if chat_session is None:
                    await db.rollback()
                    return SKIPPED

                user_id = chat_session.user_id
                advisor_id = chat_session.advisor_id
                result = await db.execute(select(User.free_trial_used).where(User.id == user_id))
                if result.scalar_one():
                    # Trial burnt elsewhere (another advisor or the request path)
                    expire_trial(chat_session)
                    await db.commit()
                    return PROCESSED

                remaining = trial_remaining_seconds(chat_session.trial_ends_at, now)
                chat_session.remaining_trial_seconds = remaining
                if remaining <= 0:
                    expire_trial(chat_session)
                    await mark_trial_used(db, user_id, now)
                    logger.info(
                        "free_trial_expired", user_id=str(user_id), advisor_id=str(advisor_id)
                    )

                wallet = await WalletService(db).get_wallet(user_id)
                event = SessionUpdateEvent(
                    user_id=user_id,
                    advisor_id=advisor_id,
                    is_free=remaining > 0,
                    remaining_free_time=remaining,
                    paid_timer=0,
                    credits=wallet.credits,
                    status=SessionStatus.FREE if remaining > 0 else SessionStatus.STOPPED,
                    show_feedback_modal=remaining <= 0,
                    free_session_used=remaining <= 0,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        await self._publish([event])
        return PROCESSED

    async def _lock_session(
        self, db: AsyncSession, session_id: UUID, criteria: tuple
    ) -> ChatSession | None:
        """Lock a session that still matches the sweep criteria, or None if it is busy."""
        stmt: Select = (
            select(ChatSession)
            .where(ChatSession.id == session_id, *criteria)
            .with_for_update(skip_locked=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _publish(self, events: list[BaseModel]) -> None:
        if self.broadcaster is None:
            return
        for event in events:
            if isinstance(event, CreditsUpdateEvent):
                await self.broadcaster.credits_update(event.user_id, event.credits)
            elif isinstance(event, SessionUpdateEvent):
                await self.broadcaster.session_update(event)
