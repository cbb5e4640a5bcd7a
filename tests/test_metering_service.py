"""
Tests for MeteringService.

Unit tests for the availability gate and the session operations. Row access
helpers are patched; the decisions and wallet/session mutations are real.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from psychic_metering.exceptions import (
    DataIntegrityError,
    FreeTrialActiveError,
    FreeTrialAlreadyUsedError,
    InsufficientCreditsError,
    PaidSessionConflictError,
    SessionNotFoundError,
    UserNotFoundError,
)
from psychic_metering.models.api import BillingMode, ChatResponse, SessionStatus
from psychic_metering.models.domain import AdvisorData, AvailabilityResult, WalletData
from psychic_metering.services.metering import (
    PAYWALL_MESSAGE,
    MeteringService,
    add_timer_metadata,
    close_paid_window,
    mark_trial_used,
)
from tests.conftest import (
    NOW,
    create_mock_chat_session,
    create_mock_user,
    create_mock_wallet,
    make_result,
)


def patch_rows(
    service: MeteringService,
    advisor: AdvisorData,
    user: MagicMock,
    live_session: MagicMock | None = None,
    wallet: MagicMock | None = None,
):
    """Patch user, advisor, live session and wallet lookups on a service."""
    patches = [
        patch.object(service, "_get_user", new_callable=AsyncMock, return_value=user),
        patch.object(service, "get_advisor", new_callable=AsyncMock, return_value=advisor),
        patch.object(
            service, "_find_live_session", new_callable=AsyncMock, return_value=live_session
        ),
        patch.object(service.wallets, "lock_wallet", new_callable=AsyncMock, return_value=wallet),
    ]
    return patches


class _Patched:
    """Enter a list of patchers as one context manager."""

    def __init__(self, patchers: list) -> None:
        self.patchers = patchers
        self.mocks: list = []

    def __enter__(self) -> list:
        self.mocks = [p.__enter__() for p in self.patchers]
        return self.mocks

    def __exit__(self, *exc_info) -> None:
        for p in reversed(self.patchers):
            p.__exit__(*exc_info)


# ============================================================================
# Availability Gate
# ============================================================================


class TestCheckAvailabilityTrial:
    """Tests for the free trial branch of the availability gate."""

    async def test_new_user_gets_trial(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """First message opens the trial window; the wallet is not locked."""
        user = create_mock_user(user_id)
        chat_session = create_mock_chat_session(user_id, advisor_id, trial_started_at=NOW)

        with _Patched(patch_rows(metering_service, advisor, user)) as mocks:
            lock_wallet = mocks[3]
            with patch.object(
                metering_service,
                "_get_or_create_trial_session",
                new_callable=AsyncMock,
                return_value=chat_session,
            ), patch.object(
                metering_service.wallets,
                "get_wallet",
                new_callable=AsyncMock,
                return_value=WalletData(user_id=user_id, credits=0),
            ):
                result = await metering_service.check_availability(
                    user_id, advisor_id, NOW + timedelta(seconds=10)
                )

        assert result.available is True
        assert result.mode == BillingMode.TRIAL
        assert result.is_free is True
        assert result.credits_charged == 0
        assert chat_session.remaining_trial_seconds == 50
        lock_wallet.assert_not_awaited()
        db_session.commit.assert_awaited_once()

    async def test_expired_trial_burns_flag_and_falls_through_to_paywall(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """Trial over with an empty wallet: session archived, flag set, paywall."""
        user = create_mock_user(user_id)
        chat_session = create_mock_chat_session(user_id, advisor_id, trial_started_at=NOW)
        wallet = create_mock_wallet(user_id, credits=0)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_get_or_create_trial_session",
                new_callable=AsyncMock,
                return_value=chat_session,
            ), patch(
                "psychic_metering.services.metering.mark_trial_used", new_callable=AsyncMock
            ) as mock_mark:
                result = await metering_service.check_availability(
                    user_id, advisor_id, NOW + timedelta(seconds=60)
                )

        assert result.available is False
        assert result.mode == BillingMode.NONE
        assert result.message == PAYWALL_MESSAGE
        assert chat_session.trial_consumed is True
        assert chat_session.archived is True
        assert chat_session.remaining_trial_seconds == 0
        mock_mark.assert_awaited_once_with(db_session, user_id, NOW + timedelta(seconds=60))


class TestCheckAvailabilityPaid:
    """Tests for the paid branches of the availability gate."""

    async def test_no_wallet_is_paywall(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=None)):
            result = await metering_service.check_availability(user_id, advisor_id, NOW)

        assert result.available is False
        assert result.credits == 0
        assert result.message == PAYWALL_MESSAGE

    async def test_first_paid_message_opens_checkpoint_without_charge(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """No live session: one is created with the charge checkpoint at now."""
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=5)
        created = create_mock_chat_session(
            user_id, advisor_id, trial_consumed=True, last_charged_at=NOW
        )

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_create_paid_evaluation_session",
                new_callable=AsyncMock,
                return_value=created,
            ) as mock_create:
                result = await metering_service.check_availability(user_id, advisor_id, NOW)

        mock_create.assert_awaited_once_with(user_id, advisor_id, NOW)
        assert result.available is True
        assert result.mode == BillingMode.PAID
        assert result.credits == 5
        assert result.credits_charged == 0

    async def test_charges_whole_minutes_since_checkpoint(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """150 seconds since the last charge: two credits, checkpoint moves two minutes."""
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=5)
        chat_session = create_mock_chat_session(
            user_id,
            advisor_id,
            trial_consumed=True,
            last_charged_at=NOW - timedelta(seconds=150),
        )

        with _Patched(patch_rows(metering_service, advisor, user, chat_session, wallet)):
            result = await metering_service.check_availability(user_id, advisor_id, NOW)

        assert result.available is True
        assert result.credits_charged == 2
        assert wallet.credits == 3
        assert chat_session.last_charged_at == NOW - timedelta(seconds=30)
        mock_broadcaster.credits_update.assert_awaited_once_with(user_id, 3)

    async def test_insufficient_credits_for_elapsed_minutes(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=1)
        chat_session = create_mock_chat_session(
            user_id,
            advisor_id,
            trial_consumed=True,
            last_charged_at=NOW - timedelta(minutes=3),
        )

        with _Patched(patch_rows(metering_service, advisor, user, chat_session, wallet)):
            result = await metering_service.check_availability(user_id, advisor_id, NOW)

        assert result.available is False
        assert result.message == PAYWALL_MESSAGE
        assert wallet.credits == 1
        mock_broadcaster.credits_update.assert_not_awaited()

    async def test_open_paid_window_covers_message(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """Inside a paid window the sweep charges; the gate leaves the wallet alone."""
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=5)
        chat_session = create_mock_chat_session(
            user_id,
            advisor_id,
            trial_consumed=True,
            last_charged_at=NOW - timedelta(minutes=10),
            paid_mode=True,
            paid_started_at=NOW - timedelta(seconds=30),
            initial_credits=5,
        )

        with _Patched(patch_rows(metering_service, advisor, user, chat_session, wallet)):
            result = await metering_service.check_availability(user_id, advisor_id, NOW)

        assert result.available is True
        assert result.mode == BillingMode.PAID
        assert result.remaining_paid_seconds == 270
        assert result.credits_charged == 0
        assert wallet.credits == 5

    async def test_exhausted_paid_window_is_closed(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=1)
        chat_session = create_mock_chat_session(
            user_id,
            advisor_id,
            trial_consumed=True,
            paid_mode=True,
            paid_started_at=NOW - timedelta(seconds=301),
            initial_credits=5,
        )

        with _Patched(patch_rows(metering_service, advisor, user, chat_session, wallet)):
            result = await metering_service.check_availability(user_id, advisor_id, NOW)

        assert result.available is False
        assert wallet.credits == 0
        assert chat_session.paid_mode is False
        assert chat_session.paid_started_at is None
        assert chat_session.archived is True
        assert result.credits_charged == 1
        mock_broadcaster.credits_update.assert_awaited_once_with(user_id, 0)

    async def test_storage_error_rolls_back(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)

        with _Patched(patch_rows(metering_service, advisor, user)) as mocks:
            mocks[2].side_effect = SQLAlchemyError("connection lost")
            with pytest.raises(SQLAlchemyError):
                await metering_service.check_availability(user_id, advisor_id, NOW)

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_unknown_user(
        self, metering_service: MeteringService, user_id: UUID, advisor_id: UUID
    ) -> None:
        """Default db mock finds nothing."""
        with pytest.raises(UserNotFoundError):
            await metering_service.check_availability(user_id, advisor_id, NOW)

    async def test_used_trial_never_reopens_for_another_advisor(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """Once the flag is set, any advisor goes straight to the wallet."""
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=0)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)) as mocks:
            with patch.object(
                metering_service, "_get_or_create_trial_session", new_callable=AsyncMock
            ) as mock_trial:
                result = await metering_service.check_availability(user_id, advisor_id, NOW)

        mock_trial.assert_not_awaited()
        mocks[3].assert_awaited_once_with(user_id)
        assert result.available is False
        assert result.mode == BillingMode.NONE
        assert result.free_trial_used is True


# ============================================================================
# Timer Metadata
# ============================================================================


class TestAddTimerMetadata:
    """Tests for attaching timer metadata to chat responses."""

    def test_free_period(
        self, metering_service: MeteringService, user_id: UUID, advisor_id: UUID
    ) -> None:
        chat_session = create_mock_chat_session(
            user_id, advisor_id, trial_started_at=NOW - timedelta(seconds=20)
        )
        availability = AvailabilityResult(
            available=True,
            mode=BillingMode.TRIAL,
            user_id=user_id,
            advisor_id=advisor_id,
            credits=0,
            free_trial_used=False,
            session=metering_service._session_to_domain(chat_session),
        )
        response = ChatResponse(success=True, reply="Hello")

        enriched = add_timer_metadata(response, availability, NOW)

        assert enriched.meta is not None
        assert enriched.meta.is_free_period is True
        assert enriched.meta.remaining_free_time == 40
        assert enriched.meta.credits_deducted == 0
        assert response.meta is None

    def test_paid_with_charge(self, user_id: UUID, advisor_id: UUID) -> None:
        availability = AvailabilityResult(
            available=True,
            mode=BillingMode.PAID,
            user_id=user_id,
            advisor_id=advisor_id,
            credits=3,
            free_trial_used=True,
            credits_charged=2,
        )

        enriched = add_timer_metadata(ChatResponse(success=True, reply="Hi"), availability, NOW)

        assert enriched.meta.is_free_period is False
        assert enriched.meta.remaining_free_time == 0
        assert enriched.meta.credits_deducted == 2
        assert enriched.model_dump(by_alias=True)["meta"] == {
            "isFreePeriod": False,
            "remainingFreeTime": 0,
            "creditsDeducted": 2,
        }


# ============================================================================
# Session Status
# ============================================================================


class TestGetSessionStatus:
    """Tests for the read-only status query."""

    async def _status(
        self,
        service: MeteringService,
        user: MagicMock,
        credits: int,
        chat_session: MagicMock | None,
        now=NOW,
    ):
        with patch.object(
            service, "_get_user", new_callable=AsyncMock, return_value=user
        ), patch.object(
            service.wallets,
            "get_wallet",
            new_callable=AsyncMock,
            return_value=WalletData(user_id=user.id, credits=credits),
        ), patch.object(
            service, "_find_live_session", new_callable=AsyncMock, return_value=chat_session
        ), patch.object(
            service, "_find_user_trial_window", new_callable=AsyncMock, return_value=None
        ):
            return await service.get_session_status(user.id, uuid4(), now)

    async def test_free_running(self, metering_service: MeteringService, user_id: UUID) -> None:
        user = create_mock_user(user_id)
        chat_session = create_mock_chat_session(user_id, trial_started_at=NOW)

        status = await self._status(
            metering_service, user, 0, chat_session, NOW + timedelta(seconds=15)
        )

        assert status.status == SessionStatus.FREE
        assert status.is_free is True
        assert status.remaining_free_time == 45
        assert status.free_session_used is False

    async def test_paid_running(self, metering_service: MeteringService, user_id: UUID) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        chat_session = create_mock_chat_session(
            user_id,
            trial_consumed=True,
            paid_mode=True,
            paid_started_at=NOW - timedelta(seconds=100),
            initial_credits=3,
        )

        status = await self._status(metering_service, user, 2, chat_session)

        assert status.status == SessionStatus.PAID
        assert status.paid_timer == 80
        assert status.available is True

    async def test_new_user(self, metering_service: MeteringService, user_id: UUID) -> None:
        status = await self._status(metering_service, create_mock_user(user_id), 0, None)

        assert status.status == SessionStatus.NEW
        assert status.remaining_free_time == 60
        assert status.available is True

    async def test_trial_used_without_credits(
        self, metering_service: MeteringService, user_id: UUID
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)

        status = await self._status(metering_service, user, 0, None)

        assert status.status == SessionStatus.INSUFFICIENT_CREDITS
        assert status.available is False
        assert status.free_session_used is True

    async def test_trial_used_with_credits_is_stopped(
        self, metering_service: MeteringService, user_id: UUID
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)

        status = await self._status(metering_service, user, 5, None)

        assert status.status == SessionStatus.STOPPED
        assert status.available is True
        assert status.credits == 5


# ============================================================================
# Free Session
# ============================================================================


class TestStartFreeSession:
    """Tests for explicitly starting the free minute."""

    async def test_trial_already_used(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)

        with _Patched(patch_rows(metering_service, advisor, user)):
            with pytest.raises(FreeTrialAlreadyUsedError, match="Free minute already used"):
                await metering_service.start_free_session(user_id, advisor_id, NOW)

    async def test_starts_and_broadcasts(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id)
        chat_session = create_mock_chat_session(user_id, advisor_id, trial_started_at=NOW)

        with _Patched(patch_rows(metering_service, advisor, user)):
            with patch.object(
                metering_service,
                "_get_or_create_trial_session",
                new_callable=AsyncMock,
                return_value=chat_session,
            ), patch.object(
                metering_service.wallets,
                "get_wallet",
                new_callable=AsyncMock,
                return_value=WalletData(user_id=user_id, credits=0),
            ):
                status = await metering_service.start_free_session(user_id, advisor_id, NOW)

        assert status.status == SessionStatus.FREE
        assert status.remaining_free_time == 60
        event = mock_broadcaster.session_update.await_args.args[0]
        assert event.user_id == user_id
        assert event.advisor_id == advisor_id
        assert event.is_free is True

    async def test_expired_window_burns_trial(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id)
        chat_session = create_mock_chat_session(
            user_id, advisor_id, trial_started_at=NOW - timedelta(minutes=5)
        )

        with _Patched(patch_rows(metering_service, advisor, user)):
            with patch.object(
                metering_service,
                "_get_or_create_trial_session",
                new_callable=AsyncMock,
                return_value=chat_session,
            ), patch(
                "psychic_metering.services.metering.mark_trial_used", new_callable=AsyncMock
            ) as mock_mark:
                with pytest.raises(FreeTrialAlreadyUsedError):
                    await metering_service.start_free_session(user_id, advisor_id, NOW)

        mock_mark.assert_awaited_once()
        db_session.commit.assert_awaited_once()
        assert chat_session.archived is True


# ============================================================================
# Paid Session
# ============================================================================


class TestStartPaidSession:
    """Tests for opening a paid window."""

    async def test_trial_still_running(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id)
        chat_session = create_mock_chat_session(user_id, advisor_id, trial_started_at=NOW)

        with _Patched(patch_rows(metering_service, advisor, user, chat_session)):
            with pytest.raises(FreeTrialActiveError) as exc_info:
                await metering_service.start_paid_session(
                    user_id, advisor_id, NOW + timedelta(seconds=20)
                )

        assert exc_info.value.remaining_seconds == 40
        db_session.rollback.assert_awaited_once()

    async def test_conflict_with_other_advisor(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=5)
        other = create_mock_chat_session(
            user_id, paid_mode=True, paid_started_at=NOW, initial_credits=5
        )

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_find_open_paid_window",
                new_callable=AsyncMock,
                return_value=other,
            ):
                with pytest.raises(PaidSessionConflictError) as exc_info:
                    await metering_service.start_paid_session(user_id, advisor_id, NOW)

        assert exc_info.value.active_advisor_id == other.advisor_id

    async def test_no_credits(
        self,
        metering_service: MeteringService,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=0)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_find_open_paid_window",
                new_callable=AsyncMock,
                return_value=None,
            ):
                with pytest.raises(InsufficientCreditsError):
                    await metering_service.start_paid_session(user_id, advisor_id, NOW)

    async def test_opens_window_funded_by_balance(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=7)
        created = create_mock_chat_session(user_id, advisor_id, trial_consumed=True)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_find_open_paid_window",
                new_callable=AsyncMock,
                return_value=None,
            ), patch.object(
                metering_service,
                "_create_paid_evaluation_session",
                new_callable=AsyncMock,
                return_value=created,
            ):
                status = await metering_service.start_paid_session(user_id, advisor_id, NOW)

        assert created.paid_mode is True
        assert created.paid_started_at == NOW
        assert created.initial_credits == 7
        assert created.last_charged_at == NOW
        assert status.status == SessionStatus.PAID
        assert status.paid_timer == 420
        mock_broadcaster.session_update.assert_awaited_once()

    async def test_already_open_window_is_returned(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id, free_trial_used=True)
        wallet = create_mock_wallet(user_id, credits=4)
        started = NOW - timedelta(seconds=90)
        chat_session = create_mock_chat_session(
            user_id,
            advisor_id,
            trial_consumed=True,
            paid_mode=True,
            paid_started_at=started,
            initial_credits=5,
        )

        with _Patched(patch_rows(metering_service, advisor, user, chat_session, wallet)):
            status = await metering_service.start_paid_session(user_id, advisor_id, NOW)

        assert status.paid_timer == 210
        assert chat_session.paid_started_at == started
        assert chat_session.initial_credits == 5
        mock_broadcaster.session_update.assert_not_awaited()

    async def test_unstarted_trial_is_forfeited(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        user = create_mock_user(user_id)
        wallet = create_mock_wallet(user_id, credits=2)
        created = create_mock_chat_session(user_id, advisor_id, trial_consumed=True)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_find_open_paid_window",
                new_callable=AsyncMock,
                return_value=None,
            ), patch.object(
                metering_service,
                "_create_paid_evaluation_session",
                new_callable=AsyncMock,
                return_value=created,
            ), patch(
                "psychic_metering.services.metering.mark_trial_used", new_callable=AsyncMock
            ) as mock_mark:
                await metering_service.start_paid_session(user_id, advisor_id, NOW)

        mock_mark.assert_awaited_once_with(db_session, user_id, NOW)
        assert created.paid_mode is True

    async def test_trial_running_with_other_advisor(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        advisor: AdvisorData,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """The trial window belongs to the user, so it blocks paying for any advisor."""
        user = create_mock_user(user_id)
        wallet = create_mock_wallet(user_id, credits=3)

        with _Patched(patch_rows(metering_service, advisor, user, wallet=wallet)):
            with patch.object(
                metering_service,
                "_find_user_trial_window",
                new_callable=AsyncMock,
                return_value=(NOW, NOW + timedelta(seconds=60)),
            ), patch(
                "psychic_metering.services.metering.mark_trial_used", new_callable=AsyncMock
            ) as mock_mark:
                with pytest.raises(FreeTrialActiveError) as exc_info:
                    await metering_service.start_paid_session(
                        user_id, advisor_id, NOW + timedelta(seconds=10)
                    )

        assert exc_info.value.remaining_seconds == 50
        mock_mark.assert_not_awaited()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()


# ============================================================================
# Stop Session
# ============================================================================


class TestStopSession:
    """Tests for stopping a paid window."""

    async def test_no_open_window(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        with patch.object(
            metering_service, "_find_live_session", new_callable=AsyncMock, return_value=None
        ):
            with pytest.raises(SessionNotFoundError):
                await metering_service.stop_session(user_id, advisor_id, NOW)

        db_session.rollback.assert_awaited_once()

    async def test_settles_started_minute_and_broadcasts(
        self,
        metering_service: MeteringService,
        mock_broadcaster: MagicMock,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """Sweep charged minute one at second 61; stopping at 90 bills minute two."""
        wallet = create_mock_wallet(user_id, credits=4)
        chat_session = create_mock_chat_session(
            user_id,
            advisor_id,
            trial_consumed=True,
            paid_mode=True,
            paid_started_at=NOW - timedelta(seconds=90),
            initial_credits=5,
        )

        with patch.object(
            metering_service,
            "_find_live_session",
            new_callable=AsyncMock,
            return_value=chat_session,
        ), patch.object(
            metering_service.wallets, "lock_wallet", new_callable=AsyncMock, return_value=wallet
        ):
            status = await metering_service.stop_session(user_id, advisor_id, NOW)

        assert wallet.credits == 3
        assert chat_session.paid_mode is False
        assert chat_session.archived is True
        assert status.status == SessionStatus.STOPPED
        assert status.show_feedback_modal is True
        mock_broadcaster.credits_update.assert_awaited_once_with(user_id, 3)
        event = mock_broadcaster.session_update.await_args.args[0]
        assert event.status == SessionStatus.STOPPED


# ============================================================================
# Summary
# ============================================================================


class TestSessionSummary:
    """Tests for the per-advisor session summary."""

    async def test_groups_by_advisor(
        self, metering_service: MeteringService, db_session: AsyncMock, user_id: UUID
    ) -> None:
        luna, orion = uuid4(), uuid4()
        db_session.execute = AsyncMock(
            return_value=make_result(rows=[(luna, "Luna", 2, 5), (orion, "Orion", 1, 0)])
        )

        summary = await metering_service.get_user_session_summary(user_id)

        assert [item.advisor_name for item in summary.data] == ["Luna", "Orion"]
        assert summary.data[0].total_sessions == 2
        assert summary.data[0].total_credits_used == 5
        assert summary.model_dump(by_alias=True)["data"][1]["totalCreditsUsed"] == 0


# ============================================================================
# Row Helpers
# ============================================================================


class TestRowHelpers:
    """Tests for session creation races and the trial flag."""

    async def test_create_session_race_returns_existing(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        existing = create_mock_chat_session(user_id, advisor_id)
        nested = db_session.begin_nested.return_value
        nested.__aexit__ = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
        )

        with patch.object(
            metering_service, "_find_live_session", new_callable=AsyncMock, return_value=existing
        ):
            result = await metering_service._create_paid_evaluation_session(
                user_id, advisor_id, NOW
            )

        assert result is existing

    async def test_create_session_race_without_winner(
        self,
        metering_service: MeteringService,
        db_session: AsyncMock,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        nested = db_session.begin_nested.return_value
        nested.__aexit__ = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("foreign key"))
        )

        with patch.object(
            metering_service, "_find_live_session", new_callable=AsyncMock, return_value=None
        ):
            with pytest.raises(DataIntegrityError):
                await metering_service._create_paid_evaluation_session(user_id, advisor_id, NOW)

    async def test_new_trial_session_joins_running_window(
        self,
        metering_service: MeteringService,
        user_id: UUID,
        advisor_id: UUID,
    ) -> None:
        """The trial belongs to the user: a second advisor gets the same window."""
        window = (NOW - timedelta(seconds=25), NOW + timedelta(seconds=35))

        with patch.object(
            metering_service, "_find_live_session", new_callable=AsyncMock, return_value=None
        ), patch.object(
            metering_service, "_find_user_trial_window", new_callable=AsyncMock, return_value=window
        ):
            chat_session = await metering_service._get_or_create_trial_session(
                user_id, advisor_id, NOW
            )

        assert chat_session.trial_started_at == window[0]
        assert chat_session.trial_ends_at == window[1]
        assert chat_session.remaining_trial_seconds == 35
        assert chat_session.trial_consumed is False

    async def test_mark_trial_used_compare_and_set(
        self, db_session: AsyncMock, user_id: UUID
    ) -> None:
        result = make_result()
        result.rowcount = 1
        db_session.execute = AsyncMock(return_value=result)
        assert await mark_trial_used(db_session, user_id, NOW) is True

        result.rowcount = 0
        assert await mark_trial_used(db_session, user_id, NOW) is False

    def test_close_paid_window_without_wallet(self, user_id: UUID) -> None:
        chat_session = create_mock_chat_session(
            user_id, paid_mode=True, paid_started_at=NOW, initial_credits=3
        )

        charged = close_paid_window(chat_session, None, NOW + timedelta(seconds=30))

        assert charged == 0
        assert chat_session.paid_mode is False
        assert chat_session.archived is True
