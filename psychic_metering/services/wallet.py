"""
Wallet Service - per-user credit balance.

Every mutation happens under the wallet row lock (SELECT ... FOR UPDATE),
taken after any chat session lock the caller already holds.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from psychic_metering.db.models import ChatSession, User, Wallet
from psychic_metering.exceptions import DataIntegrityError, UserNotFoundError
from psychic_metering.models.domain import WalletData
from psychic_metering.observability.logging import get_logger
from psychic_metering.observability.metrics import metrics

logger = get_logger(__name__)


class WalletService:
    """Reads, locks and credits wallets. Debits are done by the metering engine."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize wallet service with database session."""
        self.session = session

    async def get_wallet(self, user_id: UUID) -> WalletData:
        """Current balance without locking. A missing wallet reads as zero credits."""
        result = await self.session.execute(select(Wallet).where(Wallet.user_id == user_id))
        wallet = result.scalar_one_or_none()
        if wallet is None:
            return WalletData(user_id=user_id, credits=0)
        return self._wallet_to_domain(wallet)

    async def lock_wallet(self, user_id: UUID, skip_locked: bool = False) -> Wallet | None:
        """
        Lock and return the user's wallet row.

        With `skip_locked`, returns None instead of waiting when another
        transaction holds the row.
        """
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        stmt = stmt.with_for_update(skip_locked=True) if skip_locked else stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_locked_wallet(self, user_id: UUID) -> Wallet:
        """Lock the user's wallet, creating it with zero credits on first use."""
        wallet = await self.lock_wallet(user_id)
        if wallet is not None:
            return wallet

        new_wallet = Wallet(user_id=user_id, credits=0)
        try:
            async with self.session.begin_nested():
                self.session.add(new_wallet)
        except IntegrityError as e:
            # Race condition - wallet created by another request
            logger.info("wallet_creation_race", user_id=str(user_id), error=str(e))
            wallet = await self.lock_wallet(user_id)
            if wallet is None:
                raise DataIntegrityError(f"Wallet creation failed for user {user_id}") from e
            return wallet

        logger.info("wallet_created", user_id=str(user_id))
        return new_wallet

    async def credit_wallet(
        self, user_id: UUID, credits: int, payment_id: str | None = None
    ) -> WalletData:
        """
        Add purchased credits to a wallet.

        An open paid window is extended by the same number of minutes, so the
        per-minute sweep keeps charging against the topped-up balance instead
        of pulling it back down.

        Raises:
            UserNotFoundError: no such user
            ValueError: non-positive credit amount
        """
        if credits <= 0:
            raise ValueError(f"Top-up credits must be positive: {credits}")

        user_exists = await self.session.execute(select(User.id).where(User.id == user_id))
        if user_exists.scalar_one_or_none() is None:
            raise UserNotFoundError(user_id)

        try:
            # Session rows before the wallet row
            open_windows = await self._lock_open_paid_windows(user_id)
            wallet = await self.get_or_create_locked_wallet(user_id)

            wallet.credits += credits
            for chat_session in open_windows:
                chat_session.initial_credits = (chat_session.initial_credits or 0) + credits

            await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        metrics.credits_added_total.inc(credits)
        logger.info(
            "wallet_credited",
            user_id=str(user_id),
            credits_added=credits,
            balance=wallet.credits,
            payment_id=payment_id,
            extended_windows=len(open_windows),
        )
        return self._wallet_to_domain(wallet)

    async def _lock_open_paid_windows(self, user_id: UUID) -> list[ChatSession]:
        stmt = (
            select(ChatSession)
            .where(
                ChatSession.user_id == user_id,
                ChatSession.paid_mode.is_(True),
                ChatSession.paid_started_at.is_not(None),
                ChatSession.archived.is_(False),
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def _wallet_to_domain(self, wallet: Wallet) -> WalletData:
        """Convert ORM model to domain model."""
        return WalletData(user_id=wallet.user_id, credits=wallet.credits)
