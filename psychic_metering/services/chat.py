"""
Chat Service - gate, persist and answer chat messages.

Flow for one message:
1. Availability gate (free trial, open paid window, or per-minute charge)
2. Persist the user message
3. Generate the advisor reply outside of any open transaction
4. Persist the reply and attach timer metadata
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from psychic_metering.db.models import ChatMessage
from psychic_metering.exceptions import ReplyGenerationError
from psychic_metering.models.api import ChatMessageItem, ChatResponse
from psychic_metering.models.domain import ConversationTurn
from psychic_metering.observability.logging import get_logger
from psychic_metering.observability.metrics import metrics
from psychic_metering.services.broadcaster import SessionBroadcaster
from psychic_metering.services.metering import (
    PAYWALL_MESSAGE,
    MeteringService,
    add_timer_metadata,
)
from psychic_metering.services.reply_generator import ReplyGenerator

logger = get_logger(__name__)

FALLBACK_REPLY = "We're sorry, something went wrong. Please try again later!"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class ChatService:
    """Chat orchestrator between the metering engine and the reply generator."""

    def __init__(
        self,
        session: AsyncSession,
        reply_generator: ReplyGenerator,
        broadcaster: SessionBroadcaster | None = None,
    ) -> None:
        """Initialize chat service with database session and reply generator."""
        self.session = session
        self.reply_generator = reply_generator
        self.metering = MeteringService(session, broadcaster)

    async def send_message(
        self, user_id: UUID, advisor_id: UUID, text: str, now: datetime | None = None
    ) -> ChatResponse:
        """
        Handle one chat message.

        A denied message gets the paywall text as the reply, stored in the
        conversation, with `credit_required` set. A failed reply generation
        stores and returns a fallback apology with `success` False.
        """
        now = now or _utc_now()
        availability = await self.metering.check_availability(user_id, advisor_id, now)

        if not availability.available:
            reply = availability.message or PAYWALL_MESSAGE
            await self._append(user_id, advisor_id, "ai", reply)
            await self.session.commit()
            logger.info("chat_denied", user_id=str(user_id), advisor_id=str(advisor_id))
            return ChatResponse(
                success=False,
                reply=reply,
                credit_required=True,
                messages=await self.get_history(user_id, advisor_id),
            )

        advisor = await self.metering.get_advisor(advisor_id)
        history = await self._load_turns(user_id, advisor_id)
        await self._append(user_id, advisor_id, "user", text)
        await self.session.commit()

        success = True
        try:
            reply = await self.reply_generator.generate(advisor, history, text)
        except ReplyGenerationError as e:
            success = False
            reply = FALLBACK_REPLY
            metrics.record_error("ReplyGenerationError", "send_message")
            logger.warning(
                "chat_reply_fallback",
                user_id=str(user_id),
                advisor_id=str(advisor_id),
                error=e.message,
            )

        await self._append(user_id, advisor_id, "ai", reply)
        await self.session.commit()

        response = ChatResponse(
            success=success,
            reply=reply,
            messages=await self.get_history(user_id, advisor_id),
        )
        if not success:
            return response
        return add_timer_metadata(response, availability, now)

    async def get_history(self, user_id: UUID, advisor_id: UUID) -> list[ChatMessageItem]:
        """Full conversation between a user and an advisor, oldest first."""
        rows = await self._load_messages(user_id, advisor_id)
        return [
            ChatMessageItem(
                id=row.id,
                sender=row.sender,
                text=row.text,
                created_at=row.created_at.isoformat(),
            )
            for row in rows
        ]

    async def _load_messages(self, user_id: UUID, advisor_id: UUID) -> list[ChatMessage]:
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.user_id == user_id, ChatMessage.advisor_id == advisor_id)
            .order_by(ChatMessage.created_at, ChatMessage.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _load_turns(self, user_id: UUID, advisor_id: UUID) -> list[ConversationTurn]:
        rows = await self._load_messages(user_id, advisor_id)
        return [ConversationTurn(sender=row.sender, text=row.text) for row in rows]

    async def _append(self, user_id: UUID, advisor_id: UUID, sender: str, text: str) -> None:
        self.session.add(
            ChatMessage(
                user_id=user_id,
                advisor_id=advisor_id,
                sender=sender,
                text=text,
                created_at=_utc_now(),
            )
        )
        await self.session.flush()
